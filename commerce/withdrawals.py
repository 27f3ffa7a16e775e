import logging
import random
import re
import string
from typing import Optional
from uuid import UUID, uuid4

from .config import Settings, settings as default_settings
from .errors import (
    BelowMinimumWithdrawalError,
    IdempotencyConflictError,
    InsufficientBalanceError,
    InvalidAmountError,
    InvalidBankDetailsError,
    InvalidStateTransitionError,
    MissingFieldError,
    WithdrawalNotFoundError,
)
from .models import (
    BankDetails,
    Withdrawal,
    WithdrawalRequest,
    WithdrawalResponse,
    WithdrawalStatus,
)
from .storage import InMemoryStorage

logger = logging.getLogger(__name__)

ACCOUNT_NUMBER_PATTERN = re.compile(r"^\d{10}$")


def validate_bank_details(bank_details: BankDetails) -> None:
    if not ACCOUNT_NUMBER_PATTERN.match(bank_details.account_number or ""):
        raise InvalidBankDetailsError(
            "Account number must be 10 digits", context={"field": "account_number"}
        )
    if not (bank_details.bank_name or "").strip():
        raise InvalidBankDetailsError("Bank name is required", context={"field": "bank_name"})
    if not (bank_details.account_name or "").strip():
        raise InvalidBankDetailsError("Account name is required", context={"field": "account_name"})


def generate_reference(storage: InMemoryStorage) -> str:
    millis = int(storage.now().timestamp() * 1000)
    suffix = "".join(random.choices(string.ascii_uppercase + string.digits, k=4))
    return f"WD{millis}{suffix}"


class WithdrawalLedger:
    """Lecturer payouts against the ``pending_withdrawal`` balance.

    The amount is reserved when the request is made and credited back if the
    withdrawal fails; both happen in the same unit of work as the record
    change.
    """

    def __init__(self, storage: Optional[InMemoryStorage] = None, settings: Optional[Settings] = None):
        self.storage = storage or InMemoryStorage()
        self.settings = settings or default_settings

    def available_balance(self, lecturer_id: str) -> int:
        account = self.storage.get("lecturer_accounts", lecturer_id)
        return account.get("pending_withdrawal", 0) if account else 0

    def request(self, request: WithdrawalRequest) -> WithdrawalResponse:
        if not request.lecturer_id:
            raise MissingFieldError("lecturer_id is required", context={"field": "lecturer_id"})
        if request.amount <= 0:
            raise InvalidAmountError(f"Amount must be positive, got {request.amount}")
        if request.amount < self.settings.min_withdrawal:
            raise BelowMinimumWithdrawalError(
                f"Minimum withdrawal amount is {self.settings.min_withdrawal}",
                context={"amount": request.amount},
            )
        validate_bank_details(request.bank_details)

        with self.storage.atomic():
            existing = self._check_idempotency(request)
            if existing:
                logger.info(f"Withdrawal {existing.reference} already requested (idempotent return)")
                return WithdrawalResponse(
                    withdrawal=existing,
                    available_balance=self.available_balance(request.lecturer_id),
                    created=False,
                    message="Withdrawal already exists (idempotent return)",
                )

            available = self.available_balance(request.lecturer_id)
            if request.amount > available:
                raise InsufficientBalanceError(
                    "Amount exceeds available balance",
                    context={"amount": request.amount, "available_balance": available},
                )

            now = self.storage.now()
            withdrawal_id = uuid4()
            reference = request.reference or generate_reference(self.storage)
            withdrawal_data = {
                "id": withdrawal_id,
                "lecturer_id": request.lecturer_id,
                "amount": request.amount,
                "bank_details": request.bank_details.model_dump(),
                "status": WithdrawalStatus.PENDING,
                "reference": reference,
                "requested_at": now,
                "processed_at": None,
                "updated_at": now,
            }
            self.storage.put("withdrawals", withdrawal_id, withdrawal_data)
            self.storage.put("withdrawal_index", reference, withdrawal_id)
            account = self.storage.increment(
                "lecturer_accounts", request.lecturer_id,
                defaults={"lecturer_id": request.lecturer_id},
                pending_withdrawal=-request.amount,
            )

        logger.info(
            f"Withdrawal {reference} requested by {request.lecturer_id}: reserved {request.amount}, "
            f"available balance now {account['pending_withdrawal']}"
        )
        return WithdrawalResponse(
            withdrawal=Withdrawal(**withdrawal_data),
            available_balance=account["pending_withdrawal"],
            created=True,
            message="Withdrawal request created successfully",
        )

    def transition(self, withdrawal_id: UUID, new_status: WithdrawalStatus) -> Withdrawal:
        with self.storage.atomic():
            withdrawal = self.get(withdrawal_id)
            if not withdrawal.can_transition_to(new_status):
                raise InvalidStateTransitionError(
                    f"Cannot move withdrawal from {withdrawal.status.value} to {new_status.value}"
                )

            now = self.storage.now()
            data = withdrawal.model_dump()
            data["status"] = new_status
            data["updated_at"] = now
            if new_status in (WithdrawalStatus.COMPLETED, WithdrawalStatus.FAILED):
                data["processed_at"] = now
            self.storage.put("withdrawals", withdrawal_id, data)

            if new_status == WithdrawalStatus.FAILED:
                self.storage.increment(
                    "lecturer_accounts", withdrawal.lecturer_id,
                    defaults={"lecturer_id": withdrawal.lecturer_id},
                    pending_withdrawal=withdrawal.amount,
                )
                logger.warning(
                    f"Withdrawal {withdrawal.reference} failed; released {withdrawal.amount} "
                    f"back to {withdrawal.lecturer_id}"
                )

        logger.info(f"Withdrawal {withdrawal.reference}: {withdrawal.status.value} -> {new_status.value}")
        return Withdrawal(**data)

    def get(self, withdrawal_id: UUID) -> Withdrawal:
        data = self.storage.get("withdrawals", withdrawal_id)
        if not data:
            raise WithdrawalNotFoundError(f"Withdrawal {withdrawal_id} not found")
        return Withdrawal(**data)

    def list_for_lecturer(self, lecturer_id: str) -> list[Withdrawal]:
        withdrawals = [
            Withdrawal(**w) for w in self.storage.find("withdrawals", lambda w: w["lecturer_id"] == lecturer_id)
        ]
        withdrawals.sort(key=lambda w: w.requested_at, reverse=True)
        return withdrawals

    def _check_idempotency(self, request: WithdrawalRequest) -> Optional[Withdrawal]:
        if not request.reference:
            return None
        withdrawal_id = self.storage.get("withdrawal_index", request.reference)
        if withdrawal_id is None:
            return None
        existing = self.get(withdrawal_id)
        if existing.lecturer_id != request.lecturer_id or existing.amount != request.amount:
            raise IdempotencyConflictError(
                f"Withdrawal reference {request.reference} already used for a different request",
                context={"withdrawal_id": str(withdrawal_id)},
            )
        return existing
