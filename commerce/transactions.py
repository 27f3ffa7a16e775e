import logging
from datetime import datetime
from typing import Optional
from uuid import UUID, uuid4
from zoneinfo import ZoneInfo

from .config import Settings, settings as default_settings
from .errors import (
    IdempotencyConflictError,
    InvalidAmountError,
    LedgerValidationError,
    MissingFieldError,
    TransactionNotFoundError,
)
from .models import RecordTransactionRequest, Transaction, TransactionResponse, split_amount
from .storage import InMemoryStorage

logger = logging.getLogger(__name__)

# fields that must match for a replayed reference to count as the same sale
_REPLAY_FIELDS = ("buyer_id", "course_id", "lecturer_id", "amount")


class TransactionLedger:
    def __init__(self, storage: Optional[InMemoryStorage] = None, settings: Optional[Settings] = None):
        self.storage = storage or InMemoryStorage()
        self.settings = settings or default_settings

    def record(self, request: RecordTransactionRequest) -> TransactionResponse:
        self._validate(request)

        with self.storage.atomic():
            existing = self._check_idempotency(request)
            if existing:
                logger.info(f"Transaction {existing.id} already recorded for reference {request.external_reference}")
                return TransactionResponse(
                    transaction=existing,
                    created=False,
                    message="Transaction already exists (idempotent return)",
                )

            fee_rate = self.settings.platform_fee_rate
            platform_fee, lecturer_earning = split_amount(request.amount, fee_rate)
            transaction_id = uuid4()

            transaction_data = {
                "id": transaction_id,
                "buyer_id": request.buyer_id,
                "course_id": request.course_id,
                "lecturer_id": request.lecturer_id,
                "amount": request.amount,
                "platform_fee": platform_fee,
                "lecturer_earning": lecturer_earning,
                "fee_rate": fee_rate,
                "external_reference": request.external_reference,
                "payment_method": request.payment_method,
                "currency": self.settings.currency,
                "metadata": request.metadata,
                "created_at": self.storage.now(),
            }

            self.storage.put("transactions", transaction_id, transaction_data)
            self.storage.put("transaction_index", request.external_reference, transaction_id)
            self.storage.increment(
                "lecturer_accounts", request.lecturer_id,
                defaults={"lecturer_id": request.lecturer_id},
                total_earnings=lecturer_earning,
                pending_withdrawal=lecturer_earning,
            )
            self.storage.increment(
                "courses", request.course_id,
                defaults={"course_id": request.course_id, "lecturer_id": request.lecturer_id},
                total_revenue=request.amount,
            )

        logger.info(
            f"Recorded transaction {transaction_id} ({request.external_reference}): "
            f"amount={request.amount} platform_fee={platform_fee} lecturer_earning={lecturer_earning}"
        )
        return TransactionResponse(
            transaction=Transaction(**transaction_data),
            created=True,
            message="Transaction recorded successfully",
        )

    def get(self, transaction_id: UUID) -> Transaction:
        data = self.storage.get("transactions", transaction_id)
        if not data:
            raise TransactionNotFoundError(f"Transaction {transaction_id} not found")
        return Transaction(**data)

    def get_by_reference(self, external_reference: str) -> Transaction:
        transaction_id = self.storage.get("transaction_index", external_reference)
        if transaction_id is None:
            raise TransactionNotFoundError(f"No transaction for reference {external_reference}")
        return self.get(transaction_id)

    def list_for_lecturer(self, lecturer_id: str, limit: Optional[int] = None) -> list[Transaction]:
        if limit is not None and limit < 1:
            raise LedgerValidationError(f"limit must be at least 1, got {limit}", context={"field": "limit"})
        transactions = [
            Transaction(**t) for t in self.storage.find("transactions", lambda t: t["lecturer_id"] == lecturer_id)
        ]
        transactions.sort(key=lambda t: t.created_at, reverse=True)
        return transactions[:limit] if limit is not None else transactions

    def earned_in_month(self, lecturer_id: str, at: Optional[datetime] = None) -> int:
        """Lecturer earnings in the calendar month containing ``at``, in the reporting timezone."""
        tz = ZoneInfo(self.settings.reporting_timezone)
        reference = (at or self.storage.now()).astimezone(tz)
        total = 0
        for t in self.list_for_lecturer(lecturer_id):
            local = t.created_at.astimezone(tz)
            if (local.year, local.month) == (reference.year, reference.month):
                total += t.lecturer_earning
        return total

    def _validate(self, request: RecordTransactionRequest) -> None:
        for field_name in ("buyer_id", "course_id", "lecturer_id", "external_reference"):
            if not getattr(request, field_name):
                raise MissingFieldError(f"{field_name} is required", context={"field": field_name})
        if request.amount <= 0:
            raise InvalidAmountError(f"Amount must be positive, got {request.amount}")

    def _check_idempotency(self, request: RecordTransactionRequest) -> Optional[Transaction]:
        transaction_id = self.storage.get("transaction_index", request.external_reference)
        if transaction_id is None:
            return None
        existing = self.get(transaction_id)
        mismatched = [f for f in _REPLAY_FIELDS if getattr(existing, f) != getattr(request, f)]
        if mismatched:
            raise IdempotencyConflictError(
                f"Reference {request.external_reference} already recorded with different {', '.join(mismatched)}",
                context={"transaction_id": str(transaction_id)},
            )
        return existing
