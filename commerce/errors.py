"""
Error kinds raised by the commerce ledger.

Every error carries a stable ``code`` so the HTTP layer (and any other caller)
can map it without string matching on messages.
"""
from typing import Any, Dict, Optional


class LedgerServiceError(Exception):
    code = "LEDGER_ERROR"

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        self.message = message
        self.context = context or {}
        super().__init__(message)


class LedgerValidationError(LedgerServiceError):
    """Rejected synchronously; nothing was persisted."""
    code = "VALIDATION_ERROR"


class InvalidAmountError(LedgerValidationError):
    code = "INVALID_AMOUNT"


class MissingFieldError(LedgerValidationError):
    code = "MISSING_FIELD"


class InvalidBankDetailsError(LedgerValidationError):
    code = "INVALID_BANK_DETAILS"


class BelowMinimumWithdrawalError(LedgerValidationError):
    code = "BELOW_MINIMUM_WITHDRAWAL"


class InsufficientBalanceError(LedgerValidationError):
    code = "INSUFFICIENT_BALANCE"


class UnknownAffiliateCodeError(LedgerValidationError):
    code = "UNKNOWN_AFFILIATE_CODE"


class NothingToPayOutError(LedgerValidationError):
    code = "NOTHING_TO_PAY_OUT"


class RecordNotFoundError(LedgerServiceError):
    code = "NOT_FOUND"


class TransactionNotFoundError(RecordNotFoundError):
    code = "TRANSACTION_NOT_FOUND"


class EnrollmentNotFoundError(RecordNotFoundError):
    code = "ENROLLMENT_NOT_FOUND"


class WithdrawalNotFoundError(RecordNotFoundError):
    code = "WITHDRAWAL_NOT_FOUND"


class CommissionNotFoundError(RecordNotFoundError):
    code = "COMMISSION_NOT_FOUND"


class PayoutNotFoundError(RecordNotFoundError):
    code = "PAYOUT_NOT_FOUND"


class IdempotencyConflictError(LedgerServiceError):
    """An idempotency key was reused with a different payload."""
    code = "IDEMPOTENCY_CONFLICT"


class InvalidStateTransitionError(LedgerServiceError):
    code = "INVALID_STATE_TRANSITION"


class VersionConflictError(LedgerServiceError):
    """A compare-and-set saw a newer version. Retryable."""
    code = "VERSION_CONFLICT"


class ConcurrencyConflictError(LedgerServiceError):
    """Retries were exhausted; the caller should retry the whole operation."""
    code = "CONCURRENCY_CONFLICT"
