"""
Commerce Ledger for the Course Marketplace

This package provides:
- Immutable sale transactions with a platform / lecturer revenue split
- Idempotent enrollments and lesson-completion progress
- Lecturer withdrawals that reserve balance at request time and release it on failure
- Affiliate commissions with a rate snapshotted at conversion time
- A payment intake that runs critical steps before best-effort side effects
"""

from .balances import BalanceAggregator
from .commissions import AffiliateCommissionLedger
from .enrollments import EnrollmentProgressTracker
from .intake import PaymentConfirmationIntake
from .models import (
    CommissionStatus,
    PayoutStatus,
    WithdrawalStatus,
    Transaction,
    Enrollment,
    Withdrawal,
    Commission,
)
from .storage import InMemoryStorage
from .transactions import TransactionLedger
from .withdrawals import WithdrawalLedger

__all__ = [
    "AffiliateCommissionLedger",
    "BalanceAggregator",
    "Commission",
    "CommissionStatus",
    "Enrollment",
    "EnrollmentProgressTracker",
    "InMemoryStorage",
    "PaymentConfirmationIntake",
    "PayoutStatus",
    "Transaction",
    "TransactionLedger",
    "Withdrawal",
    "WithdrawalLedger",
    "WithdrawalStatus",
]
