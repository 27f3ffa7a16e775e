import logging
from typing import Optional

from .config import Settings, settings as default_settings
from .models import LecturerEarnings, ReconciliationReport, WithdrawalStatus
from .storage import InMemoryStorage
from .transactions import TransactionLedger
from .withdrawals import WithdrawalLedger

logger = logging.getLogger(__name__)


class BalanceAggregator:
    """Read model over lecturer balances.

    ``available_balance`` reads the incrementally maintained counter.
    ``reconcile`` folds the transaction and withdrawal history to find (and
    optionally correct) drift in that counter.
    """

    def __init__(
        self,
        storage: Optional[InMemoryStorage] = None,
        transactions: Optional[TransactionLedger] = None,
        withdrawals: Optional[WithdrawalLedger] = None,
        settings: Optional[Settings] = None,
    ):
        self.storage = storage or InMemoryStorage()
        self.settings = settings or default_settings
        self.transactions = transactions or TransactionLedger(self.storage, self.settings)
        self.withdrawals = withdrawals or WithdrawalLedger(self.storage, self.settings)

    def available_balance(self, lecturer_id: str) -> int:
        return self.withdrawals.available_balance(lecturer_id)

    def earnings(self, lecturer_id: str) -> LecturerEarnings:
        transactions = self.transactions.list_for_lecturer(lecturer_id)
        paid = sum(
            w.amount for w in self.withdrawals.list_for_lecturer(lecturer_id)
            if w.status == WithdrawalStatus.COMPLETED
        )
        return LecturerEarnings(
            lecturer_id=lecturer_id,
            total=sum(t.lecturer_earning for t in transactions),
            this_month=self.transactions.earned_in_month(lecturer_id),
            pending=self.available_balance(lecturer_id),
            paid=paid,
            transactions=transactions,
        )

    def reconcile(self, lecturer_id: str, apply: bool = True) -> ReconciliationReport:
        with self.storage.atomic():
            earned = sum(t.lecturer_earning for t in self.transactions.list_for_lecturer(lecturer_id))
            reserved = sum(
                w.amount for w in self.withdrawals.list_for_lecturer(lecturer_id) if w.holds_reservation()
            )
            account = self.storage.get("lecturer_accounts", lecturer_id) or {"lecturer_id": lecturer_id}

            report = ReconciliationReport(
                lecturer_id=lecturer_id,
                expected_total_earnings=earned,
                recorded_total_earnings=account.get("total_earnings", 0),
                expected_pending_withdrawal=earned - reserved,
                recorded_pending_withdrawal=account.get("pending_withdrawal", 0),
            )
            if report.in_sync:
                return report

            logger.warning(
                f"Balance drift for lecturer {lecturer_id}: earnings {report.earnings_drift:+d}, "
                f"pending withdrawal {report.balance_drift:+d}"
            )
            if apply:
                account["total_earnings"] = report.expected_total_earnings
                account["pending_withdrawal"] = report.expected_pending_withdrawal
                self.storage.put("lecturer_accounts", lecturer_id, account)
                report.applied = True
                logger.info(f"Corrected balance counters for lecturer {lecturer_id}")

        return report

    def reconcile_all(self, apply: bool = True) -> list[ReconciliationReport]:
        lecturer_ids = set(self.storage.keys("lecturer_accounts"))
        lecturer_ids.update(t["lecturer_id"] for t in self.storage.find("transactions", lambda t: True))
        return [self.reconcile(lecturer_id, apply=apply) for lecturer_id in sorted(lecturer_ids)]
