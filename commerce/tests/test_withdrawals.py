"""
Unit Tests for the Withdrawal Ledger

Tests cover:
1. Reservation at request time
2. Validation before any write
3. State transitions and the release on failure
4. Idempotent replays
5. Competing requests for one balance
6. Atomicity of reserve / release
"""

import threading

import pytest

from commerce.errors import (
    BelowMinimumWithdrawalError,
    IdempotencyConflictError,
    InsufficientBalanceError,
    InvalidAmountError,
    InvalidBankDetailsError,
    InvalidStateTransitionError,
)
from commerce.models import BankDetails, WithdrawalRequest, WithdrawalStatus
from commerce.storage import InMemoryStorage
from commerce.withdrawals import WithdrawalLedger

from .conftest import LECTURER_ID


def fund(storage: InMemoryStorage, amount: int, lecturer_id: str = LECTURER_ID) -> None:
    storage.increment(
        "lecturer_accounts", lecturer_id,
        defaults={"lecturer_id": lecturer_id},
        total_earnings=amount,
        pending_withdrawal=amount,
    )


def withdrawal(amount: int, bank_details: BankDetails, **overrides) -> WithdrawalRequest:
    return WithdrawalRequest(lecturer_id=LECTURER_ID, amount=amount, bank_details=bank_details, **overrides)


class TestReservation:
    """Tests for reserving balance on request."""

    def test_request_reserves_amount(self, withdrawals, storage, bank_details):
        """Balance 50000, request 20000 leaves 30000."""
        fund(storage, 50000)

        response = withdrawals.request(withdrawal(20000, bank_details))

        assert response.created is True
        assert response.withdrawal.status == WithdrawalStatus.PENDING
        assert response.withdrawal.reference.startswith("WD")
        assert response.available_balance == 30000
        assert withdrawals.available_balance(LECTURER_ID) == 30000

    def test_failed_withdrawal_restores_balance(self, withdrawals, storage, bank_details):
        fund(storage, 50000)
        withdrawal_id = withdrawals.request(withdrawal(20000, bank_details)).withdrawal.id

        withdrawals.transition(withdrawal_id, WithdrawalStatus.PROCESSING)
        failed = withdrawals.transition(withdrawal_id, WithdrawalStatus.FAILED)

        assert failed.status == WithdrawalStatus.FAILED
        assert failed.processed_at is not None
        assert withdrawals.available_balance(LECTURER_ID) == 50000

    def test_completed_withdrawal_keeps_reservation(self, withdrawals, storage, bank_details):
        fund(storage, 50000)
        withdrawal_id = withdrawals.request(withdrawal(20000, bank_details)).withdrawal.id

        withdrawals.transition(withdrawal_id, WithdrawalStatus.PROCESSING)
        withdrawals.transition(withdrawal_id, WithdrawalStatus.COMPLETED)

        assert withdrawals.available_balance(LECTURER_ID) == 30000

    def test_exact_balance_can_be_withdrawn(self, withdrawals, storage, bank_details):
        fund(storage, 10000)
        response = withdrawals.request(withdrawal(10000, bank_details))
        assert response.available_balance == 0


class TestValidation:
    """Tests for rejected requests; nothing is reserved."""

    def test_below_minimum(self, withdrawals, storage, bank_details):
        fund(storage, 50000)
        with pytest.raises(BelowMinimumWithdrawalError):
            withdrawals.request(withdrawal(9999, bank_details))
        assert withdrawals.available_balance(LECTURER_ID) == 50000
        assert storage.withdrawals == {}

    def test_above_available_balance(self, withdrawals, storage, bank_details):
        fund(storage, 15000)
        with pytest.raises(InsufficientBalanceError):
            withdrawals.request(withdrawal(15001, bank_details))
        assert withdrawals.available_balance(LECTURER_ID) == 15000

    def test_non_positive_amount(self, withdrawals, bank_details):
        with pytest.raises(InvalidAmountError):
            withdrawals.request(withdrawal(0, bank_details))

    @pytest.mark.parametrize("account_number", ["12345", "01234567890", "01234abcde", ""])
    def test_malformed_account_number(self, withdrawals, storage, bank_details, account_number):
        fund(storage, 50000)
        bad = bank_details.model_copy(update={"account_number": account_number})
        with pytest.raises(InvalidBankDetailsError):
            withdrawals.request(withdrawal(20000, bad))
        assert withdrawals.available_balance(LECTURER_ID) == 50000

    def test_blank_account_name(self, withdrawals, storage, bank_details):
        fund(storage, 50000)
        bad = bank_details.model_copy(update={"account_name": "  "})
        with pytest.raises(InvalidBankDetailsError):
            withdrawals.request(withdrawal(20000, bad))


class TestTransitions:
    """Tests for the withdrawal state machine."""

    @pytest.fixture
    def pending_id(self, withdrawals, storage, bank_details):
        fund(storage, 50000)
        return withdrawals.request(withdrawal(20000, bank_details)).withdrawal.id

    def test_cannot_skip_processing(self, withdrawals, pending_id):
        with pytest.raises(InvalidStateTransitionError):
            withdrawals.transition(pending_id, WithdrawalStatus.COMPLETED)
        with pytest.raises(InvalidStateTransitionError):
            withdrawals.transition(pending_id, WithdrawalStatus.FAILED)
        assert withdrawals.available_balance(LECTURER_ID) == 30000

    def test_terminal_states_are_final(self, withdrawals, pending_id):
        withdrawals.transition(pending_id, WithdrawalStatus.PROCESSING)
        withdrawals.transition(pending_id, WithdrawalStatus.FAILED)

        with pytest.raises(InvalidStateTransitionError):
            withdrawals.transition(pending_id, WithdrawalStatus.FAILED)
        # the release happened exactly once
        assert withdrawals.available_balance(LECTURER_ID) == 50000

    def test_listing_newest_first(self, withdrawals, storage, bank_details, clock, pending_id):
        clock.advance(minutes=5)
        newer = withdrawals.request(withdrawal(10000, bank_details)).withdrawal.id
        assert [w.id for w in withdrawals.list_for_lecturer(LECTURER_ID)] == [newer, pending_id]


class TestIdempotency:
    """Tests for caller-supplied references."""

    def test_replay_reserves_once(self, withdrawals, storage, bank_details):
        fund(storage, 50000)
        first = withdrawals.request(withdrawal(20000, bank_details, reference="WD-client-1"))
        second = withdrawals.request(withdrawal(20000, bank_details, reference="WD-client-1"))

        assert second.created is False
        assert second.withdrawal.id == first.withdrawal.id
        assert withdrawals.available_balance(LECTURER_ID) == 30000

    def test_reference_reused_for_other_amount(self, withdrawals, storage, bank_details):
        fund(storage, 50000)
        withdrawals.request(withdrawal(20000, bank_details, reference="WD-client-2"))
        with pytest.raises(IdempotencyConflictError):
            withdrawals.request(withdrawal(15000, bank_details, reference="WD-client-2"))


class TestConcurrency:
    """Competing requests never reserve more than the balance."""

    def test_parallel_requests_over_reserve_nothing(self, withdrawals, storage, bank_details):
        fund(storage, 45000)
        accepted, rejected = [], []

        def request():
            try:
                accepted.append(withdrawals.request(withdrawal(10000, bank_details)).withdrawal)
            except InsufficientBalanceError:
                rejected.append(1)

        threads = [threading.Thread(target=request) for _ in range(12)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        final_balance = withdrawals.available_balance(LECTURER_ID)
        assert len(accepted) == 4
        assert len(rejected) == 8
        assert final_balance == 5000
        assert final_balance >= 0
        assert sum(w.amount for w in accepted) == 45000 - final_balance
        assert len(storage.withdrawals) == 4


class FailingIncrementStorage(InMemoryStorage):
    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.fail_increments = False

    def increment(self, collection, key, defaults=None, **deltas):
        if self.fail_increments:
            raise RuntimeError("store unavailable")
        return super().increment(collection, key, defaults=defaults, **deltas)


class TestAtomicity:
    """A failure mid-way leaves neither half applied."""

    @pytest.fixture
    def flaky_storage(self, clock):
        return FailingIncrementStorage(clock=clock)

    def test_request_rolls_back_record(self, flaky_storage, settings, bank_details):
        ledger = WithdrawalLedger(flaky_storage, settings)
        fund(flaky_storage, 50000)
        flaky_storage.fail_increments = True

        with pytest.raises(RuntimeError):
            ledger.request(withdrawal(20000, bank_details, reference="WD-atomic"))

        assert flaky_storage.withdrawals == {}
        assert flaky_storage.withdrawal_index == {}
        assert ledger.available_balance(LECTURER_ID) == 50000

    def test_failed_transition_rolls_back_status(self, flaky_storage, settings, bank_details):
        ledger = WithdrawalLedger(flaky_storage, settings)
        fund(flaky_storage, 50000)
        withdrawal_id = ledger.request(withdrawal(20000, bank_details)).withdrawal.id
        ledger.transition(withdrawal_id, WithdrawalStatus.PROCESSING)
        flaky_storage.fail_increments = True

        with pytest.raises(RuntimeError):
            ledger.transition(withdrawal_id, WithdrawalStatus.FAILED)

        assert ledger.get(withdrawal_id).status == WithdrawalStatus.PROCESSING
        assert ledger.available_balance(LECTURER_ID) == 30000
