from datetime import datetime, timedelta, timezone

import pytest

from commerce.balances import BalanceAggregator
from commerce.collaborators import InMemoryCourseCatalog, InMemoryStudyGroups, InMemoryUserDirectory
from commerce.commissions import AffiliateCommissionLedger
from commerce.config import Settings
from commerce.enrollments import EnrollmentProgressTracker
from commerce.intake import PaymentConfirmationIntake
from commerce.models import BankDetails, CourseUpsert
from commerce.storage import InMemoryStorage
from commerce.transactions import TransactionLedger
from commerce.withdrawals import WithdrawalLedger


LECTURER_ID = "lecturer-1"
STUDENT_ID = "student-1"
COURSE_ID = "course-1"


class FakeClock:
    def __init__(self, start: datetime):
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> None:
        self.current = self.current + timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def settings():
    return Settings(conflict_retry_base_delay=0.0)


@pytest.fixture
def storage(clock):
    return InMemoryStorage(clock=clock)


@pytest.fixture
def catalog(storage):
    catalog = InMemoryCourseCatalog(storage)
    catalog.upsert(COURSE_ID, CourseUpsert(lecturer_id=LECTURER_ID, title="Intro to Python", price=40000, total_lessons=5))
    return catalog


@pytest.fixture
def study_groups(storage):
    return InMemoryStudyGroups(storage)


@pytest.fixture
def users(storage):
    return InMemoryUserDirectory(storage)


@pytest.fixture
def transactions(storage, settings):
    return TransactionLedger(storage, settings)


@pytest.fixture
def enrollments(storage, catalog, settings):
    return EnrollmentProgressTracker(storage, catalog, settings)


@pytest.fixture
def withdrawals(storage, settings):
    return WithdrawalLedger(storage, settings)


@pytest.fixture
def commissions(storage, users, settings):
    return AffiliateCommissionLedger(storage, users, settings)


@pytest.fixture
def balances(storage, transactions, withdrawals, settings):
    return BalanceAggregator(storage, transactions, withdrawals, settings)


@pytest.fixture
def intake(transactions, enrollments, commissions, catalog, study_groups):
    return PaymentConfirmationIntake(transactions, enrollments, commissions, catalog, study_groups)


@pytest.fixture
def bank_details():
    return BankDetails(
        bank_name="Guaranty Trust Bank",
        account_number="0123456789",
        account_name="Ada Lovelace",
        bank_code="058",
    )
