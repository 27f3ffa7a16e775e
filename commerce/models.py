from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Optional
from uuid import UUID
from pydantic import BaseModel, Field, ConfigDict, computed_field


def apply_rate(amount: int, rate: Decimal) -> int:
    """Whole-unit share of ``amount`` at ``rate``, rounded half-up."""
    return int((Decimal(amount) * rate).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def split_amount(amount: int, fee_rate: Decimal) -> tuple[int, int]:
    platform_fee = apply_rate(amount, fee_rate)
    return platform_fee, amount - platform_fee


def progress_percentage(completed: int, total_lessons: int) -> int:
    if total_lessons <= 0:
        return 0
    ratio = Decimal(100 * completed) / Decimal(max(1, total_lessons))
    percentage = int(ratio.quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    return max(0, min(100, percentage))


class WithdrawalStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class CommissionStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    PROCESSING = "processing"
    PAID = "paid"


class PayoutStatus(str, Enum):
    REQUESTED = "requested"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


WITHDRAWAL_TRANSITIONS = {
    WithdrawalStatus.PENDING: {WithdrawalStatus.PROCESSING},
    WithdrawalStatus.PROCESSING: {WithdrawalStatus.COMPLETED, WithdrawalStatus.FAILED},
    WithdrawalStatus.COMPLETED: set(),
    WithdrawalStatus.FAILED: set(),
}

# PROCESSING -> APPROVED only happens when the owning payout fails.
COMMISSION_TRANSITIONS = {
    CommissionStatus.PENDING: {CommissionStatus.APPROVED},
    CommissionStatus.APPROVED: {CommissionStatus.PROCESSING, CommissionStatus.PAID},
    CommissionStatus.PROCESSING: {CommissionStatus.PAID, CommissionStatus.APPROVED},
    CommissionStatus.PAID: set(),
}

PAYOUT_TRANSITIONS = {
    PayoutStatus.REQUESTED: {PayoutStatus.PROCESSING},
    PayoutStatus.PROCESSING: {PayoutStatus.COMPLETED, PayoutStatus.FAILED},
    PayoutStatus.COMPLETED: set(),
    PayoutStatus.FAILED: set(),
}


class BankDetails(BaseModel):
    bank_name: str
    account_number: str = Field(..., description="10-digit local (NUBAN) account number")
    account_name: str
    bank_code: Optional[str] = None

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "bank_name": "Guaranty Trust Bank",
            "account_number": "0123456789",
            "account_name": "Ada Lovelace",
            "bank_code": "058",
        }
    })


# Requests / inbound events

class RecordTransactionRequest(BaseModel):
    buyer_id: str
    course_id: str
    lecturer_id: str
    amount: int = Field(..., description="Sale amount in whole currency units")
    external_reference: str = Field(..., description="Payment gateway reference; the idempotency key")
    payment_method: str = "paystack"
    metadata: dict = Field(default_factory=dict)


class PaymentConfirmed(BaseModel):
    buyer_id: str
    course_id: str
    lecturer_id: str
    amount: int
    external_reference: str
    affiliate_code: Optional[str] = None
    course_name: Optional[str] = None

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "buyer_id": "student-42",
            "course_id": "course-7",
            "lecturer_id": "lecturer-1",
            "amount": 40000,
            "external_reference": "T123456789",
            "affiliate_code": "ABC123",
        }
    })


class EnrollRequest(BaseModel):
    student_id: str
    course_id: str
    lecturer_id: str
    payment_reference: Optional[str] = None
    amount_paid: Optional[int] = None


class LessonCompleted(BaseModel):
    lesson_id: str


class WithdrawalRequest(BaseModel):
    lecturer_id: str
    amount: int
    bank_details: BankDetails
    reference: Optional[str] = Field(default=None, description="Caller-supplied idempotency key")


class WithdrawalStatusChange(BaseModel):
    status: WithdrawalStatus


class CourseUpsert(BaseModel):
    lecturer_id: str
    title: Optional[str] = None
    price: Optional[int] = None
    total_lessons: int = 0
    study_group_id: Optional[str] = None


class CreateAffiliateLinkRequest(BaseModel):
    lecturer_id: str
    course_id: str
    campaign_name: Optional[str] = None
    code: Optional[str] = None


class RecordConversionRequest(BaseModel):
    affiliate_code: str
    course_id: str
    course_price: int
    student_id: str
    course_name: Optional[str] = None
    idempotency_key: Optional[str] = None


class PayoutRequest(BaseModel):
    amount: Optional[int] = Field(default=None, description="Must equal the approved total when given")
    bank_details: BankDetails


class PayoutStatusChange(BaseModel):
    status: PayoutStatus


# Records

class Transaction(BaseModel):
    id: UUID
    buyer_id: str
    course_id: str
    lecturer_id: str
    amount: int
    platform_fee: int
    lecturer_earning: int
    fee_rate: Decimal
    external_reference: str
    payment_method: str = "paystack"
    currency: str = "NGN"
    metadata: dict = Field(default_factory=dict)
    created_at: datetime

    model_config = ConfigDict(from_attributes=True, frozen=True)


class Enrollment(BaseModel):
    id: UUID
    student_id: str
    course_id: str
    lecturer_id: str
    completed_lessons: list[str] = Field(default_factory=list)
    progress: int = 0
    payment_reference: Optional[str] = None
    amount_paid: Optional[int] = None
    enrolled_at: datetime
    last_accessed_at: datetime
    version: int = 0

    model_config = ConfigDict(from_attributes=True)

    def has_completed(self, lesson_id: str) -> bool:
        return lesson_id in self.completed_lessons


class Withdrawal(BaseModel):
    id: UUID
    lecturer_id: str
    amount: int
    bank_details: BankDetails
    status: WithdrawalStatus
    reference: str
    requested_at: datetime
    processed_at: Optional[datetime] = None
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)

    def can_transition_to(self, status: WithdrawalStatus) -> bool:
        return status in WITHDRAWAL_TRANSITIONS[self.status]

    def holds_reservation(self) -> bool:
        return self.status != WithdrawalStatus.FAILED


class AffiliateLink(BaseModel):
    id: UUID
    code: str
    lecturer_id: str
    course_id: str
    campaign_name: Optional[str] = None
    click_count: int = 0
    conversion_count: int = 0
    revenue: int = 0
    is_active: bool = True
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class Commission(BaseModel):
    id: UUID
    affiliate_id: str
    affiliate_name: Optional[str] = None
    affiliate_code: str
    course_id: str
    course_name: Optional[str] = None
    course_price: int
    commission_rate: Decimal
    commission_amount: int
    student_id: str
    status: CommissionStatus
    payout_id: Optional[UUID] = None
    idempotency_key: Optional[str] = None
    created_at: datetime
    approved_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)

    def can_transition_to(self, status: CommissionStatus) -> bool:
        return status in COMMISSION_TRANSITIONS[self.status]


class AffiliatePayout(BaseModel):
    id: UUID
    affiliate_id: str
    amount: int
    bank_details: BankDetails
    status: PayoutStatus
    commission_ids: list[UUID] = Field(default_factory=list)
    requested_at: datetime
    processed_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)

    def can_transition_to(self, status: PayoutStatus) -> bool:
        return status in PAYOUT_TRANSITIONS[self.status]


class LecturerAccount(BaseModel):
    lecturer_id: str
    total_earnings: int = 0
    pending_withdrawal: int = 0

    model_config = ConfigDict(from_attributes=True)


class CourseStats(BaseModel):
    course_id: str
    lecturer_id: Optional[str] = None
    title: Optional[str] = None
    price: Optional[int] = None
    total_lessons: int = 0
    study_group_id: Optional[str] = None
    total_students: int = 0
    total_revenue: int = 0

    model_config = ConfigDict(from_attributes=True)


# Responses / read models

class TransactionResponse(BaseModel):
    transaction: Transaction
    created: bool
    message: str


class EnrollmentResponse(BaseModel):
    enrollment: Enrollment
    created: bool
    message: str


class EnrollmentProgress(BaseModel):
    enrollment_id: UUID
    progress: int
    completed_lessons: list[str]


class WithdrawalResponse(BaseModel):
    withdrawal: Withdrawal
    available_balance: int
    created: bool
    message: str


class CommissionResponse(BaseModel):
    commission: Commission
    created: bool
    message: str


class CommissionSummary(BaseModel):
    affiliate_id: str
    total_conversions: int = 0
    total_commissions: int = 0
    pending_count: int = 0
    pending_amount: int = 0
    approved_count: int = 0
    approved_amount: int = 0
    processing_count: int = 0
    processing_amount: int = 0
    paid_count: int = 0
    paid_amount: int = 0


class LecturerEarnings(BaseModel):
    lecturer_id: str
    total: int
    this_month: int
    pending: int
    paid: int
    transactions: list[Transaction]


class ReconciliationReport(BaseModel):
    lecturer_id: str
    expected_total_earnings: int
    recorded_total_earnings: int
    expected_pending_withdrawal: int
    recorded_pending_withdrawal: int
    applied: bool = False

    @computed_field
    @property
    def earnings_drift(self) -> int:
        return self.recorded_total_earnings - self.expected_total_earnings

    @computed_field
    @property
    def balance_drift(self) -> int:
        return self.recorded_pending_withdrawal - self.expected_pending_withdrawal

    @computed_field
    @property
    def in_sync(self) -> bool:
        return self.earnings_drift == 0 and self.balance_drift == 0
