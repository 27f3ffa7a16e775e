from uuid import UUID
from fastapi import FastAPI, Query, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .balances import BalanceAggregator
from .collaborators import InMemoryCourseCatalog, InMemoryStudyGroups, InMemoryUserDirectory
from .commissions import AffiliateCommissionLedger
from .config import configure_logging, settings
from .enrollments import EnrollmentProgressTracker
from .errors import (
    ConcurrencyConflictError,
    IdempotencyConflictError,
    InvalidStateTransitionError,
    LedgerServiceError,
    LedgerValidationError,
    RecordNotFoundError,
)
from .intake import IntakeResult, PaymentConfirmationIntake
from .models import (
    AffiliateLink,
    AffiliatePayout,
    Commission,
    CommissionSummary,
    CourseStats,
    CourseUpsert,
    CreateAffiliateLinkRequest,
    EnrollmentProgress,
    EnrollmentResponse,
    EnrollRequest,
    LecturerEarnings,
    LessonCompleted,
    PaymentConfirmed,
    PayoutRequest,
    PayoutStatusChange,
    ReconciliationReport,
    Transaction,
    Withdrawal,
    WithdrawalRequest,
    WithdrawalResponse,
    WithdrawalStatusChange,
)
from .storage import InMemoryStorage
from .transactions import TransactionLedger
from .withdrawals import WithdrawalLedger

configure_logging()

app = FastAPI(
    title="Course Commerce Ledger API",
    description="Sale proceeds, enrollment progress, lecturer withdrawals and affiliate commissions",
    version="1.0.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

storage = InMemoryStorage()
catalog = InMemoryCourseCatalog(storage)
study_groups = InMemoryStudyGroups(storage)
users = InMemoryUserDirectory(storage)

transaction_ledger = TransactionLedger(storage, settings)
enrollment_tracker = EnrollmentProgressTracker(storage, catalog, settings)
withdrawal_ledger = WithdrawalLedger(storage, settings)
commission_ledger = AffiliateCommissionLedger(storage, users, settings)
balance_aggregator = BalanceAggregator(storage, transaction_ledger, withdrawal_ledger, settings)
payment_intake = PaymentConfirmationIntake(
    transaction_ledger, enrollment_tracker, commission_ledger, catalog, study_groups,
)

ERROR_STATUS = (
    (LedgerValidationError, status.HTTP_400_BAD_REQUEST),
    (RecordNotFoundError, status.HTTP_404_NOT_FOUND),
    (IdempotencyConflictError, status.HTTP_409_CONFLICT),
    (InvalidStateTransitionError, status.HTTP_409_CONFLICT),
    (ConcurrencyConflictError, status.HTTP_409_CONFLICT),
)


@app.exception_handler(LedgerServiceError)
async def ledger_error_handler(request: Request, exc: LedgerServiceError) -> JSONResponse:
    status_code = next(
        (code for error_type, code in ERROR_STATUS if isinstance(exc, error_type)),
        status.HTTP_500_INTERNAL_SERVER_ERROR,
    )
    return JSONResponse(
        status_code=status_code,
        content={"detail": exc.message, "code": exc.code, "context": exc.context},
    )


@app.get("/health", tags=["System"])
def health_check():
    return {"status": "healthy", "service": "commerce-ledger"}


@app.put("/courses/{course_id}", response_model=CourseStats, tags=["Catalog"])
def upsert_course(course_id: str, request: CourseUpsert) -> CourseStats:
    return catalog.upsert(course_id, request)


@app.post("/payments/confirmed", response_model=IntakeResult, tags=["Payments"])
def payment_confirmed(event: PaymentConfirmed) -> IntakeResult:
    return payment_intake.handle(event)


@app.get("/transactions/{reference}", response_model=Transaction, tags=["Payments"])
def get_transaction(reference: str) -> Transaction:
    return transaction_ledger.get_by_reference(reference)


@app.get("/lecturers/{lecturer_id}/transactions", response_model=list[Transaction], tags=["Lecturers"])
def list_lecturer_transactions(lecturer_id: str, limit: int = Query(50, ge=1)) -> list[Transaction]:
    return transaction_ledger.list_for_lecturer(lecturer_id, limit)


@app.get("/lecturers/{lecturer_id}/earnings", response_model=LecturerEarnings, tags=["Lecturers"])
def get_lecturer_earnings(lecturer_id: str) -> LecturerEarnings:
    return balance_aggregator.earnings(lecturer_id)


@app.get("/lecturers/{lecturer_id}/balance", tags=["Lecturers"])
def get_lecturer_balance(lecturer_id: str):
    return {"lecturer_id": lecturer_id, "available_balance": balance_aggregator.available_balance(lecturer_id)}


@app.post("/lecturers/{lecturer_id}/reconcile", response_model=ReconciliationReport, tags=["Lecturers"])
def reconcile_lecturer(lecturer_id: str, apply: bool = True) -> ReconciliationReport:
    return balance_aggregator.reconcile(lecturer_id, apply=apply)


@app.get("/lecturers/{lecturer_id}/withdrawals", response_model=list[Withdrawal], tags=["Withdrawals"])
def list_lecturer_withdrawals(lecturer_id: str) -> list[Withdrawal]:
    return withdrawal_ledger.list_for_lecturer(lecturer_id)


@app.post("/enrollments", response_model=EnrollmentResponse, tags=["Enrollments"])
def enroll(request: EnrollRequest) -> EnrollmentResponse:
    return enrollment_tracker.enroll(request)


@app.get("/enrollments/{enrollment_id}/progress", response_model=EnrollmentProgress, tags=["Enrollments"])
def get_enrollment_progress(enrollment_id: UUID) -> EnrollmentProgress:
    return enrollment_tracker.get_progress(enrollment_id)


@app.post("/enrollments/{enrollment_id}/lessons/complete", response_model=EnrollmentProgress, tags=["Enrollments"])
def complete_lesson(enrollment_id: UUID, request: LessonCompleted) -> EnrollmentProgress:
    enrollment_tracker.complete_lesson(enrollment_id, request.lesson_id)
    return enrollment_tracker.get_progress(enrollment_id)


@app.post("/enrollments/{enrollment_id}/sync", response_model=EnrollmentProgress, tags=["Enrollments"])
def sync_enrollment_progress(enrollment_id: UUID) -> EnrollmentProgress:
    enrollment_tracker.sync_progress(enrollment_id)
    return enrollment_tracker.get_progress(enrollment_id)


@app.post("/withdrawals", response_model=WithdrawalResponse, status_code=status.HTTP_201_CREATED, tags=["Withdrawals"])
def request_withdrawal(request: WithdrawalRequest) -> WithdrawalResponse:
    return withdrawal_ledger.request(request)


@app.post("/withdrawals/{withdrawal_id}/status", response_model=Withdrawal, tags=["Withdrawals"])
def change_withdrawal_status(withdrawal_id: UUID, request: WithdrawalStatusChange) -> Withdrawal:
    return withdrawal_ledger.transition(withdrawal_id, request.status)


@app.post("/affiliate-links", response_model=AffiliateLink, status_code=status.HTTP_201_CREATED, tags=["Affiliates"])
def create_affiliate_link(request: CreateAffiliateLinkRequest) -> AffiliateLink:
    return commission_ledger.create_link(request)


@app.post("/affiliate-links/{code}/click", tags=["Affiliates"])
def track_affiliate_click(code: str):
    link = commission_ledger.track_click(code)
    return {"code": code, "tracked": link is not None}


@app.post("/commissions/{commission_id}/approve", response_model=Commission, tags=["Affiliates"])
def approve_commission(commission_id: UUID) -> Commission:
    return commission_ledger.approve(commission_id)


@app.post("/commissions/{commission_id}/paid", response_model=Commission, tags=["Affiliates"])
def mark_commission_paid(commission_id: UUID) -> Commission:
    return commission_ledger.mark_paid(commission_id)


@app.get("/affiliates/{affiliate_id}/commissions", response_model=list[Commission], tags=["Affiliates"])
def list_affiliate_commissions(affiliate_id: str) -> list[Commission]:
    return commission_ledger.list_for_affiliate(affiliate_id)


@app.get("/affiliates/{affiliate_id}/commissions/summary", response_model=CommissionSummary, tags=["Affiliates"])
def get_commission_summary(affiliate_id: str) -> CommissionSummary:
    return commission_ledger.summary(affiliate_id)


@app.post("/affiliates/{affiliate_id}/payouts", response_model=AffiliatePayout, status_code=status.HTTP_201_CREATED, tags=["Affiliates"])
def request_affiliate_payout(affiliate_id: str, request: PayoutRequest) -> AffiliatePayout:
    return commission_ledger.request_payout(affiliate_id, request)


@app.post("/payouts/{payout_id}/status", response_model=AffiliatePayout, tags=["Affiliates"])
def change_payout_status(payout_id: UUID, request: PayoutStatusChange) -> AffiliatePayout:
    return commission_ledger.transition_payout(payout_id, request.status)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
