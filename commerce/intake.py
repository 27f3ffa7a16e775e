"""
Payment confirmation intake.

A verified sale runs through a prioritized list of steps. Critical steps
(money of record, content access) abort the intake on failure; best-effort
steps (study group, affiliate tracking) are logged and recorded in the result
but never fail the sale and are never retried inline.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional

from pydantic import BaseModel

from .collaborators import CourseCatalog, StudyGroupDirectory
from .commissions import AffiliateCommissionLedger
from .enrollments import EnrollmentProgressTracker
from .models import (
    Enrollment,
    EnrollRequest,
    PaymentConfirmed,
    RecordConversionRequest,
    RecordTransactionRequest,
    Transaction,
)
from .transactions import TransactionLedger

logger = logging.getLogger(__name__)


class StepPolicy(str, Enum):
    CRITICAL = "critical"
    BEST_EFFORT = "best_effort"


class StepStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


class StepOutcome(BaseModel):
    name: str
    policy: StepPolicy
    status: StepStatus
    detail: Optional[str] = None


class IntakeResult(BaseModel):
    transaction: Transaction
    enrollment: Enrollment
    replayed: bool
    steps: list[StepOutcome]

    def outcome(self, name: str) -> Optional[StepOutcome]:
        return next((s for s in self.steps if s.name == name), None)


class StepSkipped(Exception):
    pass


@dataclass
class IntakeContext:
    event: PaymentConfirmed
    transaction: Optional[Transaction] = None
    enrollment: Optional[Enrollment] = None
    replayed: bool = False
    outcomes: list = field(default_factory=list)


@dataclass
class IntakeStep:
    name: str
    policy: StepPolicy
    run: Callable[[IntakeContext], Optional[str]]
    applies: Callable[[PaymentConfirmed], bool] = lambda event: True


class PaymentConfirmationIntake:
    def __init__(
        self,
        transactions: TransactionLedger,
        enrollments: EnrollmentProgressTracker,
        commissions: AffiliateCommissionLedger,
        catalog: CourseCatalog,
        study_groups: StudyGroupDirectory,
    ):
        self.transactions = transactions
        self.enrollments = enrollments
        self.commissions = commissions
        self.catalog = catalog
        self.study_groups = study_groups
        self.steps = [
            IntakeStep("record_transaction", StepPolicy.CRITICAL, self._record_transaction),
            IntakeStep("enroll_student", StepPolicy.CRITICAL, self._enroll_student),
            IntakeStep("join_study_group", StepPolicy.BEST_EFFORT, self._join_study_group),
            IntakeStep(
                "affiliate_commission", StepPolicy.BEST_EFFORT, self._affiliate_commission,
                applies=lambda event: bool(event.affiliate_code),
            ),
        ]

    def handle(self, event: PaymentConfirmed) -> IntakeResult:
        context = IntakeContext(event=event)

        for step in self.steps:
            if not step.applies(event):
                context.outcomes.append(StepOutcome(name=step.name, policy=step.policy, status=StepStatus.SKIPPED))
                continue
            try:
                detail = step.run(context)
            except StepSkipped as e:
                context.outcomes.append(
                    StepOutcome(name=step.name, policy=step.policy, status=StepStatus.SKIPPED, detail=str(e))
                )
                continue
            except Exception as e:
                if step.policy == StepPolicy.CRITICAL:
                    logger.error(f"Critical step {step.name} failed for payment {event.external_reference}: {e}")
                    raise
                logger.error(
                    f"Best-effort step {step.name} failed for payment {event.external_reference}: {e}",
                    exc_info=True,
                )
                context.outcomes.append(
                    StepOutcome(name=step.name, policy=step.policy, status=StepStatus.FAILED, detail=str(e))
                )
                continue
            context.outcomes.append(
                StepOutcome(name=step.name, policy=step.policy, status=StepStatus.SUCCEEDED, detail=detail)
            )

        return IntakeResult(
            transaction=context.transaction,
            enrollment=context.enrollment,
            replayed=context.replayed,
            steps=context.outcomes,
        )

    def _record_transaction(self, context: IntakeContext) -> str:
        event = context.event
        response = self.transactions.record(RecordTransactionRequest(
            buyer_id=event.buyer_id,
            course_id=event.course_id,
            lecturer_id=event.lecturer_id,
            amount=event.amount,
            external_reference=event.external_reference,
            metadata={"course_name": event.course_name} if event.course_name else {},
        ))
        context.transaction = response.transaction
        context.replayed = not response.created
        return response.message

    def _enroll_student(self, context: IntakeContext) -> str:
        event = context.event
        response = self.enrollments.enroll(EnrollRequest(
            student_id=event.buyer_id,
            course_id=event.course_id,
            lecturer_id=event.lecturer_id,
            payment_reference=event.external_reference,
            amount_paid=event.amount,
        ))
        context.enrollment = response.enrollment
        return response.message

    def _join_study_group(self, context: IntakeContext) -> str:
        group_id = self.catalog.study_group_for(context.event.course_id)
        if not group_id:
            raise StepSkipped("Course has no linked study group")
        self.study_groups.add_member(group_id, context.event.buyer_id)
        logger.info(f"Auto-enrolled student {context.event.buyer_id} in study group {group_id}")
        return group_id

    def _affiliate_commission(self, context: IntakeContext) -> str:
        event = context.event
        response = self.commissions.record_conversion(RecordConversionRequest(
            affiliate_code=event.affiliate_code,
            course_id=event.course_id,
            course_price=event.amount,
            student_id=event.buyer_id,
            course_name=event.course_name,
            idempotency_key=event.external_reference,
        ))
        return str(response.commission.id)
