import logging
from typing import Optional
from uuid import UUID, uuid4

from .collaborators import InMemoryUserDirectory, UserDirectory
from .config import Settings, settings as default_settings
from .errors import (
    CommissionNotFoundError,
    IdempotencyConflictError,
    InvalidAmountError,
    InvalidStateTransitionError,
    MissingFieldError,
    NothingToPayOutError,
    PayoutNotFoundError,
    UnknownAffiliateCodeError,
)
from .models import (
    AffiliateLink,
    AffiliatePayout,
    Commission,
    CommissionResponse,
    CommissionStatus,
    CommissionSummary,
    CreateAffiliateLinkRequest,
    PayoutRequest,
    PayoutStatus,
    RecordConversionRequest,
    apply_rate,
)
from .storage import InMemoryStorage
from .withdrawals import validate_bank_details

logger = logging.getLogger(__name__)


class AffiliateCommissionLedger:
    def __init__(
        self,
        storage: Optional[InMemoryStorage] = None,
        users: Optional[UserDirectory] = None,
        settings: Optional[Settings] = None,
    ):
        self.storage = storage or InMemoryStorage()
        self.users = users or InMemoryUserDirectory(self.storage)
        self.settings = settings or default_settings

    # Affiliate links

    def create_link(self, request: CreateAffiliateLinkRequest) -> AffiliateLink:
        if not request.lecturer_id or not request.course_id:
            raise MissingFieldError("lecturer_id and course_id are required")

        now = self.storage.now()
        code = request.code or (
            f"{request.lecturer_id[:6]}_{request.course_id[:6]}_{int(now.timestamp() * 1000)}"
        )
        link_data = {
            "id": uuid4(),
            "code": code,
            "lecturer_id": request.lecturer_id,
            "course_id": request.course_id,
            "campaign_name": request.campaign_name,
            "click_count": 0,
            "conversion_count": 0,
            "revenue": 0,
            "is_active": True,
            "created_at": now,
            "updated_at": now,
        }
        with self.storage.atomic():
            if self.storage.get("affiliate_links", code):
                raise IdempotencyConflictError(f"Affiliate code {code} is already in use")
            self.storage.put("affiliate_links", code, link_data)

        logger.info(f"Created affiliate link {code} for {request.lecturer_id} / {request.course_id}")
        return AffiliateLink(**link_data)

    def resolve(self, code: str) -> Optional[AffiliateLink]:
        data = self.storage.get("affiliate_links", code)
        if not data or not data["is_active"]:
            return None
        return AffiliateLink(**data)

    def track_click(self, code: str) -> Optional[AffiliateLink]:
        with self.storage.atomic():
            if not self.resolve(code):
                return None
            data = self.storage.increment("affiliate_links", code, click_count=1)
        return AffiliateLink(**data)

    # Commissions

    def record_conversion(self, request: RecordConversionRequest) -> CommissionResponse:
        if request.course_price <= 0:
            raise InvalidAmountError(f"Course price must be positive, got {request.course_price}")

        link = self.resolve(request.affiliate_code)
        if not link:
            raise UnknownAffiliateCodeError(
                f"Affiliate code {request.affiliate_code} not found",
                context={"affiliate_code": request.affiliate_code},
            )

        # the display name is decoration only
        try:
            affiliate_name = self.users.display_name(link.lecturer_id)
        except Exception:
            logger.warning(f"Could not fetch display name for affiliate {link.lecturer_id}", exc_info=True)
            affiliate_name = None

        with self.storage.atomic():
            existing = self._check_idempotency(request)
            if existing:
                logger.info(f"Commission {existing.id} already recorded for key {request.idempotency_key}")
                return CommissionResponse(
                    commission=existing,
                    created=False,
                    message="Commission already exists (idempotent return)",
                )

            rate = self.settings.affiliate_commission_rate
            now = self.storage.now()
            commission_id = uuid4()
            commission_data = {
                "id": commission_id,
                "affiliate_id": link.lecturer_id,
                "affiliate_name": affiliate_name or "Unknown Lecturer",
                "affiliate_code": link.code,
                "course_id": request.course_id,
                "course_name": request.course_name,
                "course_price": request.course_price,
                "commission_rate": rate,
                "commission_amount": apply_rate(request.course_price, rate),
                "student_id": request.student_id,
                "status": CommissionStatus.PENDING,
                "payout_id": None,
                "idempotency_key": request.idempotency_key,
                "created_at": now,
                "approved_at": None,
                "paid_at": None,
                "updated_at": now,
            }
            self.storage.put("commissions", commission_id, commission_data)
            if request.idempotency_key:
                self.storage.put("commission_index", request.idempotency_key, commission_id)
            self.storage.increment(
                "affiliate_links", link.code, conversion_count=1, revenue=request.course_price,
            )

        logger.info(
            f"Commission {commission_id} for affiliate {link.lecturer_id}: "
            f"{commission_data['commission_amount']} at rate {rate}"
        )
        return CommissionResponse(
            commission=Commission(**commission_data),
            created=True,
            message="Commission created successfully",
        )

    def approve(self, commission_id: UUID) -> Commission:
        with self.storage.atomic():
            commission = self.get(commission_id)
            # processing -> approved is reserved for failed payouts
            if commission.status != CommissionStatus.PENDING:
                raise InvalidStateTransitionError(
                    f"Cannot approve commission in {commission.status.value} state"
                )
            return self._transition(commission_id, CommissionStatus.APPROVED)

    def mark_paid(self, commission_id: UUID) -> Commission:
        with self.storage.atomic():
            commission = self.get(commission_id)
            # commissions inside a payout settle with that payout
            if commission.payout_id is not None:
                raise InvalidStateTransitionError(
                    f"Commission {commission_id} belongs to payout {commission.payout_id}",
                    context={"payout_id": str(commission.payout_id)},
                )
            return self._transition(commission_id, CommissionStatus.PAID)

    def get(self, commission_id: UUID) -> Commission:
        data = self.storage.get("commissions", commission_id)
        if not data:
            raise CommissionNotFoundError(f"Commission {commission_id} not found")
        return Commission(**data)

    def list_for_affiliate(self, affiliate_id: str) -> list[Commission]:
        commissions = [
            Commission(**c) for c in self.storage.find("commissions", lambda c: c["affiliate_id"] == affiliate_id)
        ]
        commissions.sort(key=lambda c: c.created_at, reverse=True)
        return commissions

    def summary(self, affiliate_id: str) -> CommissionSummary:
        summary = CommissionSummary(affiliate_id=affiliate_id)
        for commission in self.list_for_affiliate(affiliate_id):
            summary.total_conversions += 1
            summary.total_commissions += commission.commission_amount
            prefix = commission.status.value
            setattr(summary, f"{prefix}_count", getattr(summary, f"{prefix}_count") + 1)
            setattr(summary, f"{prefix}_amount", getattr(summary, f"{prefix}_amount") + commission.commission_amount)
        return summary

    # Payouts

    def request_payout(self, affiliate_id: str, request: PayoutRequest) -> AffiliatePayout:
        validate_bank_details(request.bank_details)

        with self.storage.atomic():
            approved = [
                c for c in self.list_for_affiliate(affiliate_id) if c.status == CommissionStatus.APPROVED
            ]
            if not approved:
                raise NothingToPayOutError(f"Affiliate {affiliate_id} has no approved commissions")

            total = sum(c.commission_amount for c in approved)
            if request.amount is not None and request.amount != total:
                raise InvalidAmountError(
                    f"Payout amount {request.amount} does not match approved commissions total {total}",
                    context={"approved_total": total},
                )

            now = self.storage.now()
            payout_id = uuid4()
            payout_data = {
                "id": payout_id,
                "affiliate_id": affiliate_id,
                "amount": total,
                "bank_details": request.bank_details.model_dump(),
                "status": PayoutStatus.REQUESTED,
                "commission_ids": [c.id for c in approved],
                "requested_at": now,
                "processed_at": None,
            }
            self.storage.put("affiliate_payouts", payout_id, payout_data)
            for commission in approved:
                self._transition(commission.id, CommissionStatus.PROCESSING, payout_id=payout_id)

        logger.info(f"Payout {payout_id} requested by affiliate {affiliate_id}: {total} over {len(approved)} commissions")
        return AffiliatePayout(**payout_data)

    def transition_payout(self, payout_id: UUID, new_status: PayoutStatus) -> AffiliatePayout:
        with self.storage.atomic():
            payout = self.get_payout(payout_id)
            if not payout.can_transition_to(new_status):
                raise InvalidStateTransitionError(
                    f"Cannot move payout from {payout.status.value} to {new_status.value}"
                )

            data = payout.model_dump()
            data["status"] = new_status
            if new_status in (PayoutStatus.COMPLETED, PayoutStatus.FAILED):
                data["processed_at"] = self.storage.now()
            self.storage.put("affiliate_payouts", payout_id, data)

            if new_status == PayoutStatus.COMPLETED:
                for commission_id in payout.commission_ids:
                    self._transition(commission_id, CommissionStatus.PAID)
            elif new_status == PayoutStatus.FAILED:
                for commission_id in payout.commission_ids:
                    self._transition(commission_id, CommissionStatus.APPROVED, payout_id=None)
                logger.warning(f"Payout {payout_id} failed; released {len(payout.commission_ids)} commissions")

        return AffiliatePayout(**data)

    def get_payout(self, payout_id: UUID) -> AffiliatePayout:
        data = self.storage.get("affiliate_payouts", payout_id)
        if not data:
            raise PayoutNotFoundError(f"Payout {payout_id} not found")
        return AffiliatePayout(**data)

    def payout_history(self, affiliate_id: str) -> list[AffiliatePayout]:
        payouts = [
            AffiliatePayout(**p)
            for p in self.storage.find("affiliate_payouts", lambda p: p["affiliate_id"] == affiliate_id)
        ]
        payouts.sort(key=lambda p: p.requested_at, reverse=True)
        return payouts

    def _transition(self, commission_id: UUID, new_status: CommissionStatus, **changes) -> Commission:
        with self.storage.atomic():
            commission = self.get(commission_id)
            if not commission.can_transition_to(new_status):
                raise InvalidStateTransitionError(
                    f"Cannot move commission from {commission.status.value} to {new_status.value}"
                )

            now = self.storage.now()
            data = commission.model_dump()
            data.update(changes)
            data["status"] = new_status
            data["updated_at"] = now
            if new_status == CommissionStatus.APPROVED and commission.status == CommissionStatus.PENDING:
                data["approved_at"] = now
            elif new_status == CommissionStatus.PAID:
                data["paid_at"] = now
            self.storage.put("commissions", commission_id, data)

        return Commission(**data)

    def _check_idempotency(self, request: RecordConversionRequest) -> Optional[Commission]:
        if not request.idempotency_key:
            return None
        commission_id = self.storage.get("commission_index", request.idempotency_key)
        return self.get(commission_id) if commission_id is not None else None
