"""
Request and response models for the settlement routes.

Domain dataclasses stay inside the service layer; these models are what
goes over the wire.
"""

from datetime import date, datetime
from decimal import Decimal

from pydantic import BaseModel, Field

from settlement_engine.features.settlement.domain import (
    JobOffer,
    PartyRole,
    PayoutResult,
    Referral,
    Session,
)

# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------


class CreateSessionRequest(BaseModel):
    seeker_id: str = Field(..., min_length=1)
    professional_id: str = Field(..., min_length=1)
    start_time: datetime
    end_time: datetime
    amount: Decimal = Field(..., gt=0, description="Session price held in escrow")
    payout_account: str | None = Field(default=None, description="Professional's payout account")
    currency: str | None = None


class ConfirmScheduleRequest(BaseModel):
    start_time: datetime
    end_time: datetime


class RecordPaymentRequest(BaseModel):
    payment_reference: str = Field(..., min_length=1, description="Processor charge id")


class FeedbackRequest(BaseModel):
    role: PartyRole
    rating: int | None = Field(default=None, ge=1, le=5)
    comment: str | None = Field(default=None, max_length=2000)


class ReleasePaymentRequest(BaseModel):
    admin_override: bool = False
    idempotency_key: str | None = None


class RefundRequest(BaseModel):
    reason: str = Field(..., min_length=1)
    idempotency_key: str | None = None


class ReasonRequest(BaseModel):
    reason: str | None = None


class CreateReferralRequest(BaseModel):
    candidate_email: str = Field(..., min_length=3)
    company_domain: str | None = None
    payout_account: str | None = None


class VerifyReferralRequest(BaseModel):
    reward_amount: Decimal = Field(..., gt=0)


class RejectReferralRequest(BaseModel):
    reason: str = Field(..., min_length=1)


class PayoutRequest(BaseModel):
    idempotency_key: str | None = None


class ReportOfferRequest(BaseModel):
    session_id: str = Field(..., min_length=1)
    reporter_role: PartyRole
    company_id: str = Field(..., min_length=1)
    committed_bonus: Decimal = Field(..., gt=0, description="Candidate's committed offer bonus")
    position: str | None = None
    start_date: date | None = None
    salary: Decimal | None = None


class ConfirmOfferRequest(BaseModel):
    confirmer_role: PartyRole


# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------


class FeedbackEntryResponse(BaseModel):
    provided_at: datetime
    rating: int | None = None
    comment: str | None = None


class VerificationResponse(BaseModel):
    verified: bool
    method: str
    duration_minutes: int | None = None
    participant_count: int | None = None
    reason: str | None = None
    received_at: datetime | None = None


class SessionResponse(BaseModel):
    id: str
    seeker_id: str
    professional_id: str
    start_time: datetime
    end_time: datetime
    amount: Decimal
    currency: str
    status: str
    payment_status: str
    seeker_feedback: FeedbackEntryResponse | None = None
    professional_feedback: FeedbackEntryResponse | None = None
    verification: VerificationResponse | None = None
    payout_reference: str | None = None
    cancel_reason: str | None = None
    refund_reason: str | None = None
    released_at: datetime | None = None
    refunded_at: datetime | None = None

    @classmethod
    def from_domain(cls, session: Session) -> "SessionResponse":
        def _feedback(entry):
            if entry is None:
                return None
            return FeedbackEntryResponse(
                provided_at=entry.provided_at, rating=entry.rating, comment=entry.comment
            )

        verification = None
        if session.verification is not None:
            v = session.verification
            verification = VerificationResponse(
                verified=v.verified,
                method=v.method,
                duration_minutes=v.duration_minutes,
                participant_count=v.participant_count,
                reason=v.reason,
                received_at=v.received_at,
            )

        return cls(
            id=session.id,
            seeker_id=session.seeker_id,
            professional_id=session.professional_id,
            start_time=session.start_time,
            end_time=session.end_time,
            amount=session.amount,
            currency=session.currency,
            status=session.status.value,
            payment_status=session.payment_status.value,
            seeker_feedback=_feedback(session.feedback.seeker),
            professional_feedback=_feedback(session.feedback.professional),
            verification=verification,
            payout_reference=session.payout_reference,
            cancel_reason=session.cancel_reason,
            refund_reason=session.refund_reason,
            released_at=session.released_at,
            refunded_at=session.refunded_at,
        )


class ReferralResponse(BaseModel):
    id: str
    referrer_id: str
    candidate_email: str
    company_domain: str | None = None
    status: str
    email_domain_verified: bool
    reward_amount: Decimal | None = None
    currency: str
    payout_date: datetime | None = None
    rejected_reason: str | None = None

    @classmethod
    def from_domain(cls, referral: Referral) -> "ReferralResponse":
        return cls(
            id=referral.id,
            referrer_id=referral.referrer_id,
            candidate_email=referral.candidate_email,
            company_domain=referral.company_domain,
            status=referral.status.value,
            email_domain_verified=referral.email_domain_verified,
            reward_amount=referral.reward_amount,
            currency=referral.currency,
            payout_date=referral.payout_date,
            rejected_reason=referral.rejected_reason,
        )


class JobOfferResponse(BaseModel):
    id: str
    session_id: str
    candidate_id: str
    professional_id: str
    company_id: str
    reported_by: str
    confirmed_by: str | None = None
    status: str
    bonus_amount: Decimal
    currency: str
    position: str | None = None
    start_date: date | None = None
    salary: Decimal | None = None
    reported_at: datetime | None = None
    confirmed_at: datetime | None = None
    paid_at: datetime | None = None

    @classmethod
    def from_domain(cls, offer: JobOffer) -> "JobOfferResponse":
        return cls(
            id=offer.id,
            session_id=offer.session_id,
            candidate_id=offer.candidate_id,
            professional_id=offer.professional_id,
            company_id=offer.company_id,
            reported_by=offer.reported_by.value,
            confirmed_by=offer.confirmed_by.value if offer.confirmed_by else None,
            status=offer.status.value,
            bonus_amount=offer.bonus_amount,
            currency=offer.currency,
            position=offer.offer_details.position,
            start_date=offer.offer_details.start_date,
            salary=offer.offer_details.salary,
            reported_at=offer.reported_at,
            confirmed_at=offer.confirmed_at,
            paid_at=offer.paid_at,
        )


class PayoutResultResponse(BaseModel):
    outcome: str
    entity_type: str
    entity_id: str
    idempotency_key: str | None = None
    amount: Decimal | None = None
    processor_reference: str | None = None
    reason: str | None = None

    @classmethod
    def from_domain(cls, result: PayoutResult) -> "PayoutResultResponse":
        return cls(
            outcome=result.outcome.value,
            entity_type=result.entity_type.value,
            entity_id=result.entity_id,
            idempotency_key=result.idempotency_key,
            amount=result.amount,
            processor_reference=result.processor_reference,
            reason=result.reason,
        )


class CancelSessionResponse(BaseModel):
    session: SessionResponse
    refund: PayoutResultResponse | None = None
    refund_deferred: bool = False


class ReconcileResponse(BaseModel):
    resumed: int
    retried: int
    refunded: int
    failed: int
    needs_review: int = 0
