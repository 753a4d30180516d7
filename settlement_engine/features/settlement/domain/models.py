"""
Domain models for the settlement feature.

Sessions, referrals and job offers are plain dataclasses mirroring their
table rows. Status enums are ``str`` subclasses so they compare equal to the
values stored in Postgres and serialise cleanly in API responses.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from decimal import Decimal
from enum import Enum


class SessionStatus(str, Enum):
    """Lifecycle of the meeting itself."""

    REQUESTED = "requested"
    SCHEDULED = "scheduled"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    NO_SHOW = "no-show"


class PaymentStatus(str, Enum):
    """Custody of the session funds, independent of ``SessionStatus``."""

    PENDING = "pending"
    PAID = "paid"
    RELEASED = "released"
    REFUNDED = "refunded"


class ReferralStatus(str, Enum):
    PENDING = "pending"
    VERIFIED = "verified"
    REWARDED = "rewarded"
    REJECTED = "rejected"


class JobOfferStatus(str, Enum):
    REPORTED = "reported"
    CONFIRMED = "confirmed"
    PAID = "paid"


class PartyRole(str, Enum):
    """Side of a session a job-offer claim comes from."""

    CANDIDATE = "candidate"
    PROFESSIONAL = "professional"

    @classmethod
    def from_caller(cls, caller_role: "CallerRole") -> "PartyRole | None":
        """Map an authenticated caller role onto a session side."""
        if caller_role == CallerRole.SEEKER:
            return cls.CANDIDATE
        if caller_role == CallerRole.PROFESSIONAL:
            return cls.PROFESSIONAL
        return None


class CallerRole(str, Enum):
    """Role of the already-authenticated caller of an operation."""

    SEEKER = "seeker"
    PROFESSIONAL = "professional"
    ADMIN = "admin"
    SYSTEM = "system"

    @property
    def is_privileged(self) -> bool:
        return self in (CallerRole.ADMIN, CallerRole.SYSTEM)


class EntityType(str, Enum):
    SESSION = "session"
    REFERRAL = "referral"
    JOB_OFFER = "job_offer"


class PayoutOperation(str, Enum):
    PAYOUT = "payout"
    REFUND = "refund"


class PayoutRecordState(str, Enum):
    IN_FLIGHT = "in_flight"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    UNKNOWN = "unknown"
    # Outcome cannot be settled automatically; an operator resolves it.
    NEEDS_REVIEW = "needs_review"


class PayoutOutcome(str, Enum):
    ACCEPTED = "accepted"
    ALREADY_SETTLED = "already_settled"
    FAILED = "failed"


@dataclass(slots=True)
class FeedbackEntry:
    """One side's feedback on a session."""

    provided_at: datetime
    rating: int | None = None
    comment: str | None = None


@dataclass(slots=True)
class SessionFeedback:
    seeker: FeedbackEntry | None = None
    professional: FeedbackEntry | None = None

    def for_role(self, role: PartyRole) -> FeedbackEntry | None:
        return self.seeker if role == PartyRole.CANDIDATE else self.professional

    def is_bilateral(self) -> bool:
        """Both sides have provided feedback."""
        return bool(
            self.seeker
            and self.seeker.provided_at
            and self.professional
            and self.professional.provided_at
        )


@dataclass(slots=True, frozen=True)
class SessionVerification:
    """Immutable attendance evidence. Rows are append-only; highest sequence wins."""

    session_id: str
    verified: bool
    method: str
    duration_minutes: int | None = None
    participant_count: int | None = None
    reason: str | None = None
    received_at: datetime | None = None
    sequence: int | None = None


@dataclass(slots=True)
class Session:
    """Represents a sessions row plus its latest verification."""

    id: str
    seeker_id: str
    professional_id: str
    start_time: datetime
    end_time: datetime
    amount: Decimal
    payout_account: str | None = None
    currency: str = "usd"
    status: SessionStatus = SessionStatus.REQUESTED
    payment_status: PaymentStatus = PaymentStatus.PENDING
    payment_reference: str | None = None
    payout_reference: str | None = None
    feedback: SessionFeedback = field(default_factory=SessionFeedback)
    verification: SessionVerification | None = None
    cancel_reason: str | None = None
    refund_reason: str | None = None
    released_at: datetime | None = None
    refunded_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def participant_role(self, user_id: str) -> PartyRole | None:
        if user_id == self.seeker_id:
            return PartyRole.CANDIDATE
        if user_id == self.professional_id:
            return PartyRole.PROFESSIONAL
        return None

    @property
    def is_verified(self) -> bool:
        return bool(self.verification and self.verification.verified)


@dataclass(slots=True)
class Referral:
    """Represents a referrals row."""

    id: str
    referrer_id: str
    candidate_email: str
    company_domain: str | None = None
    payout_account: str | None = None
    status: ReferralStatus = ReferralStatus.PENDING
    email_domain_verified: bool = False
    reward_amount: Decimal | None = None
    currency: str = "usd"
    payout_date: datetime | None = None
    payout_reference: str | None = None
    verified_at: datetime | None = None
    rejected_reason: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(slots=True)
class OfferDetails:
    position: str | None = None
    start_date: date | None = None
    salary: Decimal | None = None


@dataclass(slots=True)
class JobOffer:
    """Represents a job_offers row."""

    id: str
    session_id: str
    candidate_id: str
    professional_id: str
    company_id: str
    reported_by: PartyRole
    bonus_amount: Decimal
    payout_account: str | None = None
    currency: str = "usd"
    offer_details: OfferDetails = field(default_factory=OfferDetails)
    status: JobOfferStatus = JobOfferStatus.REPORTED
    confirmed_by: PartyRole | None = None
    payout_reference: str | None = None
    reported_at: datetime | None = None
    confirmed_at: datetime | None = None
    paid_at: datetime | None = None
    updated_at: datetime | None = None

    def participant_role(self, user_id: str) -> PartyRole | None:
        if user_id == self.candidate_id:
            return PartyRole.CANDIDATE
        if user_id == self.professional_id:
            return PartyRole.PROFESSIONAL
        return None


@dataclass(slots=True)
class PayoutRecord:
    """The orchestrator's own record of one external payout or refund request."""

    idempotency_key: str
    entity_type: EntityType
    entity_id: str
    operation: PayoutOperation
    amount: Decimal
    currency: str
    destination: str | None
    state: PayoutRecordState = PayoutRecordState.IN_FLIGHT
    processor_reference: str | None = None
    error: str | None = None
    attempts: int = 1
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(slots=True, frozen=True)
class PayoutResult:
    """Result of a settlement request; ``already_settled`` is a benign no-op."""

    outcome: PayoutOutcome
    entity_type: EntityType
    entity_id: str
    idempotency_key: str | None = None
    amount: Decimal | None = None
    processor_reference: str | None = None
    reason: str | None = None

    @property
    def accepted(self) -> bool:
        return self.outcome == PayoutOutcome.ACCEPTED

    @property
    def already_settled(self) -> bool:
        return self.outcome == PayoutOutcome.ALREADY_SETTLED


@dataclass(slots=True, frozen=True)
class ReferralPayoutLimits:
    """
    Per-referrer payout policy, checked again inside the settlement claim.

    ``max_rewards`` and ``cooldown_days`` of 0 disable the respective check.
    """

    referrer_id: str
    max_rewards: int
    cooldown_days: int
    now: datetime

    @property
    def enabled(self) -> bool:
        return self.max_rewards > 0 or self.cooldown_days > 0

    def violation(self, rewarded_count: int, last_payout: datetime | None) -> str | None:
        """Return why the referrer cannot be paid right now, or None."""
        if self.max_rewards > 0 and rewarded_count >= self.max_rewards:
            return f"Referrer has reached the maximum of {self.max_rewards} rewarded referrals"
        if self.cooldown_days > 0 and last_payout is not None:
            next_allowed = last_payout + timedelta(days=self.cooldown_days)
            if self.now < next_allowed:
                return f"Referrer is in payout cooldown until {next_allowed.isoformat()}"
        return None
