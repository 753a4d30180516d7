"""
Domain subpackage for the settlement feature.
"""

from .errors import (
    AlreadySettled,
    Forbidden,
    InvalidTransition,
    NotFound,
    PayoutFailed,
    PreconditionFailed,
    SettlementError,
)
from .models import (
    CallerRole,
    EntityType,
    FeedbackEntry,
    JobOffer,
    JobOfferStatus,
    OfferDetails,
    PartyRole,
    PaymentStatus,
    PayoutOperation,
    PayoutOutcome,
    PayoutRecord,
    PayoutRecordState,
    PayoutResult,
    Referral,
    ReferralPayoutLimits,
    ReferralStatus,
    Session,
    SessionFeedback,
    SessionStatus,
    SessionVerification,
)

__all__ = [
    "AlreadySettled",
    "CallerRole",
    "EntityType",
    "FeedbackEntry",
    "Forbidden",
    "InvalidTransition",
    "JobOffer",
    "JobOfferStatus",
    "NotFound",
    "OfferDetails",
    "PartyRole",
    "PaymentStatus",
    "PayoutFailed",
    "PayoutOperation",
    "PayoutOutcome",
    "PayoutRecord",
    "PayoutRecordState",
    "PayoutResult",
    "PreconditionFailed",
    "Referral",
    "ReferralPayoutLimits",
    "ReferralStatus",
    "Session",
    "SessionFeedback",
    "SessionStatus",
    "SessionVerification",
    "SettlementError",
]
