"""
Transition tables and shared guards for the settlement state machines.

Each machine has its own table; there is no shared base class. Guards that
more than one machine depends on (job-offer reportability, release
eligibility) live here so the rule is stated once.

Session lifecycle:
    REQUESTED → SCHEDULED → IN_PROGRESS → COMPLETED
    any non-terminal → CANCELLED | NO_SHOW

Session payment custody:
    PENDING → PAID → RELEASED
    PENDING | PAID → REFUNDED

Referral:
    PENDING → VERIFIED → REWARDED
    PENDING → REJECTED

Job offer:
    REPORTED → CONFIRMED → PAID
"""

from enum import Enum

from .errors import Forbidden, InvalidTransition, PreconditionFailed
from .models import (
    CallerRole,
    JobOfferStatus,
    PartyRole,
    PaymentStatus,
    ReferralStatus,
    Session,
    SessionStatus,
)

SESSION_TRANSITIONS: dict[SessionStatus, frozenset] = {
    SessionStatus.REQUESTED: frozenset(
        {SessionStatus.SCHEDULED, SessionStatus.CANCELLED, SessionStatus.NO_SHOW}
    ),
    SessionStatus.SCHEDULED: frozenset(
        {
            SessionStatus.IN_PROGRESS,
            SessionStatus.COMPLETED,
            SessionStatus.CANCELLED,
            SessionStatus.NO_SHOW,
        }
    ),
    SessionStatus.IN_PROGRESS: frozenset(
        {SessionStatus.COMPLETED, SessionStatus.CANCELLED, SessionStatus.NO_SHOW}
    ),
    SessionStatus.COMPLETED: frozenset(),
    SessionStatus.CANCELLED: frozenset(),
    SessionStatus.NO_SHOW: frozenset(),
}

PAYMENT_TRANSITIONS: dict[PaymentStatus, frozenset] = {
    PaymentStatus.PENDING: frozenset({PaymentStatus.PAID, PaymentStatus.REFUNDED}),
    PaymentStatus.PAID: frozenset({PaymentStatus.RELEASED, PaymentStatus.REFUNDED}),
    PaymentStatus.RELEASED: frozenset(),
    PaymentStatus.REFUNDED: frozenset(),
}

REFERRAL_TRANSITIONS: dict[ReferralStatus, frozenset] = {
    ReferralStatus.PENDING: frozenset({ReferralStatus.VERIFIED, ReferralStatus.REJECTED}),
    ReferralStatus.VERIFIED: frozenset({ReferralStatus.REWARDED}),
    ReferralStatus.REWARDED: frozenset(),
    ReferralStatus.REJECTED: frozenset(),
}

JOB_OFFER_TRANSITIONS: dict[JobOfferStatus, frozenset] = {
    JobOfferStatus.REPORTED: frozenset({JobOfferStatus.CONFIRMED}),
    JobOfferStatus.CONFIRMED: frozenset({JobOfferStatus.PAID}),
    JobOfferStatus.PAID: frozenset(),
}

_TABLES: dict[type, dict] = {
    SessionStatus: SESSION_TRANSITIONS,
    PaymentStatus: PAYMENT_TRANSITIONS,
    ReferralStatus: REFERRAL_TRANSITIONS,
    JobOfferStatus: JOB_OFFER_TRANSITIONS,
}


def can_transition(current: Enum, target: Enum) -> bool:
    table = _TABLES[type(current)]
    return target in table[current]


def is_terminal(status: Enum) -> bool:
    return not _TABLES[type(status)][status]


def ensure_transition(
    current: Enum,
    target: Enum,
    *,
    entity_type: str,
    entity_id: str,
) -> None:
    """Raise InvalidTransition unless ``current → target`` is in the table."""
    if not can_transition(current, target):
        raise InvalidTransition(
            f"Cannot move {entity_type} {entity_id} from {current.value} to {target.value}",
            current=current.value,
            target=target.value,
            entity_type=entity_type,
            entity_id=entity_id,
        )


def ensure_privileged(caller_role: CallerRole, action: str) -> None:
    """Admin/system-only operations."""
    if not caller_role.is_privileged:
        raise Forbidden(f"Only admin or system callers may {action}")


def ensure_offer_reportable(session: Session, reporter_id: str, reporter_role: PartyRole) -> None:
    """
    Gate for creating a job offer from a session.

    The reporter must be the session participant on the side they claim,
    the session must be completed, and both sides must have left feedback.
    """
    participant_role = session.participant_role(reporter_id)
    if participant_role is None:
        raise Forbidden(
            "Reporter is not a participant of this session",
            entity_type="session",
            entity_id=session.id,
        )
    if participant_role != reporter_role:
        raise Forbidden(
            f"Reporter participates as {participant_role.value}, not {reporter_role.value}",
            entity_type="session",
            entity_id=session.id,
        )
    if session.status != SessionStatus.COMPLETED:
        raise PreconditionFailed(
            f"Session is {session.status.value}; offers can only be reported after completion",
            entity_type="session",
            entity_id=session.id,
        )
    if not session.feedback.is_bilateral():
        raise PreconditionFailed(
            "Both participants must exchange feedback before an offer is reported",
            entity_type="session",
            entity_id=session.id,
        )


def ensure_release_eligible(
    session: Session,
    caller_role: CallerRole,
    admin_override: bool = False,
) -> None:
    """Session must be completed and verified, unless an admin overrides verification."""
    if admin_override and caller_role != CallerRole.ADMIN:
        raise Forbidden("Only admins may override attendance verification")
    if session.status != SessionStatus.COMPLETED:
        raise PreconditionFailed(
            f"Session is {session.status.value}; payment is released only after completion",
            entity_type="session",
            entity_id=session.id,
        )
    if not (session.is_verified or admin_override):
        raise PreconditionFailed(
            "Session attendance has not been verified",
            entity_type="session",
            entity_id=session.id,
        )
