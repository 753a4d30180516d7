"""
Session escrow state machine.

Two independent axes per session: ``status`` (the meeting) and
``payment_status`` (custody of funds). Every status change is a
compare-and-set against the value just read; a lost race re-reads and
re-validates. Payment release and captured refunds go through the
settlement orchestrator.
"""

from datetime import UTC, datetime
from decimal import Decimal
from typing import Any
from uuid import uuid4

from settlement_engine.config import settings
from settlement_engine.features.settlement.domain import (
    CallerRole,
    EntityType,
    FeedbackEntry,
    Forbidden,
    InvalidTransition,
    NotFound,
    PartyRole,
    PaymentStatus,
    PayoutFailed,
    PayoutResult,
    PreconditionFailed,
    Session,
    SessionStatus,
    SessionVerification,
)
from settlement_engine.features.settlement.domain.transitions import (
    ensure_privileged,
    ensure_release_eligible,
    ensure_transition,
    is_terminal,
)
from settlement_engine.features.settlement.services.settlement_orchestrator import (
    SettlementOrchestrator,
)
from settlement_engine.infrastructure.audit import AuditLogger
from settlement_engine.infrastructure.observability.logging import get_logger, log_transition

logger = get_logger(__name__)

FEEDBACK_OPEN_STATUSES = frozenset({SessionStatus.IN_PROGRESS, SessionStatus.COMPLETED})


class SessionEscrowService:
    """Operations on a booked session and its escrowed payment."""

    def __init__(
        self,
        repository,
        orchestrator: SettlementOrchestrator,
        audit: AuditLogger | None = None,
        *,
        max_attempts: int | None = None,
    ):
        self.repository = repository
        self.orchestrator = orchestrator
        self.audit = audit
        self.max_attempts = max_attempts or settings.CAS_MAX_ATTEMPTS

    # ------------------------------------------------------------------
    # Creation and reads
    # ------------------------------------------------------------------

    async def create_session(
        self,
        seeker_id: str,
        professional_id: str,
        start_time: datetime,
        end_time: datetime,
        amount: Decimal,
        *,
        payout_account: str | None = None,
        currency: str | None = None,
        session_id: str | None = None,
    ) -> Session:
        """Book a session in requested/pending."""
        if end_time <= start_time:
            raise ValueError("Session end time must be after start time")
        amount = Decimal(str(amount))
        if amount <= 0:
            raise ValueError("Session amount must be positive")
        if seeker_id == professional_id:
            raise ValueError("Seeker and professional must be different users")

        session = Session(
            id=session_id or str(uuid4()),
            seeker_id=seeker_id,
            professional_id=professional_id,
            start_time=start_time,
            end_time=end_time,
            amount=amount,
            payout_account=payout_account,
            currency=currency or settings.DEFAULT_CURRENCY,
        )
        return await self.repository.insert_session(session)

    async def get_session(self, session_id: str) -> Session:
        session = await self.repository.get_session(session_id)
        if session is None:
            raise NotFound(
                f"Session {session_id} not found", entity_type="session", entity_id=session_id
            )
        return session

    async def list_sessions_for_user(
        self,
        user_id: str,
        *,
        status: SessionStatus | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Session]:
        return await self.repository.list_sessions_for_user(
            user_id, status=status, limit=limit, offset=offset
        )

    # ------------------------------------------------------------------
    # Meeting lifecycle
    # ------------------------------------------------------------------

    async def _transition_status(
        self,
        session_id: str,
        target: SessionStatus,
        updates: dict[str, Any] | None = None,
        *,
        guard=None,
    ) -> Session:
        """
        Compare-and-set ``status`` to ``target``, re-reading on a lost race.

        ``guard(session)`` runs against every fresh read before the write.
        """
        for _ in range(self.max_attempts):
            session = await self.get_session(session_id)
            ensure_transition(
                session.status, target, entity_type="session", entity_id=session_id
            )
            if guard is not None:
                guard(session)

            updated = await self.repository.compare_and_set(
                EntityType.SESSION, session_id, "status", session.status, target, updates
            )
            if updated is not None:
                log_transition("session", session_id, "status", session.status.value, target.value)
                return updated

        raise InvalidTransition(
            f"Session {session_id} kept changing while moving to {target.value}",
            target=target.value,
            entity_type="session",
            entity_id=session_id,
        )

    async def confirm_schedule(
        self,
        session_id: str,
        start_time: datetime,
        end_time: datetime,
        caller_role: CallerRole,
    ) -> Session:
        """requested → scheduled, fixing the agreed times."""
        if caller_role == CallerRole.SEEKER:
            raise Forbidden(
                "Seekers cannot confirm a schedule", entity_type="session", entity_id=session_id
            )
        if end_time <= start_time:
            raise ValueError("Session end time must be after start time")

        return await self._transition_status(
            session_id,
            SessionStatus.SCHEDULED,
            {"start_time": start_time, "end_time": end_time},
        )

    async def start_session(
        self, session_id: str, caller_role: CallerRole = CallerRole.SYSTEM
    ) -> Session:
        """scheduled → in-progress (meeting-started event)."""
        ensure_privileged(caller_role, "start a session")
        return await self._transition_status(session_id, SessionStatus.IN_PROGRESS)

    async def mark_completed(
        self,
        session_id: str,
        caller_role: CallerRole,
        now: datetime | None = None,
    ) -> Session:
        """scheduled/in-progress → completed, once the end time has passed."""
        now = now or datetime.now(UTC)

        def _ended(session: Session) -> None:
            if now < session.end_time:
                raise PreconditionFailed(
                    "Session has not ended yet", entity_type="session", entity_id=session_id
                )

        session = await self._transition_status(
            session_id, SessionStatus.COMPLETED, guard=_ended
        )
        logger.info("Session completed", session_id=session_id, caller_role=caller_role.value)
        return session

    async def mark_no_show(
        self,
        session_id: str,
        caller_role: CallerRole,
        reason: str | None = None,
        caller_id: str | None = None,
    ) -> Session:
        ensure_privileged(caller_role, "mark a session as no-show")
        session = await self._transition_status(session_id, SessionStatus.NO_SHOW)
        await self._audit("session_no_show", session_id, caller_id, caller_role, {"reason": reason})
        return session

    async def cancel(
        self,
        session_id: str,
        caller_role: CallerRole,
        reason: str | None = None,
        caller_id: str | None = None,
    ) -> tuple[Session, PayoutResult | None]:
        """
        Any non-terminal status → cancelled.

        A captured payment is refunded through the orchestrator straight away.
        If the processor fails, the session stays cancelled+paid and the
        reconcile job picks the refund up.
        """

        def _may_cancel(session: Session) -> None:
            if caller_role.is_privileged:
                return
            if caller_id is None or session.participant_role(caller_id) is None:
                raise Forbidden(
                    "Only participants or admins may cancel a session",
                    entity_type="session",
                    entity_id=session_id,
                )

        session = await self._transition_status(
            session_id,
            SessionStatus.CANCELLED,
            {"cancel_reason": reason},
            guard=_may_cancel,
        )
        await self._audit("session_cancelled", session_id, caller_id, caller_role, {"reason": reason})

        if session.payment_status != PaymentStatus.PAID:
            return session, None

        try:
            result = await self.orchestrator.request_refund(
                session_id,
                reason=reason or "cancelled",
                actor_id=caller_id,
                actor_role=caller_role,
            )
        except PayoutFailed as e:
            logger.warning(
                "Refund after cancellation deferred to reconciliation",
                session_id=session_id,
                idempotency_key=e.idempotency_key,
                outcome_unknown=e.outcome_unknown,
            )
            return await self.get_session(session_id), None
        except PreconditionFailed as e:
            logger.warning(
                "Refund after cancellation waits for unresolved payout",
                session_id=session_id,
                reason=e.message,
            )
            return await self.get_session(session_id), None

        return await self.get_session(session_id), result

    # ------------------------------------------------------------------
    # Feedback and verification
    # ------------------------------------------------------------------

    async def submit_feedback(
        self,
        session_id: str,
        role: PartyRole,
        caller_role: CallerRole,
        rating: int | None = None,
        comment: str | None = None,
        now: datetime | None = None,
    ) -> Session:
        """Record one side's feedback. Each side may submit exactly once."""
        role = PartyRole(role)
        if not caller_role.is_privileged and PartyRole.from_caller(caller_role) != role:
            raise Forbidden(
                f"A {caller_role.value} cannot submit {role.value} feedback",
                entity_type="session",
                entity_id=session_id,
            )
        if rating is not None and not 1 <= rating <= 5:
            raise ValueError("Rating must be between 1 and 5")

        session = await self.get_session(session_id)
        if session.status not in FEEDBACK_OPEN_STATUSES:
            raise InvalidTransition(
                f"Feedback is not accepted while session is {session.status.value}",
                current=session.status.value,
                entity_type="session",
                entity_id=session_id,
            )

        entry = FeedbackEntry(provided_at=now or datetime.now(UTC), rating=rating, comment=comment)
        updated = await self.repository.save_feedback(session_id, role, entry)
        if updated is None:
            raise InvalidTransition(
                f"{role.value} feedback already submitted",
                entity_type="session",
                entity_id=session_id,
            )

        logger.info(
            "Session feedback recorded",
            session_id=session_id,
            role=role.value,
            bilateral=updated.feedback.is_bilateral(),
        )
        return updated

    async def apply_verification(
        self,
        session_id: str,
        *,
        verified: bool,
        method: str,
        duration_minutes: int | None = None,
        participant_count: int | None = None,
        reason: str | None = None,
        received_at: datetime | None = None,
    ) -> SessionVerification:
        """
        Append attendance evidence. The newest record is authoritative.

        Never touches ``payment_status``; it only changes release eligibility.
        """
        await self.get_session(session_id)
        verification = await self.repository.append_verification(
            SessionVerification(
                session_id=session_id,
                verified=verified,
                method=method,
                duration_minutes=duration_minutes,
                participant_count=participant_count,
                reason=reason,
                received_at=received_at or datetime.now(UTC),
            )
        )
        logger.info(
            "Session verification applied",
            session_id=session_id,
            verified=verified,
            method=method,
            sequence=verification.sequence,
        )
        return verification

    # ------------------------------------------------------------------
    # Payment custody
    # ------------------------------------------------------------------

    async def record_payment(
        self,
        session_id: str,
        payment_reference: str,
        caller_role: CallerRole = CallerRole.SYSTEM,
    ) -> Session:
        """pending → paid once the seeker's charge has been captured."""
        ensure_privileged(caller_role, "record a payment")

        for _ in range(self.max_attempts):
            session = await self.get_session(session_id)
            if (
                session.payment_status == PaymentStatus.PAID
                and session.payment_reference == payment_reference
            ):
                return session
            ensure_transition(
                session.payment_status,
                PaymentStatus.PAID,
                entity_type="session",
                entity_id=session_id,
            )
            updated = await self.repository.compare_and_set(
                EntityType.SESSION,
                session_id,
                "payment_status",
                PaymentStatus.PENDING,
                PaymentStatus.PAID,
                {"payment_reference": payment_reference},
            )
            if updated is not None:
                log_transition("session", session_id, "payment_status", "pending", "paid")
                return updated

        raise InvalidTransition(
            f"Session {session_id} payment kept changing",
            target=PaymentStatus.PAID.value,
            entity_type="session",
            entity_id=session_id,
        )

    async def release_payment(
        self,
        session_id: str,
        caller_role: CallerRole,
        *,
        admin_override: bool = False,
        caller_id: str | None = None,
        idempotency_key: str | None = None,
    ) -> PayoutResult:
        """
        paid → released, paying the professional.

        Concurrent callers get one ``accepted`` and ``already_settled`` for
        the rest.
        """
        ensure_privileged(caller_role, "release a session payment")
        session = await self.get_session(session_id)

        if session.payment_status == PaymentStatus.RELEASED:
            return await self.orchestrator.request_payout(
                EntityType.SESSION, session_id, idempotency_key=idempotency_key
            )

        ensure_release_eligible(session, caller_role, admin_override)
        if admin_override and not session.is_verified:
            await self._audit(
                "session_verification_overridden", session_id, caller_id, caller_role
            )

        return await self.orchestrator.request_payout(
            EntityType.SESSION,
            session_id,
            session.amount,
            idempotency_key,
            actor_id=caller_id,
            actor_role=caller_role,
        )

    async def refund(
        self,
        session_id: str,
        reason: str,
        caller_role: CallerRole,
        caller_id: str | None = None,
        idempotency_key: str | None = None,
    ) -> PayoutResult:
        """pending|paid → refunded. Admin/system only."""
        ensure_privileged(caller_role, "refund a session")
        return await self.orchestrator.request_refund(
            session_id,
            reason=reason,
            idempotency_key=idempotency_key,
            actor_id=caller_id,
            actor_role=caller_role,
        )

    def is_payment_final(self, session: Session) -> bool:
        return is_terminal(session.payment_status)

    async def _audit(
        self,
        action: str,
        session_id: str,
        caller_id: str | None,
        caller_role: CallerRole,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        if self.audit is None:
            return
        await self.audit.log(
            action=action,
            resource_type="session",
            resource_id=session_id,
            actor_id=caller_id,
            actor_role=caller_role.value,
            metadata=metadata,
        )
