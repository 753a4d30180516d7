"""
Job-offer bonus state machine: reported → confirmed → paid.

One side of a completed session reports the hire, the other side confirms
it, and the bonus is paid through the orchestrator.
"""

from datetime import UTC, datetime
from decimal import Decimal
from uuid import uuid4

from settlement_engine.config import settings
from settlement_engine.features.settlement.domain import (
    CallerRole,
    EntityType,
    Forbidden,
    InvalidTransition,
    JobOffer,
    JobOfferStatus,
    NotFound,
    OfferDetails,
    PartyRole,
    PayoutResult,
)
from settlement_engine.features.settlement.domain.transitions import (
    ensure_offer_reportable,
    ensure_privileged,
    ensure_transition,
)
from settlement_engine.features.settlement.services.settlement_orchestrator import (
    SettlementOrchestrator,
)
from settlement_engine.infrastructure.audit import AuditLogger
from settlement_engine.infrastructure.observability.logging import get_logger, log_transition

logger = get_logger(__name__)


def _ensure_acting_as(caller_role: CallerRole, party_role: PartyRole, action: str) -> None:
    """Participants may only act for their own side; admin/system may act for either."""
    if caller_role.is_privileged:
        return
    if PartyRole.from_caller(caller_role) != party_role:
        raise Forbidden(f"A {caller_role.value} cannot {action} as {party_role.value}")


class JobOfferBonusService:
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

    async def get_offer(self, offer_id: str) -> JobOffer:
        offer = await self.repository.get_job_offer(offer_id)
        if offer is None:
            raise NotFound(
                f"Job offer {offer_id} not found", entity_type="job_offer", entity_id=offer_id
            )
        return offer

    async def list_offers_for_user(self, user_id: str) -> list[JobOffer]:
        return await self.repository.list_job_offers_for_user(user_id)

    async def report(
        self,
        session_id: str,
        reporter_id: str,
        reporter_role: PartyRole,
        offer_details: OfferDetails,
        committed_bonus: Decimal,
        company_id: str,
        caller_role: CallerRole,
        *,
        now: datetime | None = None,
        offer_id: str | None = None,
    ) -> JobOffer:
        """
        Report a hire that came out of a session.

        ``committed_bonus`` is the candidate's committed offer bonus as of
        now; it is copied onto the offer and later changes do not affect it.
        """
        reporter_role = PartyRole(reporter_role)
        _ensure_acting_as(caller_role, reporter_role, "report an offer")
        committed_bonus = Decimal(str(committed_bonus))
        if committed_bonus <= 0:
            raise ValueError("Committed bonus must be positive")
        if not company_id:
            raise ValueError("company_id is required")

        session = await self.repository.get_session(session_id)
        if session is None:
            raise NotFound(
                f"Session {session_id} not found", entity_type="session", entity_id=session_id
            )
        ensure_offer_reportable(session, reporter_id, reporter_role)

        existing = await self.repository.find_job_offer(session.seeker_id, company_id)
        if existing is not None:
            raise InvalidTransition(
                "An offer for this candidate and company has already been reported",
                current=existing.status.value,
                entity_type="job_offer",
                entity_id=existing.id,
            )

        offer = await self.repository.insert_job_offer(
            JobOffer(
                id=offer_id or str(uuid4()),
                session_id=session_id,
                candidate_id=session.seeker_id,
                professional_id=session.professional_id,
                company_id=company_id,
                reported_by=reporter_role,
                bonus_amount=committed_bonus,
                payout_account=session.payout_account,
                currency=session.currency,
                offer_details=offer_details,
                reported_at=now or datetime.now(UTC),
            )
        )
        if offer is None:
            raise InvalidTransition(
                "An offer for this candidate and company has already been reported",
                entity_type="job_offer",
            )

        logger.info(
            "Job offer reported",
            offer_id=offer.id,
            session_id=session_id,
            reported_by=reporter_role.value,
            bonus_amount=str(committed_bonus),
        )
        return offer

    async def confirm(
        self,
        offer_id: str,
        confirmer_id: str,
        confirmer_role: PartyRole,
        caller_role: CallerRole,
        now: datetime | None = None,
    ) -> JobOffer:
        """reported → confirmed by the side that did not report it."""
        confirmer_role = PartyRole(confirmer_role)
        _ensure_acting_as(caller_role, confirmer_role, "confirm an offer")

        for _ in range(self.max_attempts):
            offer = await self.get_offer(offer_id)
            if confirmer_role == offer.reported_by:
                raise Forbidden(
                    "An offer must be confirmed by the counterparty, not the reporter",
                    entity_type="job_offer",
                    entity_id=offer_id,
                )
            participant_role = offer.participant_role(confirmer_id)
            if participant_role is None:
                raise Forbidden(
                    "Confirmer is not a participant of this offer",
                    entity_type="job_offer",
                    entity_id=offer_id,
                )
            if participant_role != confirmer_role:
                raise Forbidden(
                    f"Confirmer participates as {participant_role.value}, "
                    f"not {confirmer_role.value}",
                    entity_type="job_offer",
                    entity_id=offer_id,
                )
            ensure_transition(
                offer.status,
                JobOfferStatus.CONFIRMED,
                entity_type="job_offer",
                entity_id=offer_id,
            )

            updated = await self.repository.compare_and_set(
                EntityType.JOB_OFFER,
                offer_id,
                "status",
                JobOfferStatus.REPORTED,
                JobOfferStatus.CONFIRMED,
                {"confirmed_by": confirmer_role, "confirmed_at": now or datetime.now(UTC)},
            )
            if updated is not None:
                log_transition(
                    "job_offer",
                    offer_id,
                    "status",
                    "reported",
                    "confirmed",
                    confirmed_by=confirmer_role.value,
                )
                if self.audit is not None:
                    await self.audit.log(
                        action="job_offer_confirmed",
                        resource_type="job_offer",
                        resource_id=offer_id,
                        actor_id=confirmer_id,
                        actor_role=caller_role.value,
                    )
                return updated

        raise InvalidTransition(
            f"Job offer {offer_id} kept changing during confirmation",
            target=JobOfferStatus.CONFIRMED.value,
            entity_type="job_offer",
            entity_id=offer_id,
        )

    async def settle(
        self,
        offer_id: str,
        caller_role: CallerRole,
        caller_id: str | None = None,
        idempotency_key: str | None = None,
    ) -> PayoutResult:
        """confirmed → paid through the orchestrator. Repeat calls are no-ops."""
        ensure_privileged(caller_role, "settle a job offer bonus")
        offer = await self.get_offer(offer_id)
        return await self.orchestrator.request_payout(
            EntityType.JOB_OFFER,
            offer_id,
            offer.bonus_amount,
            idempotency_key,
            actor_id=caller_id,
            actor_role=caller_role,
        )
