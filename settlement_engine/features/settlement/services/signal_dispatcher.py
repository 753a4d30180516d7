"""
Routes normalized verification facts to the state machines.

Webhook deliveries can be duplicated, reordered or late. Nothing raised while
applying a fact reaches the webhook caller: business-rule rejections are
logged and the fact is dropped.
"""

from settlement_engine.features.settlement.domain import (
    CallerRole,
    PartyRole,
    SettlementError,
)
from settlement_engine.features.settlement.services.referral_reward_service import (
    ReferralRewardService,
)
from settlement_engine.features.settlement.services.session_escrow_service import (
    SessionEscrowService,
)
from settlement_engine.features.settlement.services.verification_adapter import (
    ClaimType,
    SignalSource,
    VerificationFact,
    VerificationSignalAdapter,
)
from settlement_engine.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class SignalDispatcher:
    def __init__(
        self,
        adapter: VerificationSignalAdapter,
        sessions: SessionEscrowService,
        referrals: ReferralRewardService,
    ):
        self.adapter = adapter
        self.sessions = sessions
        self.referrals = referrals

    async def handle(self, source: SignalSource | str, payload: dict) -> bool:
        """Normalize and apply one payload. Returns True if state was updated."""
        fact = self.adapter.normalize(source, payload)
        if fact is None:
            return False
        return await self.dispatch(fact)

    async def dispatch(self, fact: VerificationFact) -> bool:
        try:
            if fact.claim_type == ClaimType.SESSION_ATTENDANCE:
                return await self._apply_attendance(fact)
            if fact.claim_type == ClaimType.REFERRAL_DOMAIN:
                return await self.referrals.apply_domain_scan(fact.claim_id, fact.verified) is not None
            if fact.claim_type == ClaimType.SESSION_FEEDBACK:
                await self.sessions.submit_feedback(
                    fact.claim_id,
                    PartyRole(fact.evidence["role"]),
                    CallerRole.SYSTEM,
                    rating=fact.evidence.get("rating"),
                    comment=fact.evidence.get("comment"),
                    now=fact.evidence.get("provided_at"),
                )
                return True
        except SettlementError as e:
            logger.warning(
                "Verification signal dropped",
                claim_id=fact.claim_id,
                claim_type=fact.claim_type.value,
                error_code=e.code,
                error=e.message,
            )
            return False

        logger.warning("Unhandled claim type", claim_type=str(fact.claim_type))
        return False

    async def _apply_attendance(self, fact: VerificationFact) -> bool:
        session = await self.sessions.get_session(fact.claim_id)
        if self.sessions.is_payment_final(session):
            logger.info(
                "Late attendance signal dropped",
                session_id=session.id,
                payment_status=session.payment_status.value,
            )
            return False

        await self.sessions.apply_verification(
            fact.claim_id,
            verified=fact.verified,
            method=fact.evidence.get("method", "video_meeting"),
            duration_minutes=fact.evidence.get("duration_minutes"),
            participant_count=fact.evidence.get("participant_count"),
            reason=fact.evidence.get("reason"),
        )
        return True

    async def meeting_started(self, session_id: str) -> bool:
        """Meeting provider reports the call has begun."""
        try:
            await self.sessions.start_session(session_id, CallerRole.SYSTEM)
            return True
        except SettlementError as e:
            logger.info(
                "Meeting-started event dropped",
                session_id=session_id,
                error_code=e.code,
                error=e.message,
            )
            return False
