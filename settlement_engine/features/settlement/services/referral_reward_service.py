"""
Referral reward state machine.

pending → verified → rewarded, or pending → rejected. Verification needs the
email-domain scan to have confirmed the referral; the reward amount is fixed
at that moment and never rewritten.
"""

from datetime import UTC, datetime
from decimal import Decimal
from uuid import uuid4

from settlement_engine.config import settings
from settlement_engine.features.settlement.domain import (
    CallerRole,
    EntityType,
    InvalidTransition,
    NotFound,
    PayoutResult,
    PreconditionFailed,
    Referral,
    ReferralPayoutLimits,
    ReferralStatus,
)
from settlement_engine.features.settlement.domain.transitions import (
    ensure_privileged,
    ensure_transition,
)
from settlement_engine.features.settlement.services.settlement_orchestrator import (
    SettlementOrchestrator,
)
from settlement_engine.infrastructure.audit import AuditLogger
from settlement_engine.infrastructure.observability.logging import get_logger, log_transition

logger = get_logger(__name__)


class ReferralRewardService:
    def __init__(
        self,
        repository,
        orchestrator: SettlementOrchestrator,
        audit: AuditLogger | None = None,
        *,
        max_attempts: int | None = None,
        max_rewards_per_professional: int | None = None,
        cooldown_days: int | None = None,
    ):
        self.repository = repository
        self.orchestrator = orchestrator
        self.audit = audit
        self.max_attempts = max_attempts or settings.CAS_MAX_ATTEMPTS
        self.max_rewards_per_professional = (
            settings.REFERRAL_MAX_REWARDS_PER_PROFESSIONAL
            if max_rewards_per_professional is None
            else max_rewards_per_professional
        )
        self.cooldown_days = (
            settings.REFERRAL_COOLDOWN_DAYS if cooldown_days is None else cooldown_days
        )

    async def create_referral(
        self,
        referrer_id: str,
        candidate_email: str,
        *,
        company_domain: str | None = None,
        payout_account: str | None = None,
        currency: str | None = None,
        referral_id: str | None = None,
    ) -> Referral:
        """Open a pending referral; the email scan confirms it later."""
        candidate_email = (candidate_email or "").strip().lower()
        if "@" not in candidate_email:
            raise ValueError("A valid candidate email is required")

        referral = Referral(
            id=referral_id or str(uuid4()),
            referrer_id=referrer_id,
            candidate_email=candidate_email,
            company_domain=company_domain,
            payout_account=payout_account,
            currency=currency or settings.DEFAULT_CURRENCY,
        )
        return await self.repository.insert_referral(referral)

    async def get_referral(self, referral_id: str) -> Referral:
        referral = await self.repository.get_referral(referral_id)
        if referral is None:
            raise NotFound(
                f"Referral {referral_id} not found", entity_type="referral", entity_id=referral_id
            )
        return referral

    async def list_referrals_for_referrer(self, referrer_id: str) -> list[Referral]:
        return await self.repository.list_referrals_for_referrer(referrer_id)

    async def apply_domain_scan(self, referral_id: str, verified: bool) -> Referral | None:
        """
        Record the email-domain scan result. The latest scan wins.

        Returns None when the referral has already left ``pending``; such a
        scan is late and is dropped.
        """
        referral = await self.get_referral(referral_id)
        if referral.status != ReferralStatus.PENDING:
            logger.info(
                "Late email scan dropped",
                referral_id=referral_id,
                status=referral.status.value,
            )
            return None

        updated = await self.repository.set_referral_domain_verified(referral_id, verified)
        if updated is None:
            logger.info("Email scan lost race with status change", referral_id=referral_id)
            return None

        logger.info("Referral domain scan applied", referral_id=referral_id, verified=verified)
        return updated

    async def verify(
        self,
        referral_id: str,
        reward_amount: Decimal,
        caller_role: CallerRole,
        caller_id: str | None = None,
        now: datetime | None = None,
    ) -> Referral:
        """pending → verified, fixing the reward amount."""
        ensure_privileged(caller_role, "verify a referral")
        reward_amount = Decimal(str(reward_amount))
        if reward_amount <= 0:
            raise ValueError("Reward amount must be positive")

        for _ in range(self.max_attempts):
            referral = await self.get_referral(referral_id)
            ensure_transition(
                referral.status,
                ReferralStatus.VERIFIED,
                entity_type="referral",
                entity_id=referral_id,
            )
            if not referral.email_domain_verified:
                raise PreconditionFailed(
                    "Email domain has not been verified for this referral",
                    entity_type="referral",
                    entity_id=referral_id,
                )

            updated = await self.repository.compare_and_set(
                EntityType.REFERRAL,
                referral_id,
                "status",
                ReferralStatus.PENDING,
                ReferralStatus.VERIFIED,
                {"reward_amount": reward_amount, "verified_at": now or datetime.now(UTC)},
            )
            if updated is not None:
                log_transition(
                    "referral",
                    referral_id,
                    "status",
                    "pending",
                    "verified",
                    reward_amount=str(reward_amount),
                )
                await self._audit(
                    "referral_verified",
                    referral_id,
                    caller_id,
                    caller_role,
                    {"reward_amount": str(reward_amount)},
                )
                return updated

        raise InvalidTransition(
            f"Referral {referral_id} kept changing during verification",
            target=ReferralStatus.VERIFIED.value,
            entity_type="referral",
            entity_id=referral_id,
        )

    def payout_limits(self, referral: Referral, now: datetime | None = None) -> ReferralPayoutLimits:
        return ReferralPayoutLimits(
            referrer_id=referral.referrer_id,
            max_rewards=self.max_rewards_per_professional,
            cooldown_days=self.cooldown_days,
            now=now or datetime.now(UTC),
        )

    async def check_payout_eligibility(
        self, referral: Referral, now: datetime | None = None
    ) -> str | None:
        """
        Return why the referrer cannot be paid right now, or None.

        This is the early answer for callers; the claim transaction checks the
        same limits again under a per-referrer lock.
        """
        limits = self.payout_limits(referral, now)
        if not limits.enabled:
            return None

        rewarded = 0
        if limits.max_rewards > 0:
            rewarded = await self.repository.count_referrals(
                referral.referrer_id, ReferralStatus.REWARDED
            )
        last_payout = None
        if limits.cooldown_days > 0:
            last_payout = await self.repository.last_referral_payout_date(referral.referrer_id)

        return limits.violation(rewarded, last_payout)

    async def payout(
        self,
        referral_id: str,
        caller_role: CallerRole,
        caller_id: str | None = None,
        idempotency_key: str | None = None,
        now: datetime | None = None,
    ) -> PayoutResult:
        """verified → rewarded through the orchestrator. Repeat calls are no-ops."""
        ensure_privileged(caller_role, "pay out a referral")
        referral = await self.get_referral(referral_id)

        limits = None
        if referral.status == ReferralStatus.VERIFIED:
            reason = await self.check_payout_eligibility(referral, now)
            if reason:
                raise PreconditionFailed(reason, entity_type="referral", entity_id=referral_id)
            limits = self.payout_limits(referral, now)

        return await self.orchestrator.request_payout(
            EntityType.REFERRAL,
            referral_id,
            referral.reward_amount,
            idempotency_key,
            actor_id=caller_id,
            actor_role=caller_role,
            reward_limits=limits if limits is not None and limits.enabled else None,
        )

    async def reject(
        self,
        referral_id: str,
        reason: str,
        caller_role: CallerRole,
        caller_id: str | None = None,
    ) -> Referral:
        """pending → rejected (terminal)."""
        ensure_privileged(caller_role, "reject a referral")

        for _ in range(self.max_attempts):
            referral = await self.get_referral(referral_id)
            ensure_transition(
                referral.status,
                ReferralStatus.REJECTED,
                entity_type="referral",
                entity_id=referral_id,
            )
            updated = await self.repository.compare_and_set(
                EntityType.REFERRAL,
                referral_id,
                "status",
                ReferralStatus.PENDING,
                ReferralStatus.REJECTED,
                {"rejected_reason": reason},
            )
            if updated is not None:
                log_transition("referral", referral_id, "status", "pending", "rejected")
                await self._audit(
                    "referral_rejected", referral_id, caller_id, caller_role, {"reason": reason}
                )
                return updated

        raise InvalidTransition(
            f"Referral {referral_id} kept changing during rejection",
            target=ReferralStatus.REJECTED.value,
            entity_type="referral",
            entity_id=referral_id,
        )

    async def _audit(self, action, referral_id, caller_id, caller_role, metadata=None) -> None:
        if self.audit is None:
            return
        await self.audit.log(
            action=action,
            resource_type="referral",
            resource_id=referral_id,
            actor_id=caller_id,
            actor_role=caller_role.value,
            metadata=metadata,
        )
