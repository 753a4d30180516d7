"""
Service layer for the settlement feature.

``build_settlement_services`` wires the repository, payment processor and
audit logger into the three state machines, the orchestrator and the signal
dispatcher. Tests pass fakes; the app uses the lazily built default.
"""

from dataclasses import dataclass

from settlement_engine.features.settlement.repository.settlement_repository import (
    SettlementRepository,
)
from settlement_engine.infrastructure.audit import AuditLogger, audit_logger

from .job_offer_service import JobOfferBonusService
from .payment_processor import PaymentProcessor, PaymentProcessorClient
from .referral_reward_service import ReferralRewardService
from .session_escrow_service import SessionEscrowService
from .settlement_orchestrator import SettlementOrchestrator
from .signal_dispatcher import SignalDispatcher
from .verification_adapter import VerificationSignalAdapter


@dataclass
class SettlementServices:
    orchestrator: SettlementOrchestrator
    sessions: SessionEscrowService
    referrals: ReferralRewardService
    job_offers: JobOfferBonusService
    signals: SignalDispatcher


def build_settlement_services(
    repository=None,
    processor: PaymentProcessor | None = None,
    audit: AuditLogger | None = None,
) -> SettlementServices:
    repository = repository or SettlementRepository()
    processor = processor or PaymentProcessorClient()
    audit = audit or audit_logger

    orchestrator = SettlementOrchestrator(repository, processor, audit)
    sessions = SessionEscrowService(repository, orchestrator, audit)
    referrals = ReferralRewardService(repository, orchestrator, audit)
    job_offers = JobOfferBonusService(repository, orchestrator, audit)
    signals = SignalDispatcher(VerificationSignalAdapter(), sessions, referrals)

    return SettlementServices(
        orchestrator=orchestrator,
        sessions=sessions,
        referrals=referrals,
        job_offers=job_offers,
        signals=signals,
    )


_services: SettlementServices | None = None


def get_settlement_services() -> SettlementServices:
    """Process-wide services backed by Postgres and the HTTP processor client."""
    global _services
    if _services is None:
        _services = build_settlement_services()
    return _services


__all__ = [
    "JobOfferBonusService",
    "PaymentProcessorClient",
    "ReferralRewardService",
    "SessionEscrowService",
    "SettlementOrchestrator",
    "SettlementServices",
    "SignalDispatcher",
    "VerificationSignalAdapter",
    "build_settlement_services",
    "get_settlement_services",
]
