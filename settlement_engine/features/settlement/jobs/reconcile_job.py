"""
Payout reconciliation job.

Runs ``SettlementOrchestrator.reconcile`` on an interval so interrupted
payouts, unknown processor outcomes and refunds owed on cancelled sessions
are re-driven with their original idempotency keys.
"""

import asyncio
from datetime import UTC, datetime

from settlement_engine.config import settings
from settlement_engine.db.pool import db_pool
from settlement_engine.features.settlement.services import get_settlement_services
from settlement_engine.features.settlement.services.settlement_orchestrator import (
    SettlementOrchestrator,
)
from settlement_engine.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class PayoutReconcileJob:
    def __init__(self, orchestrator: SettlementOrchestrator | None = None):
        self._orchestrator = orchestrator
        self.is_running = False
        self.last_run_time: datetime | None = None
        self.last_summary: dict | None = None

    @property
    def orchestrator(self) -> SettlementOrchestrator:
        if self._orchestrator is None:
            self._orchestrator = get_settlement_services().orchestrator
        return self._orchestrator

    async def run_once(self) -> dict:
        """Run a single reconciliation pass."""
        if self.is_running:
            logger.warning("Payout reconcile already running, skipping this iteration")
            return {"skipped": True, "reason": "already_running"}

        try:
            self.is_running = True
            started = datetime.now(UTC)
            summary = await self.orchestrator.reconcile(now=started)
            self.last_run_time = started
            self.last_summary = summary
            return summary
        finally:
            self.is_running = False

    def get_job_status(self) -> dict:
        return {
            "is_running": self.is_running,
            "last_run_time": self.last_run_time.isoformat() if self.last_run_time else None,
            "last_summary": self.last_summary,
            "interval_seconds": settings.RECONCILE_INTERVAL_SECONDS,
        }


payout_reconcile_job = PayoutReconcileJob()


async def run_payout_reconcile_job() -> dict:
    return await payout_reconcile_job.run_once()


async def start_payout_reconcile_scheduler() -> None:
    """Reconcile forever at RECONCILE_INTERVAL_SECONDS."""
    if not db_pool.initialized:
        await db_pool.initialize()

    logger.info(
        "Starting payout reconcile scheduler",
        interval_seconds=settings.RECONCILE_INTERVAL_SECONDS,
    )

    try:
        while True:
            try:
                await run_payout_reconcile_job()
            except Exception as e:
                logger.error(
                    "Error in payout reconcile scheduler",
                    error=str(e),
                    error_type=type(e).__name__,
                )
            await asyncio.sleep(settings.RECONCILE_INTERVAL_SECONDS)
    finally:
        await db_pool.close()
