"""
Generic background worker runner.

Reads the desired job name from CLI args or the WORKER_JOB environment
variable and delegates to the appropriate scheduler.
"""

import asyncio
import os
import sys
from collections.abc import Awaitable, Callable

from settlement_engine.config import settings
from settlement_engine.db.pool import db_pool
from settlement_engine.features.settlement.jobs.reconcile_job import (
    run_payout_reconcile_job,
    start_payout_reconcile_scheduler,
)
from settlement_engine.infrastructure.observability.logging import get_logger, setup_logging

logger = get_logger(__name__)

JobCoroutine = Callable[[], Awaitable[object]]


async def _reconcile_once() -> None:
    """Single reconciliation pass, for cron-style scheduling."""
    await db_pool.initialize()
    try:
        await run_payout_reconcile_job()
    finally:
        await db_pool.close()


JOB_REGISTRY: dict[str, JobCoroutine] = {
    "payout_reconcile": start_payout_reconcile_scheduler,
    "payout_reconcile_once": _reconcile_once,
}


def _resolve_job_name() -> str:
    """Pick the target job from CLI args or WORKER_JOB env variable."""
    if len(sys.argv) > 1:
        return sys.argv[1].strip().lower()
    return os.getenv("WORKER_JOB", "payout_reconcile").strip().lower()


async def run_worker(job_name: str | None = None) -> None:
    """Run the requested background job."""
    name = (job_name or _resolve_job_name()).strip().lower()
    if name not in JOB_REGISTRY:
        raise ValueError(
            f"Unknown worker job '{name}'. "
            f"Available jobs: {', '.join(sorted(JOB_REGISTRY.keys()))}"
        )

    logger.info("Starting background worker", job=name)
    await JOB_REGISTRY[name]()


def main() -> None:
    """CLI entrypoint."""
    setup_logging(settings.LOG_LEVEL)
    job_name = _resolve_job_name()
    asyncio.run(run_worker(job_name))


if __name__ == "__main__":
    main()
