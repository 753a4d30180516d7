"""
AuditLogger - append-only record of settlement actions.

Every privileged action that moves or commits money (release, refund,
verification, rejection, offer confirmation, reconciliation) is written to
the ``settlement_audit_events`` table and to the structured log.

Usage:
    from settlement_engine.infrastructure.audit import audit_logger

    await audit_logger.log(
        actor_id="admin-7",
        actor_role="admin",
        action="session_payment_released",
        resource_type="session",
        resource_id=session_id,
        metadata={"admin_override": True},
    )

Audit failures are logged and swallowed; they never fail a settlement.
"""

from datetime import UTC, datetime
from typing import Any

import structlog
from psycopg.types.json import Jsonb

from settlement_engine.db.pool import db_pool
from settlement_engine.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class AuditLogger:
    """
    Writes audit events to:
    1. Database (settlement_audit_events) - immutable, queryable
    2. Structured logs (stdout) - real-time monitoring
    """

    async def log(
        self,
        action: str,
        resource_type: str,
        resource_id: str | None = None,
        actor_id: str | None = None,
        actor_role: str = "system",
        request_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> bool:
        """
        Record an audit event.

        Returns:
            True if persisted, False if the database write failed (never raises)
        """
        if request_id is None:
            request_id = structlog.contextvars.get_contextvars().get("request_id")

        logger.info(
            "Audit event",
            audit_action=action,
            actor_id=actor_id,
            actor_role=actor_role,
            resource_type=resource_type,
            resource_id=resource_id,
            request_id=request_id,
        )

        try:
            async with db_pool.connection() as conn:
                await conn.execute(
                    """
                    INSERT INTO settlement_audit_events (
                        actor_id, actor_role, action, resource_type,
                        resource_id, request_id, metadata, created_at
                    ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        actor_id,
                        actor_role,
                        action,
                        resource_type,
                        resource_id,
                        request_id,
                        Jsonb(metadata) if metadata is not None else None,
                        datetime.now(UTC),
                    ),
                )
            return True

        except Exception as e:
            logger.error(
                "CRITICAL: Failed to write audit event to database",
                error=str(e),
                error_type=type(e).__name__,
                fallback_data={
                    "action": action,
                    "actor_id": actor_id,
                    "actor_role": actor_role,
                    "resource_type": resource_type,
                    "resource_id": resource_id,
                    "request_id": request_id,
                    "timestamp": datetime.now(UTC).isoformat(),
                },
            )
            return False


# Global singleton instance
audit_logger = AuditLogger()
