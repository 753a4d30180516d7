"""
FastAPI dependencies for the settlement routes.

Authentication happens upstream; the gateway forwards the authenticated
caller as ``x-caller-id`` / ``x-caller-role`` headers and the core only
checks that the role fits the operation.
"""

from dataclasses import dataclass

from fastapi import Header, HTTPException, status

from settlement_engine.features.settlement.domain import CallerRole
from settlement_engine.features.settlement.services import (
    SettlementServices,
    get_settlement_services,
)
from settlement_engine.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class CallerContext:
    caller_id: str | None
    role: CallerRole


async def caller_context(
    x_caller_id: str | None = Header(default=None),
    x_caller_role: str | None = Header(default=None),
) -> CallerContext:
    if not x_caller_role:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing caller role"
        )
    try:
        role = CallerRole(x_caller_role.lower())
    except ValueError:
        logger.warning("Unknown caller role", caller_role=x_caller_role)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Unknown caller role"
        ) from None

    if role in (CallerRole.SEEKER, CallerRole.PROFESSIONAL) and not x_caller_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing caller id"
        )
    return CallerContext(caller_id=x_caller_id, role=role)


def get_services() -> SettlementServices:
    return get_settlement_services()
