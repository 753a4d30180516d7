"""
RequestContext Middleware - request tracing for every call.

Adds to every request:
- request_id: taken from an incoming X-Request-ID header, or generated
- caller_id / caller_role: as forwarded by the upstream auth gateway

The values are stored on request.state and bound into structlog's
contextvars, so every log line and audit event emitted while handling the
request carries them.
"""

import uuid

import structlog
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

from settlement_engine.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class RequestContextMiddleware(BaseHTTPMiddleware):
    """
    Request.state namespace convention:
    - request_id, caller_id, caller_role: set here
    - Do not add other attributes without updating this documentation
    """

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
        caller_id = request.headers.get("x-caller-id")
        caller_role = request.headers.get("x-caller-role")

        request.state.request_id = request_id
        request.state.caller_id = caller_id
        request.state.caller_role = caller_role

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(
            request_id=request_id, caller_id=caller_id, caller_role=caller_role
        )

        logger.debug("Request started", method=request.method, path=request.url.path)

        try:
            response = await call_next(request)
        finally:
            structlog.contextvars.clear_contextvars()

        response.headers["X-Request-ID"] = request_id
        return response
