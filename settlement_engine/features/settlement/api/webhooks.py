"""
Inbound verification webhooks.

Each source signs the raw request body with HMAC-SHA256 using its own
secret. A bad signature is rejected with 401; once the signature checks out
the delivery is always acknowledged with 200, whether or not the signal
changed anything, so providers do not redeliver rejected signals forever.
"""

import hashlib
import hmac
import json

from fastapi import APIRouter, Depends, HTTPException, Request

from settlement_engine.config import settings
from settlement_engine.features.settlement.services import SettlementServices
from settlement_engine.features.settlement.services.verification_adapter import SignalSource
from settlement_engine.infrastructure.observability.logging import get_logger

from .dependencies import get_services

router = APIRouter(prefix="/webhooks", tags=["webhooks"])
logger = get_logger(__name__)

MEETING_HEADER = "x-meeting-signature"
SCAN_HEADER = "x-scan-signature"
FEEDBACK_HEADER = "x-feedback-signature"

MEETING_STARTED_EVENT = "meeting.started"


def sign_payload(secret: str, raw: bytes) -> str:
    return hmac.new(secret.encode(), raw, hashlib.sha256).hexdigest()


def verify_signature(source: SignalSource, raw: bytes, signature: str | None) -> None:
    secret = settings.webhook_secret(source.value)
    if not secret:
        logger.error("Webhook secret not configured", source=source.value)
        raise HTTPException(status_code=401, detail="Webhook not configured")
    if not signature:
        raise HTTPException(status_code=401, detail="Missing signature")
    if not hmac.compare_digest(sign_payload(secret, raw), signature):
        logger.warning("Webhook signature mismatch", source=source.value)
        raise HTTPException(status_code=401, detail="Invalid signature")


def _parse(raw: bytes, source: SignalSource) -> dict | None:
    try:
        payload = json.loads(raw)
    except (ValueError, UnicodeDecodeError):
        logger.warning("Webhook body is not JSON", source=source.value)
        return None
    if not isinstance(payload, dict):
        logger.warning("Webhook body is not an object", source=source.value)
        return None
    return payload


@router.post("/meeting")
async def meeting_webhook(
    request: Request, services: SettlementServices = Depends(get_services)
):
    raw = await request.body()
    verify_signature(SignalSource.MEETING, raw, request.headers.get(MEETING_HEADER))

    payload = _parse(raw, SignalSource.MEETING)
    if payload is None:
        return {"ok": True, "applied": False}

    if payload.get("event") == MEETING_STARTED_EVENT:
        session_id = payload.get("sessionId")
        applied = bool(session_id) and await services.signals.meeting_started(session_id)
        return {"ok": True, "applied": applied}

    applied = await services.signals.handle(SignalSource.MEETING, payload)
    return {"ok": True, "applied": applied}


@router.post("/email-scan")
async def email_scan_webhook(
    request: Request, services: SettlementServices = Depends(get_services)
):
    raw = await request.body()
    verify_signature(SignalSource.EMAIL_SCAN, raw, request.headers.get(SCAN_HEADER))

    payload = _parse(raw, SignalSource.EMAIL_SCAN)
    if payload is None:
        return {"ok": True, "applied": False}

    applied = await services.signals.handle(SignalSource.EMAIL_SCAN, payload)
    return {"ok": True, "applied": applied}


@router.post("/feedback")
async def feedback_webhook(
    request: Request, services: SettlementServices = Depends(get_services)
):
    raw = await request.body()
    verify_signature(SignalSource.FEEDBACK, raw, request.headers.get(FEEDBACK_HEADER))

    payload = _parse(raw, SignalSource.FEEDBACK)
    if payload is None:
        return {"ok": True, "applied": False}

    applied = await services.signals.handle(SignalSource.FEEDBACK, payload)
    return {"ok": True, "applied": applied}
