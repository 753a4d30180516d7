import hashlib
import hmac
import json
from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from settlement_engine.features.settlement.api import webhooks
from settlement_engine.features.settlement.api.dependencies import get_services
from settlement_engine.features.settlement.domain import (
    PaymentStatus,
    Referral,
    Session,
    SessionStatus,
)

NOW = datetime(2026, 3, 2, 15, 0, tzinfo=UTC)


def _make_signature(secret: str, body: bytes) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


@pytest.fixture
def client(services, monkeypatch):
    monkeypatch.setattr("settlement_engine.config.settings.MEETING_WEBHOOK_SECRET", "meet-secret")
    monkeypatch.setattr(
        "settlement_engine.config.settings.EMAIL_SCAN_WEBHOOK_SECRET", "scan-secret"
    )
    monkeypatch.setattr(
        "settlement_engine.config.settings.FEEDBACK_WEBHOOK_SECRET", "feedback-secret"
    )

    app = FastAPI()
    app.include_router(webhooks.router)
    app.dependency_overrides[get_services] = lambda: services
    return TestClient(app)


@pytest.fixture
def scheduled_session(fake_repository):
    session = Session(
        id="sess-w",
        seeker_id="seeker-1",
        professional_id="pro-1",
        start_time=NOW - timedelta(hours=1),
        end_time=NOW,
        amount=Decimal("60.00"),
        payout_account="acct_pro_1",
        status=SessionStatus.SCHEDULED,
        payment_status=PaymentStatus.PAID,
        payment_reference="ch_w",
    )
    fake_repository.sessions[session.id] = session
    return session


def _post(client, path, header, secret, payload):
    raw = json.dumps(payload).encode("utf-8")
    return client.post(
        path,
        content=raw,
        headers={header: _make_signature(secret, raw), "Content-Type": "application/json"},
    )


def test_meeting_webhook_valid_signature(client, scheduled_session, fake_repository):
    response = _post(
        client,
        "/webhooks/meeting",
        "x-meeting-signature",
        "meet-secret",
        {"sessionId": "sess-w", "verified": True, "durationMinutes": 40, "participantCount": 2},
    )

    assert response.status_code == 200
    assert response.json() == {"ok": True, "applied": True}
    assert fake_repository.verifications["sess-w"][-1].verified is True


def test_meeting_webhook_invalid_signature(client, scheduled_session, fake_repository):
    raw = json.dumps({"sessionId": "sess-w", "verified": True}).encode("utf-8")

    response = client.post(
        "/webhooks/meeting",
        content=raw,
        headers={"x-meeting-signature": "bad", "Content-Type": "application/json"},
    )

    assert response.status_code == 401
    assert "sess-w" not in fake_repository.verifications


def test_signature_from_another_source_is_rejected(client, scheduled_session):
    response = _post(
        client,
        "/webhooks/meeting",
        "x-meeting-signature",
        "scan-secret",
        {"sessionId": "sess-w", "verified": True, "durationMinutes": 40, "participantCount": 2},
    )

    assert response.status_code == 401


def test_webhook_missing_signature(client):
    response = client.post(
        "/webhooks/email-scan",
        content=b"{}",
        headers={"Content-Type": "application/json"},
    )

    assert response.status_code == 401


def test_webhook_missing_secret(client, monkeypatch):
    monkeypatch.setattr("settlement_engine.config.settings.FEEDBACK_WEBHOOK_SECRET", None)

    response = _post(client, "/webhooks/feedback", "x-feedback-signature", "anything", {})

    assert response.status_code == 401


def test_malformed_payload_is_acknowledged_but_not_applied(client):
    response = _post(
        client, "/webhooks/meeting", "x-meeting-signature", "meet-secret", {"unexpected": 1}
    )

    assert response.status_code == 200
    assert response.json() == {"ok": True, "applied": False}


def test_meeting_started_event(client, scheduled_session, fake_repository):
    response = _post(
        client,
        "/webhooks/meeting",
        "x-meeting-signature",
        "meet-secret",
        {"event": "meeting.started", "sessionId": "sess-w"},
    )

    assert response.json()["applied"] is True
    assert fake_repository.sessions["sess-w"].status == SessionStatus.IN_PROGRESS


def test_email_scan_webhook_marks_domain(client, fake_repository):
    fake_repository.referrals["ref-w"] = Referral(
        id="ref-w", referrer_id="pro-1", candidate_email="c@acme.example"
    )

    response = _post(
        client,
        "/webhooks/email-scan",
        "x-scan-signature",
        "scan-secret",
        {"referralId": "ref-w", "domainVerified": True, "platformCc": True},
    )

    assert response.json() == {"ok": True, "applied": True}
    assert fake_repository.referrals["ref-w"].email_domain_verified is True


def test_feedback_webhook_records_feedback(client, scheduled_session, fake_repository):
    fake_repository.sessions["sess-w"].status = SessionStatus.COMPLETED

    response = _post(
        client,
        "/webhooks/feedback",
        "x-feedback-signature",
        "feedback-secret",
        {"sessionId": "sess-w", "role": "seeker", "rating": 5, "providedAt": NOW.isoformat()},
    )

    assert response.json()["applied"] is True
    assert fake_repository.sessions["sess-w"].feedback.seeker.rating == 5
