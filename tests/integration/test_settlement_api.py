"""
HTTP-level tests for the settlement routes: caller headers, error mapping and
a full release flow against in-memory fakes.
"""

from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from settlement_engine.features.settlement.api.dependencies import get_services
from settlement_engine.features.settlement.api.router import (
    router,
    settlement_error_handler,
    value_error_handler,
)
from settlement_engine.features.settlement.domain import (
    FeedbackEntry,
    PaymentStatus,
    Referral,
    ReferralStatus,
    Session,
    SessionStatus,
    SessionVerification,
    SettlementError,
)
from settlement_engine.features.settlement.services.payment_processor import (
    PaymentProcessorError,
)

PAST = datetime(2026, 3, 2, 15, 0, tzinfo=UTC)

ADMIN = {"x-caller-id": "admin-1", "x-caller-role": "admin"}
SYSTEM = {"x-caller-role": "system"}
SEEKER = {"x-caller-id": "seeker-1", "x-caller-role": "seeker"}
PROFESSIONAL = {"x-caller-id": "pro-1", "x-caller-role": "professional"}


@pytest.fixture
def client(services):
    app = FastAPI()
    app.include_router(router)
    app.add_exception_handler(SettlementError, settlement_error_handler)
    app.add_exception_handler(ValueError, value_error_handler)
    app.dependency_overrides[get_services] = lambda: services
    return TestClient(app)


@pytest.fixture
def completed_session(fake_repository):
    session = Session(
        id="sess-api",
        seeker_id="seeker-1",
        professional_id="pro-1",
        start_time=PAST - timedelta(hours=1),
        end_time=PAST,
        amount=Decimal("95.00"),
        payout_account="acct_pro_1",
        status=SessionStatus.COMPLETED,
        payment_status=PaymentStatus.PAID,
        payment_reference="ch_api",
    )
    fake_repository.sessions[session.id] = session
    fake_repository.verifications[session.id] = [
        SessionVerification(session_id=session.id, verified=True, method="video_meeting")
    ]
    return session


def test_missing_caller_role_is_unauthorized(client):
    response = client.get("/sessions")

    assert response.status_code == 401


def test_unknown_caller_role_is_unauthorized(client):
    response = client.get("/sessions", headers={"x-caller-role": "superuser"})

    assert response.status_code == 401


def test_participant_role_requires_caller_id(client):
    response = client.get("/sessions", headers={"x-caller-role": "seeker"})

    assert response.status_code == 401


def test_session_booking_flow(client, fake_repository):
    response = client.post(
        "/sessions",
        headers=SEEKER,
        json={
            "seeker_id": "seeker-1",
            "professional_id": "pro-1",
            "start_time": (PAST - timedelta(hours=1)).isoformat(),
            "end_time": PAST.isoformat(),
            "amount": "75.00",
            "payout_account": "acct_pro_1",
        },
    )
    assert response.status_code == 201
    session_id = response.json()["id"]
    assert response.json()["status"] == "requested"
    assert response.json()["payment_status"] == "pending"

    response = client.post(
        f"/sessions/{session_id}/payment", headers=SYSTEM, json={"payment_reference": "ch_1"}
    )
    assert response.json()["payment_status"] == "paid"

    response = client.post(
        f"/sessions/{session_id}/schedule",
        headers=PROFESSIONAL,
        json={
            "start_time": (PAST - timedelta(hours=1)).isoformat(),
            "end_time": PAST.isoformat(),
        },
    )
    assert response.json()["status"] == "scheduled"

    response = client.post(f"/sessions/{session_id}/complete", headers=PROFESSIONAL)
    assert response.json()["status"] == "completed"

    # Not verified yet.
    response = client.post(f"/sessions/{session_id}/release", headers=ADMIN, json={})
    assert response.status_code == 412
    assert response.json()["error"] == "precondition_failed"

    response = client.post(
        f"/sessions/{session_id}/release", headers=ADMIN, json={"admin_override": True}
    )
    assert response.status_code == 200
    assert response.json()["outcome"] == "accepted"
    assert Decimal(response.json()["amount"]) == Decimal("75.00")


def test_seeker_cannot_book_for_someone_else(client):
    response = client.post(
        "/sessions",
        headers=SEEKER,
        json={
            "seeker_id": "seeker-2",
            "professional_id": "pro-1",
            "start_time": (PAST - timedelta(hours=1)).isoformat(),
            "end_time": PAST.isoformat(),
            "amount": "75.00",
        },
    )

    assert response.status_code == 403


def test_invalid_session_times_are_unprocessable(client):
    response = client.post(
        "/sessions",
        headers=SEEKER,
        json={
            "seeker_id": "seeker-1",
            "professional_id": "pro-1",
            "start_time": PAST.isoformat(),
            "end_time": (PAST - timedelta(hours=1)).isoformat(),
            "amount": "75.00",
        },
    )

    assert response.status_code == 422


def test_release_twice_reports_already_settled(client, completed_session, fake_processor):
    first = client.post("/sessions/sess-api/release", headers=ADMIN, json={})
    second = client.post("/sessions/sess-api/release", headers=ADMIN, json={})

    assert first.json()["outcome"] == "accepted"
    assert second.status_code == 200
    assert second.json()["outcome"] == "already_settled"
    assert len(fake_processor.transfers) == 1


def test_release_by_participant_is_forbidden(client, completed_session):
    response = client.post("/sessions/sess-api/release", headers=PROFESSIONAL, json={})

    assert response.status_code == 403
    assert response.json()["error"] == "forbidden"


def test_unknown_session_is_not_found(client):
    response = client.post("/sessions/nope/release", headers=ADMIN, json={})

    assert response.status_code == 404


def test_non_participant_cannot_read_session(client, completed_session):
    response = client.get(
        "/sessions/sess-api", headers={"x-caller-id": "other", "x-caller-role": "seeker"}
    )

    assert response.status_code == 404


def test_refund_after_release_conflicts(client, completed_session):
    client.post("/sessions/sess-api/release", headers=ADMIN, json={})

    response = client.post("/sessions/sess-api/refund", headers=ADMIN, json={"reason": "dispute"})

    assert response.status_code == 409
    body = response.json()
    assert body["error"] == "invalid_transition"
    assert body["current"] == "released"


def test_processor_failure_is_bad_gateway(client, completed_session, fake_processor):
    fake_processor.failures.append(PaymentProcessorError("account frozen", status_code=400))

    response = client.post(
        "/sessions/sess-api/release", headers=ADMIN, json={"idempotency_key": "rel-1"}
    )

    assert response.status_code == 502
    body = response.json()
    assert body["error"] == "payout_failed"
    assert body["idempotency_key"] == "rel-1"
    assert body["retryable"] is True

    session = client.get("/sessions/sess-api", headers=ADMIN).json()
    assert session["payment_status"] == "paid"


def test_cancel_reports_deferred_refund(client, fake_repository, fake_processor):
    fake_repository.sessions["sess-c"] = Session(
        id="sess-c",
        seeker_id="seeker-1",
        professional_id="pro-1",
        start_time=PAST,
        end_time=PAST + timedelta(hours=1),
        amount=Decimal("50"),
        status=SessionStatus.SCHEDULED,
        payment_status=PaymentStatus.PAID,
        payment_reference="ch_c",
    )
    fake_processor.failures.append(PaymentProcessorError("processor down", status_code=503))

    response = client.post("/sessions/sess-c/cancel", headers=SEEKER, json={"reason": "sick"})

    assert response.status_code == 200
    body = response.json()
    assert body["session"]["status"] == "cancelled"
    assert body["refund"] is None
    assert body["refund_deferred"] is True


def test_referral_endpoints(client, fake_repository, fake_processor):
    response = client.post(
        "/referrals",
        headers=PROFESSIONAL,
        json={"candidate_email": "dev@acme.example", "payout_account": "acct_pro_1"},
    )
    assert response.status_code == 201
    referral_id = response.json()["id"]

    response = client.post(
        f"/referrals/{referral_id}/verify", headers=ADMIN, json={"reward_amount": "50.00"}
    )
    assert response.status_code == 412

    fake_repository.referrals[referral_id].email_domain_verified = True
    response = client.post(
        f"/referrals/{referral_id}/verify", headers=ADMIN, json={"reward_amount": "50.00"}
    )
    assert response.json()["status"] == "verified"

    response = client.post(f"/referrals/{referral_id}/payout", headers=ADMIN, json={})
    assert response.json()["outcome"] == "accepted"
    assert fake_repository.referrals[referral_id].status == ReferralStatus.REWARDED

    mine = client.get("/referrals", headers=PROFESSIONAL).json()
    assert [r["id"] for r in mine] == [referral_id]


def test_seekers_cannot_submit_referrals(client):
    response = client.post(
        "/referrals", headers=SEEKER, json={"candidate_email": "dev@acme.example"}
    )

    assert response.status_code == 403


def test_rejecting_rewarded_referral_conflicts(client, fake_repository):
    fake_repository.referrals["ref-r"] = Referral(
        id="ref-r",
        referrer_id="pro-1",
        candidate_email="c@acme.example",
        status=ReferralStatus.REWARDED,
        reward_amount=Decimal("50"),
    )

    response = client.post("/referrals/ref-r/reject", headers=ADMIN, json={"reason": "fraud"})

    assert response.status_code == 409


def test_job_offer_endpoints(client, completed_session, fake_repository):
    completed_session.feedback.seeker = FeedbackEntry(provided_at=PAST, rating=5)
    completed_session.feedback.professional = FeedbackEntry(provided_at=PAST, rating=5)

    response = client.post(
        "/job-offers",
        headers=SEEKER,
        json={
            "session_id": "sess-api",
            "reporter_role": "candidate",
            "company_id": "acme",
            "committed_bonus": "1000",
            "position": "Engineer",
        },
    )
    assert response.status_code == 201
    offer_id = response.json()["id"]

    response = client.post(
        f"/job-offers/{offer_id}/confirm", headers=SEEKER, json={"confirmer_role": "candidate"}
    )
    assert response.status_code == 403

    response = client.post(
        f"/job-offers/{offer_id}/confirm",
        headers=PROFESSIONAL,
        json={"confirmer_role": "professional"},
    )
    assert response.json()["status"] == "confirmed"

    response = client.post(f"/job-offers/{offer_id}/settle", headers=ADMIN, json={})
    assert response.json()["outcome"] == "accepted"

    offer = client.get(f"/job-offers/{offer_id}", headers=SEEKER).json()
    assert offer["status"] == "paid"


def test_reconcile_is_admin_only(client):
    assert client.post("/settlement/reconcile", headers=PROFESSIONAL).status_code == 403

    response = client.post("/settlement/reconcile", headers=SYSTEM)

    assert response.status_code == 200
    assert response.json() == {
        "resumed": 0, "retried": 0, "refunded": 0, "failed": 0, "needs_review": 0
    }
