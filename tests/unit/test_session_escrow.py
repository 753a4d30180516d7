"""
Tests for the session escrow state machine.
"""

from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest

from settlement_engine.features.settlement.domain import (
    CallerRole,
    EntityType,
    Forbidden,
    InvalidTransition,
    PartyRole,
    PaymentStatus,
    PayoutFailed,
    PayoutOutcome,
    PreconditionFailed,
    SessionStatus,
)
from settlement_engine.features.settlement.services.payment_processor import (
    PaymentProcessorError,
    PaymentProcessorTimeout,
)
from settlement_engine.features.settlement.services.verification_adapter import SignalSource

NOW = datetime(2026, 3, 2, 15, 0, tzinfo=UTC)


@pytest.mark.asyncio
async def test_booked_session_is_paid_out_after_verified_attendance(services, fake_processor):
    sessions = services.sessions
    session = await sessions.create_session(
        "seeker-1",
        "pro-1",
        NOW - timedelta(hours=3),
        NOW - timedelta(hours=2),
        Decimal("80.00"),
        payout_account="acct_pro_1",
        session_id="sess-a",
    )
    assert session.status == SessionStatus.REQUESTED
    assert session.payment_status == PaymentStatus.PENDING

    await sessions.record_payment("sess-a", "ch_123")
    scheduled = await sessions.confirm_schedule(
        "sess-a", session.start_time, session.end_time, CallerRole.PROFESSIONAL
    )
    assert scheduled.status == SessionStatus.SCHEDULED

    applied = await services.signals.handle(
        SignalSource.MEETING,
        {"sessionId": "sess-a", "verified": True, "durationMinutes": 32, "participantCount": 2},
    )
    assert applied is True

    completed = await sessions.mark_completed("sess-a", CallerRole.SYSTEM, now=NOW)
    assert completed.status == SessionStatus.COMPLETED
    assert completed.is_verified

    result = await sessions.release_payment("sess-a", CallerRole.ADMIN, caller_id="admin-1")

    assert result.outcome == PayoutOutcome.ACCEPTED
    assert result.amount == Decimal("80.00")
    released = await sessions.get_session("sess-a")
    assert released.payment_status == PaymentStatus.RELEASED
    assert released.payout_reference == result.processor_reference
    assert released.released_at is not None
    assert len(fake_processor.transfers) == 1
    assert fake_processor.transfers[0]["destination"] == "acct_pro_1"


@pytest.mark.asyncio
async def test_create_session_rejects_bad_input(services):
    with pytest.raises(ValueError):
        await services.sessions.create_session("a", "b", NOW, NOW, Decimal("10"))
    with pytest.raises(ValueError):
        await services.sessions.create_session(
            "a", "b", NOW, NOW + timedelta(hours=1), Decimal("0")
        )
    with pytest.raises(ValueError):
        await services.sessions.create_session(
            "a", "a", NOW, NOW + timedelta(hours=1), Decimal("10")
        )


@pytest.mark.asyncio
async def test_seeker_cannot_confirm_schedule(services, seed_session):
    session = await seed_session(status=SessionStatus.REQUESTED, payment_status=PaymentStatus.PAID)

    with pytest.raises(Forbidden):
        await services.sessions.confirm_schedule(
            session.id, session.start_time, session.end_time, CallerRole.SEEKER
        )


@pytest.mark.asyncio
async def test_mark_completed_before_end_time_fails(services, seed_session):
    session = await seed_session(status=SessionStatus.SCHEDULED)

    with pytest.raises(PreconditionFailed):
        await services.sessions.mark_completed(
            session.id, CallerRole.SYSTEM, now=session.end_time - timedelta(minutes=5)
        )

    assert (await services.sessions.get_session(session.id)).status == SessionStatus.SCHEDULED


@pytest.mark.asyncio
async def test_completed_session_cannot_move_again(services, seed_session):
    session = await seed_session(status=SessionStatus.COMPLETED)

    with pytest.raises(InvalidTransition):
        await services.sessions.cancel(session.id, CallerRole.ADMIN, reason="late")


@pytest.mark.asyncio
async def test_release_requires_verification(services, seed_session, fake_processor):
    session = await seed_session(verified=False)

    with pytest.raises(PreconditionFailed):
        await services.sessions.release_payment(session.id, CallerRole.ADMIN)

    assert fake_processor.transfers == []
    assert (await services.sessions.get_session(session.id)).payment_status == PaymentStatus.PAID


@pytest.mark.asyncio
async def test_admin_override_releases_unverified_session(services, seed_session, fake_audit):
    session = await seed_session(verified=None)

    result = await services.sessions.release_payment(
        session.id, CallerRole.ADMIN, admin_override=True, caller_id="admin-1"
    )

    assert result.accepted
    assert "session_verification_overridden" in fake_audit.actions()


@pytest.mark.asyncio
async def test_system_cannot_override_verification(services, seed_session):
    session = await seed_session(verified=None)

    with pytest.raises(Forbidden):
        await services.sessions.release_payment(
            session.id, CallerRole.SYSTEM, admin_override=True
        )


@pytest.mark.asyncio
async def test_participants_cannot_release(services, seed_session):
    session = await seed_session()

    with pytest.raises(Forbidden):
        await services.sessions.release_payment(session.id, CallerRole.PROFESSIONAL)


@pytest.mark.asyncio
async def test_release_is_idempotent(services, seed_session, fake_processor):
    session = await seed_session()

    first = await services.sessions.release_payment(session.id, CallerRole.ADMIN)
    second = await services.sessions.release_payment(session.id, CallerRole.ADMIN)

    assert first.outcome == PayoutOutcome.ACCEPTED
    assert second.outcome == PayoutOutcome.ALREADY_SETTLED
    assert second.processor_reference == first.processor_reference
    assert len(fake_processor.transfers) == 1


@pytest.mark.asyncio
async def test_released_payment_cannot_be_refunded(services, seed_session, fake_processor):
    session = await seed_session()
    await services.sessions.release_payment(session.id, CallerRole.ADMIN)

    with pytest.raises(InvalidTransition):
        await services.sessions.refund(session.id, "changed mind", CallerRole.ADMIN)

    assert fake_processor.refunds == []
    assert (await services.sessions.get_session(session.id)).payment_status == PaymentStatus.RELEASED


@pytest.mark.asyncio
async def test_refund_of_pending_payment_skips_processor(services, seed_session, fake_processor):
    session = await seed_session(status=SessionStatus.SCHEDULED, payment_status=PaymentStatus.PENDING)

    result = await services.sessions.refund(session.id, "never charged", CallerRole.ADMIN)

    assert result.accepted
    assert result.amount == Decimal("0")
    assert fake_processor.refunds == []
    updated = await services.sessions.get_session(session.id)
    assert updated.payment_status == PaymentStatus.REFUNDED
    assert updated.refund_reason == "never charged"


@pytest.mark.asyncio
async def test_cancel_refunds_captured_payment(services, seed_session, fake_processor):
    session = await seed_session(status=SessionStatus.SCHEDULED)

    cancelled, refund = await services.sessions.cancel(
        session.id, CallerRole.SEEKER, reason="conflict", caller_id="seeker-1"
    )

    assert cancelled.status == SessionStatus.CANCELLED
    assert cancelled.payment_status == PaymentStatus.REFUNDED
    assert refund is not None and refund.accepted
    assert fake_processor.refunds[0]["payment_reference"] == "ch_1"


@pytest.mark.asyncio
async def test_cancel_defers_refund_when_processor_fails(
    services, seed_session, fake_processor, fake_repository
):
    session = await seed_session(status=SessionStatus.SCHEDULED)
    fake_processor.failures.append(PaymentProcessorError("card network down", status_code=502))

    cancelled, refund = await services.sessions.cancel(session.id, CallerRole.ADMIN, reason="ops")

    assert refund is None
    assert cancelled.status == SessionStatus.CANCELLED
    assert cancelled.payment_status == PaymentStatus.PAID
    assert cancelled.refunded_at is None

    summary = await services.orchestrator.reconcile(now=NOW + timedelta(hours=1))

    assert summary["refunded"] == 1
    refunded = await fake_repository.get_session(session.id)
    assert refunded.payment_status == PaymentStatus.REFUNDED


@pytest.mark.asyncio
async def test_outsider_cannot_cancel(services, seed_session):
    session = await seed_session(status=SessionStatus.SCHEDULED)

    with pytest.raises(Forbidden):
        await services.sessions.cancel(session.id, CallerRole.SEEKER, caller_id="someone-else")


@pytest.mark.asyncio
async def test_no_show_is_admin_only(services, seed_session):
    session = await seed_session(status=SessionStatus.SCHEDULED)

    with pytest.raises(Forbidden):
        await services.sessions.mark_no_show(session.id, CallerRole.PROFESSIONAL)

    updated = await services.sessions.mark_no_show(session.id, CallerRole.ADMIN, reason="absent")
    assert updated.status == SessionStatus.NO_SHOW


@pytest.mark.asyncio
async def test_feedback_is_accepted_once_per_side(services, seed_session):
    session = await seed_session(status=SessionStatus.COMPLETED)

    updated = await services.sessions.submit_feedback(
        session.id, PartyRole.CANDIDATE, CallerRole.SEEKER, rating=5, now=NOW
    )
    assert updated.feedback.seeker.rating == 5
    assert not updated.feedback.is_bilateral()

    with pytest.raises(InvalidTransition):
        await services.sessions.submit_feedback(
            session.id, PartyRole.CANDIDATE, CallerRole.SEEKER, rating=1, now=NOW
        )

    updated = await services.sessions.submit_feedback(
        session.id, PartyRole.PROFESSIONAL, CallerRole.PROFESSIONAL, rating=4, now=NOW
    )
    assert updated.feedback.is_bilateral()
    assert updated.feedback.seeker.rating == 5


@pytest.mark.asyncio
async def test_feedback_for_other_side_is_forbidden(services, seed_session):
    session = await seed_session(status=SessionStatus.COMPLETED)

    with pytest.raises(Forbidden):
        await services.sessions.submit_feedback(
            session.id, PartyRole.PROFESSIONAL, CallerRole.SEEKER, rating=3
        )


@pytest.mark.asyncio
async def test_feedback_not_accepted_before_session_starts(services, seed_session):
    session = await seed_session(status=SessionStatus.SCHEDULED)

    with pytest.raises(InvalidTransition):
        await services.sessions.submit_feedback(
            session.id, PartyRole.CANDIDATE, CallerRole.SEEKER, rating=5
        )


@pytest.mark.asyncio
async def test_latest_verification_wins(services, seed_session):
    session = await seed_session(verified=True)

    await services.sessions.apply_verification(
        session.id, verified=False, method="video_meeting", reason="provider correction"
    )

    with pytest.raises(PreconditionFailed):
        await services.sessions.release_payment(session.id, CallerRole.ADMIN)


@pytest.mark.asyncio
async def test_record_payment_is_idempotent_for_same_reference(services, seed_session):
    session = await seed_session(status=SessionStatus.REQUESTED, payment_status=PaymentStatus.PENDING)

    first = await services.sessions.record_payment(session.id, "ch_9")
    second = await services.sessions.record_payment(session.id, "ch_9")

    assert first.payment_status == PaymentStatus.PAID
    assert second.payment_reference == "ch_9"
    with pytest.raises(InvalidTransition):
        await services.sessions.record_payment(session.id, "ch_other")


@pytest.mark.asyncio
async def test_refunded_session_cannot_be_released(services, seed_session, fake_processor):
    session = await seed_session()
    await services.sessions.refund(session.id, "dispute", CallerRole.ADMIN)

    with pytest.raises(InvalidTransition):
        await services.sessions.release_payment(session.id, CallerRole.ADMIN)

    assert fake_processor.transfers == []
    refunded = await services.sessions.get_session(session.id)
    assert refunded.payment_status == PaymentStatus.REFUNDED


@pytest.mark.asyncio
async def test_cancel_defers_refund_while_payout_outcome_is_unknown(
    services, seed_session, fake_processor
):
    session = await seed_session(status=SessionStatus.SCHEDULED)
    fake_processor.failures.append(PaymentProcessorTimeout("read timed out"))
    with pytest.raises(PayoutFailed):
        await services.orchestrator.request_payout(EntityType.SESSION, session.id)

    cancelled, refund = await services.sessions.cancel(
        session.id, CallerRole.ADMIN, reason="rescheduled"
    )

    assert refund is None
    assert cancelled.status == SessionStatus.CANCELLED
    assert cancelled.payment_status == PaymentStatus.PAID
    assert fake_processor.refunds == []
