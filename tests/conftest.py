import asyncio
from dataclasses import replace
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from itertools import count

import pytest

from settlement_engine.features.settlement.domain import (
    EntityType,
    FeedbackEntry,
    JobOffer,
    PartyRole,
    PaymentStatus,
    PayoutOperation,
    PayoutRecord,
    PayoutRecordState,
    PreconditionFailed,
    Referral,
    ReferralPayoutLimits,
    ReferralStatus,
    Session,
    SessionStatus,
    SessionVerification,
)
from settlement_engine.features.settlement.services import build_settlement_services
from settlement_engine.features.settlement.services.payment_processor import ProcessorReceipt

NOW = datetime(2026, 3, 2, 15, 0, tzinfo=UTC)


class FakeSettlementRepository:
    """
    In-memory stand-in for SettlementRepository.

    compare_and_set and claim_for_settlement never await between the check
    and the write, so they are atomic with respect to other coroutines.
    """

    def __init__(self):
        self.sessions: dict[str, Session] = {}
        self.verifications: dict[str, list[SessionVerification]] = {}
        self.referrals: dict[str, Referral] = {}
        self.job_offers: dict[str, JobOffer] = {}
        self.payout_records: dict[str, PayoutRecord] = {}
        self._sequence = count(1)
        self.cas_misses = 0

    def _store(self, entity_type: EntityType) -> dict:
        return {
            EntityType.SESSION: self.sessions,
            EntityType.REFERRAL: self.referrals,
            EntityType.JOB_OFFER: self.job_offers,
        }[entity_type]

    def _with_verification(self, session: Session | None) -> Session | None:
        if session is None:
            return None
        history = self.verifications.get(session.id) or []
        return replace(session, verification=history[-1] if history else None)

    # Sessions

    async def insert_session(self, session: Session) -> Session:
        stored = replace(session, created_at=session.created_at or NOW, updated_at=NOW)
        self.sessions[session.id] = stored
        return self._with_verification(stored)

    async def get_session(self, session_id: str) -> Session | None:
        return self._with_verification(self.sessions.get(session_id))

    async def list_sessions_for_user(self, user_id, *, status=None, limit=50, offset=0):
        matches = [
            s
            for s in self.sessions.values()
            if user_id in (s.seeker_id, s.professional_id) and (status is None or s.status == status)
        ]
        matches.sort(key=lambda s: s.start_time, reverse=True)
        return [self._with_verification(s) for s in matches[offset : offset + limit]]

    async def list_sessions(self, *, status, payment_status, limit=100):
        return [
            self._with_verification(s)
            for s in self.sessions.values()
            if s.status == status and s.payment_status == payment_status
        ][:limit]

    async def save_feedback(self, session_id: str, role: PartyRole, entry: FeedbackEntry):
        session = self.sessions.get(session_id)
        if session is None or session.feedback.for_role(role) is not None:
            return None
        if role == PartyRole.CANDIDATE:
            feedback = replace(session.feedback, seeker=entry)
        else:
            feedback = replace(session.feedback, professional=entry)
        self.sessions[session_id] = replace(session, feedback=feedback, updated_at=NOW)
        return self._with_verification(self.sessions[session_id])

    async def append_verification(self, verification: SessionVerification):
        stored = replace(verification, sequence=next(self._sequence))
        self.verifications.setdefault(verification.session_id, []).append(stored)
        return stored

    async def latest_verification(self, session_id: str):
        history = self.verifications.get(session_id) or []
        return history[-1] if history else None

    # Referrals

    async def insert_referral(self, referral: Referral) -> Referral:
        self.referrals[referral.id] = replace(referral, created_at=NOW, updated_at=NOW)
        return self.referrals[referral.id]

    async def get_referral(self, referral_id: str):
        return self.referrals.get(referral_id)

    async def list_referrals_for_referrer(self, referrer_id: str):
        return [r for r in self.referrals.values() if r.referrer_id == referrer_id]

    async def set_referral_domain_verified(self, referral_id: str, verified: bool):
        referral = self.referrals.get(referral_id)
        if referral is None or referral.status != ReferralStatus.PENDING:
            return None
        self.referrals[referral_id] = replace(referral, email_domain_verified=verified)
        return self.referrals[referral_id]

    def _count_referrals(self, referrer_id: str, status: ReferralStatus) -> int:
        return sum(
            1 for r in self.referrals.values() if r.referrer_id == referrer_id and r.status == status
        )

    def _last_payout_date(self, referrer_id: str):
        dates = [
            r.payout_date
            for r in self.referrals.values()
            if r.referrer_id == referrer_id
            and r.status == ReferralStatus.REWARDED
            and r.payout_date is not None
        ]
        return max(dates) if dates else None

    async def count_referrals(self, referrer_id: str, status: ReferralStatus) -> int:
        return self._count_referrals(referrer_id, status)

    async def last_referral_payout_date(self, referrer_id: str):
        return self._last_payout_date(referrer_id)

    # Job offers

    async def insert_job_offer(self, offer: JobOffer):
        for existing in self.job_offers.values():
            if (existing.candidate_id, existing.company_id) == (offer.candidate_id, offer.company_id):
                return None
        self.job_offers[offer.id] = replace(offer, updated_at=NOW)
        return self.job_offers[offer.id]

    async def get_job_offer(self, offer_id: str):
        return self.job_offers.get(offer_id)

    async def find_job_offer(self, candidate_id: str, company_id: str):
        for offer in self.job_offers.values():
            if offer.candidate_id == candidate_id and offer.company_id == company_id:
                return offer
        return None

    async def list_job_offers_for_user(self, user_id: str):
        return [
            o for o in self.job_offers.values() if user_id in (o.candidate_id, o.professional_id)
        ]

    # Compare-and-set

    async def get_entity(self, entity_type: EntityType, entity_id: str):
        if entity_type == EntityType.SESSION:
            return await self.get_session(entity_id)
        return self._store(entity_type).get(entity_id)

    def _cas(self, entity_type, entity_id, field, expected, new, updates):
        store = self._store(entity_type)
        entity = store.get(entity_id)
        if entity is None or getattr(entity, field) != expected:
            self.cas_misses += 1
            return None
        store[entity_id] = replace(entity, **{field: new, **(updates or {})}, updated_at=NOW)
        return store[entity_id]

    async def compare_and_set(self, entity_type, entity_id, field, expected, new, updates=None):
        updated = self._cas(entity_type, entity_id, field, expected, new, updates)
        if updated is not None and entity_type == EntityType.SESSION:
            return self._with_verification(updated)
        return updated

    async def claim_for_settlement(
        self, entity_type, entity_id, field, expected, new, updates, record: PayoutRecord,
        limits: ReferralPayoutLimits | None = None,
    ):
        # Checks run before the write, matching the real transaction's rollback.
        if limits is not None and limits.enabled:
            violation = limits.violation(
                self._count_referrals(limits.referrer_id, ReferralStatus.REWARDED),
                self._last_payout_date(limits.referrer_id),
            )
            if violation:
                raise PreconditionFailed(violation, entity_type="referral")
        existing = self.payout_records.get(record.idempotency_key)
        if existing is not None and (
            (existing.entity_type, existing.entity_id, existing.operation)
            != (record.entity_type, record.entity_id, record.operation)
            or existing.state == PayoutRecordState.SUCCEEDED
        ):
            store = self._store(entity_type)
            if store.get(entity_id) is not None and getattr(store[entity_id], field) == expected:
                raise PreconditionFailed(
                    "Idempotency key belongs to another settlement",
                    entity_type=entity_type.value,
                    entity_id=entity_id,
                )
        updated = self._cas(entity_type, entity_id, field, expected, new, updates)
        if updated is None:
            return None
        if existing is None:
            stored = replace(
                record, state=PayoutRecordState.IN_FLIGHT, created_at=NOW, updated_at=NOW
            )
        else:
            stored = replace(
                existing,
                state=PayoutRecordState.IN_FLIGHT,
                error=None,
                attempts=existing.attempts + 1,
                updated_at=NOW,
            )
        self.payout_records[record.idempotency_key] = stored
        if entity_type == EntityType.SESSION:
            updated = self._with_verification(updated)
        return updated, stored

    async def abandon_claim(
        self, entity_type, entity_id, field, claimed, restored, updates, idempotency_key,
        state, error=None,
    ):
        record = self.payout_records.get(idempotency_key)
        if record is not None:
            self.payout_records[idempotency_key] = replace(
                record, state=state, error=error, updated_at=NOW
            )
        updated = self._cas(entity_type, entity_id, field, claimed, restored, updates)
        if updated is not None and entity_type == EntityType.SESSION:
            return self._with_verification(updated)
        return updated

    # Payout records

    async def get_payout_record(self, idempotency_key: str):
        return self.payout_records.get(idempotency_key)

    async def update_payout_record(
        self, idempotency_key, state, *, processor_reference=None, error=None
    ):
        record = self.payout_records.get(idempotency_key)
        if record is None:
            return None
        self.payout_records[idempotency_key] = replace(
            record,
            state=state,
            processor_reference=processor_reference or record.processor_reference,
            error=error,
            updated_at=NOW,
        )
        return self.payout_records[idempotency_key]

    async def list_payout_records(self, states, *, older_than=None, limit=100):
        return [
            r
            for r in self.payout_records.values()
            if r.state in states and (older_than is None or r.updated_at < older_than)
        ][:limit]

    async def latest_payout_record(self, entity_type, entity_id, operation: PayoutOperation):
        matches = [
            r
            for r in self.payout_records.values()
            if r.entity_type == entity_type
            and r.entity_id == entity_id
            and r.operation == operation
        ]
        return matches[-1] if matches else None


class FakePaymentProcessor:
    """
    Scripted processor. ``failures`` is a queue of exceptions raised by the
    next calls; once empty, calls succeed.
    """

    def __init__(self):
        self.transfers: list[dict] = []
        self.refunds: list[dict] = []
        self.failures: list[Exception] = []
        self._ids = count(1)

    async def _maybe_fail(self):
        # Yield so concurrent callers interleave at the processor boundary.
        await asyncio.sleep(0)
        if self.failures:
            raise self.failures.pop(0)

    async def create_transfer(
        self, *, idempotency_key, amount, currency, destination_account, metadata=None
    ):
        self.transfers.append(
            {
                "idempotency_key": idempotency_key,
                "amount": amount,
                "currency": currency,
                "destination": destination_account,
            }
        )
        await self._maybe_fail()
        return ProcessorReceipt(reference=f"tr_{next(self._ids)}", status="succeeded")

    async def create_refund(
        self, *, idempotency_key, amount, currency, payment_reference, metadata=None
    ):
        self.refunds.append(
            {
                "idempotency_key": idempotency_key,
                "amount": amount,
                "payment_reference": payment_reference,
            }
        )
        await self._maybe_fail()
        return ProcessorReceipt(reference=f"re_{next(self._ids)}", status="succeeded")


class FakeAuditLogger:
    def __init__(self):
        self.events: list[dict] = []

    async def log(self, **kwargs) -> bool:
        self.events.append(kwargs)
        return True

    def actions(self) -> list[str]:
        return [event["action"] for event in self.events]


@pytest.fixture
def fake_repository():
    return FakeSettlementRepository()


@pytest.fixture
def fake_processor():
    return FakePaymentProcessor()


@pytest.fixture
def fake_audit():
    return FakeAuditLogger()


@pytest.fixture
def services(fake_repository, fake_processor, fake_audit):
    return build_settlement_services(
        repository=fake_repository, processor=fake_processor, audit=fake_audit
    )


@pytest.fixture
def seed_session(fake_repository):
    """Insert a session directly in any state."""

    async def _seed(
        session_id: str = "sess-1",
        *,
        status: SessionStatus = SessionStatus.COMPLETED,
        payment_status: PaymentStatus = PaymentStatus.PAID,
        verified: bool | None = True,
        seeker_feedback: bool = False,
        professional_feedback: bool = False,
        amount: Decimal = Decimal("120.00"),
        payout_account: str | None = "acct_pro_1",
    ) -> Session:
        session = Session(
            id=session_id,
            seeker_id="seeker-1",
            professional_id="pro-1",
            start_time=NOW - timedelta(hours=2),
            end_time=NOW - timedelta(hours=1),
            amount=amount,
            payout_account=payout_account,
            status=status,
            payment_status=payment_status,
            payment_reference="ch_1" if payment_status != PaymentStatus.PENDING else None,
        )
        if seeker_feedback:
            session.feedback.seeker = FeedbackEntry(provided_at=NOW, rating=5)
        if professional_feedback:
            session.feedback.professional = FeedbackEntry(provided_at=NOW, rating=4)
        await fake_repository.insert_session(session)
        if verified is not None:
            await fake_repository.append_verification(
                SessionVerification(
                    session_id=session_id,
                    verified=verified,
                    method="video_meeting",
                    duration_minutes=45,
                    participant_count=2,
                    received_at=NOW,
                )
            )
        return await fake_repository.get_session(session_id)

    return _seed


@pytest.fixture
def seed_referral(fake_repository):
    async def _seed(
        referral_id: str = "ref-1",
        *,
        referrer_id: str = "pro-1",
        status: ReferralStatus = ReferralStatus.PENDING,
        email_domain_verified: bool = False,
        reward_amount: Decimal | None = None,
        payout_date: datetime | None = None,
    ) -> Referral:
        return await fake_repository.insert_referral(
            Referral(
                id=referral_id,
                referrer_id=referrer_id,
                candidate_email=f"{referral_id}@candidate.example",
                company_domain="acme.example",
                payout_account="acct_pro_1",
                status=status,
                email_domain_verified=email_domain_verified,
                reward_amount=reward_amount,
                payout_date=payout_date,
            )
        )

    return _seed
