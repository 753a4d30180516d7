"""
Persistence layer for the settlement feature.

Every transition toward a payout state goes through ``compare_and_set`` or
``claim_for_settlement``: a single conditional UPDATE that only matches when
the status column still holds the expected value. A lost race shows up as
``None`` and the caller re-reads.
"""

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from psycopg import sql

from settlement_engine.db.helpers import (
    DatabaseError,
    fetch_all,
    fetch_one,
    fetch_val,
    with_db_retry,
)
from settlement_engine.db.pool import get_db_transaction
from settlement_engine.features.settlement.domain import (
    EntityType,
    FeedbackEntry,
    JobOffer,
    JobOfferStatus,
    OfferDetails,
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
    SessionFeedback,
    SessionStatus,
    SessionVerification,
)
from settlement_engine.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

ENTITY_TABLES: dict[EntityType, str] = {
    EntityType.SESSION: "sessions",
    EntityType.REFERRAL: "referrals",
    EntityType.JOB_OFFER: "job_offers",
}

# Columns a compare-and-set may write, per table.
WRITABLE_COLUMNS: dict[EntityType, frozenset[str]] = {
    EntityType.SESSION: frozenset(
        {
            "status",
            "payment_status",
            "start_time",
            "end_time",
            "payment_reference",
            "payout_reference",
            "cancel_reason",
            "refund_reason",
            "released_at",
            "refunded_at",
        }
    ),
    EntityType.REFERRAL: frozenset(
        {
            "status",
            "reward_amount",
            "payout_date",
            "payout_reference",
            "verified_at",
            "rejected_reason",
        }
    ),
    EntityType.JOB_OFFER: frozenset(
        {"status", "confirmed_by", "confirmed_at", "paid_at", "payout_reference"}
    ),
}


class SettlementRepositoryError(DatabaseError):
    """More specific exception for repository failures."""


def _db_value(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


class SettlementRepository:
    """Postgres-backed storage for sessions, referrals, job offers and payout records."""

    # ------------------------------------------------------------------
    # Row mapping
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_verification(row: dict | None) -> SessionVerification | None:
        if not row:
            return None
        return SessionVerification(
            session_id=str(row["session_id"]),
            verified=row["verified"],
            method=row["method"],
            duration_minutes=row.get("duration_minutes"),
            participant_count=row.get("participant_count"),
            reason=row.get("reason"),
            received_at=row.get("received_at"),
            sequence=row.get("sequence"),
        )

    @classmethod
    def _row_to_session(
        cls, row: dict | None, verification: SessionVerification | None = None
    ) -> Session | None:
        if not row:
            return None

        def _entry(prefix: str) -> FeedbackEntry | None:
            provided_at = row.get(f"{prefix}_feedback_at")
            if provided_at is None:
                return None
            return FeedbackEntry(
                provided_at=provided_at,
                rating=row.get(f"{prefix}_rating"),
                comment=row.get(f"{prefix}_comment"),
            )

        return Session(
            id=str(row["id"]),
            seeker_id=str(row["seeker_id"]),
            professional_id=str(row["professional_id"]),
            start_time=row["start_time"],
            end_time=row["end_time"],
            amount=row["amount"],
            payout_account=row.get("payout_account"),
            currency=row.get("currency") or "usd",
            status=SessionStatus(row["status"]),
            payment_status=PaymentStatus(row["payment_status"]),
            payment_reference=row.get("payment_reference"),
            payout_reference=row.get("payout_reference"),
            feedback=SessionFeedback(seeker=_entry("seeker"), professional=_entry("professional")),
            verification=verification,
            cancel_reason=row.get("cancel_reason"),
            refund_reason=row.get("refund_reason"),
            released_at=row.get("released_at"),
            refunded_at=row.get("refunded_at"),
            created_at=row.get("created_at"),
            updated_at=row.get("updated_at"),
        )

    @staticmethod
    def _row_to_referral(row: dict | None) -> Referral | None:
        if not row:
            return None
        return Referral(
            id=str(row["id"]),
            referrer_id=str(row["referrer_id"]),
            candidate_email=row["candidate_email"],
            company_domain=row.get("company_domain"),
            payout_account=row.get("payout_account"),
            status=ReferralStatus(row["status"]),
            email_domain_verified=row["email_domain_verified"],
            reward_amount=row.get("reward_amount"),
            currency=row.get("currency") or "usd",
            payout_date=row.get("payout_date"),
            payout_reference=row.get("payout_reference"),
            verified_at=row.get("verified_at"),
            rejected_reason=row.get("rejected_reason"),
            created_at=row.get("created_at"),
            updated_at=row.get("updated_at"),
        )

    @staticmethod
    def _row_to_job_offer(row: dict | None) -> JobOffer | None:
        if not row:
            return None
        confirmed_by = row.get("confirmed_by")
        return JobOffer(
            id=str(row["id"]),
            session_id=str(row["session_id"]),
            candidate_id=str(row["candidate_id"]),
            professional_id=str(row["professional_id"]),
            company_id=str(row["company_id"]),
            reported_by=PartyRole(row["reported_by"]),
            bonus_amount=row["bonus_amount"],
            payout_account=row.get("payout_account"),
            currency=row.get("currency") or "usd",
            offer_details=OfferDetails(
                position=row.get("position"),
                start_date=row.get("start_date"),
                salary=row.get("salary"),
            ),
            status=JobOfferStatus(row["status"]),
            confirmed_by=PartyRole(confirmed_by) if confirmed_by else None,
            payout_reference=row.get("payout_reference"),
            reported_at=row.get("reported_at"),
            confirmed_at=row.get("confirmed_at"),
            paid_at=row.get("paid_at"),
            updated_at=row.get("updated_at"),
        )

    @staticmethod
    def _row_to_payout_record(row: dict | None) -> PayoutRecord | None:
        if not row:
            return None
        return PayoutRecord(
            idempotency_key=row["idempotency_key"],
            entity_type=EntityType(row["entity_type"]),
            entity_id=str(row["entity_id"]),
            operation=PayoutOperation(row["operation"]),
            amount=row["amount"],
            currency=row["currency"],
            destination=row.get("destination"),
            state=PayoutRecordState(row["state"]),
            processor_reference=row.get("processor_reference"),
            error=row.get("error"),
            attempts=row.get("attempts", 1),
            created_at=row.get("created_at"),
            updated_at=row.get("updated_at"),
        )

    async def _row_to_entity(self, entity_type: EntityType, row: dict | None):
        if entity_type == EntityType.SESSION:
            if not row:
                return None
            verification = await self.latest_verification(str(row["id"]))
            return self._row_to_session(row, verification)
        if entity_type == EntityType.REFERRAL:
            return self._row_to_referral(row)
        return self._row_to_job_offer(row)

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    @with_db_retry()
    async def insert_session(self, session: Session) -> Session:
        query = """
            INSERT INTO sessions (
                id, seeker_id, professional_id, start_time, end_time,
                amount, currency, payout_account, status, payment_status
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            RETURNING *
        """
        row = await fetch_one(
            query,
            (
                session.id,
                session.seeker_id,
                session.professional_id,
                session.start_time,
                session.end_time,
                session.amount,
                session.currency,
                session.payout_account,
                session.status.value,
                session.payment_status.value,
            ),
        )
        if not row:
            raise SettlementRepositoryError("Failed to create session", operation="insert_session")

        logger.info("Session created", session_id=session.id)
        return self._row_to_session(row)

    @with_db_retry()
    async def get_session(self, session_id: str) -> Session | None:
        row = await fetch_one("SELECT * FROM sessions WHERE id = %s", (session_id,))
        return await self._row_to_entity(EntityType.SESSION, row)

    @with_db_retry()
    async def list_sessions_for_user(
        self,
        user_id: str,
        *,
        status: SessionStatus | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Session]:
        query = """
            SELECT * FROM sessions
            WHERE (seeker_id = %s OR professional_id = %s)
              AND (%s::text IS NULL OR status = %s)
            ORDER BY start_time DESC
            LIMIT %s OFFSET %s
        """
        status_value = _db_value(status)
        rows = await fetch_all(query, (user_id, user_id, status_value, status_value, limit, offset))
        return [self._row_to_session(row) for row in rows]

    @with_db_retry()
    async def list_sessions(
        self, *, status: SessionStatus, payment_status: PaymentStatus, limit: int = 100
    ) -> list[Session]:
        query = """
            SELECT * FROM sessions
            WHERE status = %s AND payment_status = %s
            ORDER BY updated_at
            LIMIT %s
        """
        rows = await fetch_all(query, (status.value, payment_status.value, limit))
        return [self._row_to_session(row) for row in rows]

    @with_db_retry()
    async def save_feedback(
        self, session_id: str, role: PartyRole, entry: FeedbackEntry
    ) -> Session | None:
        """Write one side's feedback; no-op (None) when that side already has feedback."""
        prefix = "seeker" if role == PartyRole.CANDIDATE else "professional"
        query = sql.SQL(
            """
            UPDATE sessions
            SET {at} = %s, {rating} = %s, {comment} = %s, updated_at = NOW()
            WHERE id = %s AND {at} IS NULL
            RETURNING *
            """
        ).format(
            at=sql.Identifier(f"{prefix}_feedback_at"),
            rating=sql.Identifier(f"{prefix}_rating"),
            comment=sql.Identifier(f"{prefix}_comment"),
        )
        row = await fetch_one(query, (entry.provided_at, entry.rating, entry.comment, session_id))
        return await self._row_to_entity(EntityType.SESSION, row)

    @with_db_retry()
    async def append_verification(self, verification: SessionVerification) -> SessionVerification:
        query = """
            INSERT INTO session_verifications (
                session_id, verified, method, duration_minutes,
                participant_count, reason, received_at
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s)
            RETURNING *
        """
        row = await fetch_one(
            query,
            (
                verification.session_id,
                verification.verified,
                verification.method,
                verification.duration_minutes,
                verification.participant_count,
                verification.reason,
                verification.received_at or datetime.now(UTC),
            ),
        )
        return self._row_to_verification(row)

    @with_db_retry()
    async def latest_verification(self, session_id: str) -> SessionVerification | None:
        query = """
            SELECT * FROM session_verifications
            WHERE session_id = %s
            ORDER BY sequence DESC
            LIMIT 1
        """
        row = await fetch_one(query, (session_id,))
        return self._row_to_verification(row)

    # ------------------------------------------------------------------
    # Referrals
    # ------------------------------------------------------------------

    @with_db_retry()
    async def insert_referral(self, referral: Referral) -> Referral:
        query = """
            INSERT INTO referrals (
                id, referrer_id, candidate_email, company_domain,
                payout_account, status, email_domain_verified, currency
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
            RETURNING *
        """
        row = await fetch_one(
            query,
            (
                referral.id,
                referral.referrer_id,
                referral.candidate_email,
                referral.company_domain,
                referral.payout_account,
                referral.status.value,
                referral.email_domain_verified,
                referral.currency,
            ),
        )
        if not row:
            raise SettlementRepositoryError("Failed to create referral", operation="insert_referral")
        return self._row_to_referral(row)

    @with_db_retry()
    async def get_referral(self, referral_id: str) -> Referral | None:
        row = await fetch_one("SELECT * FROM referrals WHERE id = %s", (referral_id,))
        return self._row_to_referral(row)

    @with_db_retry()
    async def list_referrals_for_referrer(self, referrer_id: str) -> list[Referral]:
        rows = await fetch_all(
            "SELECT * FROM referrals WHERE referrer_id = %s ORDER BY created_at DESC",
            (referrer_id,),
        )
        return [self._row_to_referral(row) for row in rows]

    @with_db_retry()
    async def set_referral_domain_verified(self, referral_id: str, verified: bool) -> Referral | None:
        """Record the email-scan fact; only pending referrals accept it."""
        query = """
            UPDATE referrals
            SET email_domain_verified = %s, updated_at = NOW()
            WHERE id = %s AND status = 'pending'
            RETURNING *
        """
        row = await fetch_one(query, (verified, referral_id))
        return self._row_to_referral(row)

    @with_db_retry()
    async def count_referrals(self, referrer_id: str, status: ReferralStatus) -> int:
        value = await fetch_val(
            "SELECT COUNT(*) FROM referrals WHERE referrer_id = %s AND status = %s",
            (referrer_id, status.value),
        )
        return int(value or 0)

    @with_db_retry()
    async def last_referral_payout_date(self, referrer_id: str) -> datetime | None:
        return await fetch_val(
            """
            SELECT MAX(payout_date) FROM referrals
            WHERE referrer_id = %s AND status = 'rewarded'
            """,
            (referrer_id,),
        )

    # ------------------------------------------------------------------
    # Job offers
    # ------------------------------------------------------------------

    @with_db_retry()
    async def insert_job_offer(self, offer: JobOffer) -> JobOffer | None:
        """Insert a reported offer; None when the candidate already has one for this company."""
        query = """
            INSERT INTO job_offers (
                id, session_id, candidate_id, professional_id, company_id,
                reported_by, status, bonus_amount, currency, payout_account,
                position, start_date, salary, reported_at
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (candidate_id, company_id) DO NOTHING
            RETURNING *
        """
        row = await fetch_one(
            query,
            (
                offer.id,
                offer.session_id,
                offer.candidate_id,
                offer.professional_id,
                offer.company_id,
                offer.reported_by.value,
                offer.status.value,
                offer.bonus_amount,
                offer.currency,
                offer.payout_account,
                offer.offer_details.position,
                offer.offer_details.start_date,
                offer.offer_details.salary,
                offer.reported_at or datetime.now(UTC),
            ),
        )
        if not row:
            logger.info(
                "Job offer already reported for company",
                candidate_id=offer.candidate_id,
                company_id=offer.company_id,
            )
        return self._row_to_job_offer(row)

    @with_db_retry()
    async def get_job_offer(self, offer_id: str) -> JobOffer | None:
        row = await fetch_one("SELECT * FROM job_offers WHERE id = %s", (offer_id,))
        return self._row_to_job_offer(row)

    @with_db_retry()
    async def find_job_offer(self, candidate_id: str, company_id: str) -> JobOffer | None:
        row = await fetch_one(
            "SELECT * FROM job_offers WHERE candidate_id = %s AND company_id = %s",
            (candidate_id, company_id),
        )
        return self._row_to_job_offer(row)

    @with_db_retry()
    async def list_job_offers_for_user(self, user_id: str) -> list[JobOffer]:
        rows = await fetch_all(
            """
            SELECT * FROM job_offers
            WHERE candidate_id = %s OR professional_id = %s
            ORDER BY reported_at DESC
            """,
            (user_id, user_id),
        )
        return [self._row_to_job_offer(row) for row in rows]

    # ------------------------------------------------------------------
    # Compare-and-set
    # ------------------------------------------------------------------

    async def get_entity(self, entity_type: EntityType, entity_id: str):
        if entity_type == EntityType.SESSION:
            return await self.get_session(entity_id)
        if entity_type == EntityType.REFERRAL:
            return await self.get_referral(entity_id)
        return await self.get_job_offer(entity_id)

    @staticmethod
    def _build_cas_query(
        entity_type: EntityType,
        field: str,
        expected: Any,
        new: Any,
        updates: dict[str, Any] | None,
        entity_id: str,
    ) -> tuple[sql.Composed, tuple]:
        columns = {field: new, **(updates or {})}
        unknown = set(columns) - WRITABLE_COLUMNS[entity_type]
        if unknown:
            raise ValueError(f"Columns not writable on {entity_type.value}: {sorted(unknown)}")

        assignments = sql.SQL(", ").join(
            sql.SQL("{} = %s").format(sql.Identifier(column)) for column in columns
        )
        query = sql.SQL(
            "UPDATE {table} SET {assignments}, updated_at = NOW() "
            "WHERE id = %s AND {field} = %s RETURNING *"
        ).format(
            table=sql.Identifier(ENTITY_TABLES[entity_type]),
            assignments=assignments,
            field=sql.Identifier(field),
        )
        params = tuple(_db_value(value) for value in columns.values()) + (
            entity_id,
            _db_value(expected),
        )
        return query, params

    @with_db_retry()
    async def compare_and_set(
        self,
        entity_type: EntityType,
        entity_id: str,
        field: str,
        expected: Any,
        new: Any,
        updates: dict[str, Any] | None = None,
    ):
        """
        Atomically set ``field`` to ``new`` only if it still equals ``expected``.

        Returns:
            The updated entity, or None when the row no longer matched.
        """
        query, params = self._build_cas_query(entity_type, field, expected, new, updates, entity_id)
        row = await fetch_one(query, params)
        if row is None:
            logger.debug(
                "Compare-and-set lost",
                entity_type=entity_type.value,
                entity_id=entity_id,
                field=field,
                expected=_db_value(expected),
            )
        return await self._row_to_entity(entity_type, row)

    @with_db_retry()
    async def claim_for_settlement(
        self,
        entity_type: EntityType,
        entity_id: str,
        field: str,
        expected: Any,
        new: Any,
        updates: dict[str, Any] | None,
        record: PayoutRecord,
        limits: ReferralPayoutLimits | None = None,
    ) -> tuple[Any, PayoutRecord] | None:
        """
        Compare-and-set the entity and open its payout record in one transaction.

        A re-used idempotency key (retry after a failed attempt) reopens the
        existing record and bumps its attempt counter, but only when the record
        belongs to the same entity and operation and has not succeeded.

        Raises:
            PreconditionFailed: The key belongs to another settlement, or the
                referrer's payout limits are exhausted. The transaction is
                rolled back, so the entity keeps its current state.
        """
        query, params = self._build_cas_query(entity_type, field, expected, new, updates, entity_id)
        record_query = """
            INSERT INTO payout_records (
                idempotency_key, entity_type, entity_id, operation,
                amount, currency, destination, state
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s, 'in_flight')
            ON CONFLICT (idempotency_key) DO UPDATE
            SET state = 'in_flight',
                error = NULL,
                attempts = payout_records.attempts + 1,
                updated_at = NOW()
            WHERE payout_records.entity_type = EXCLUDED.entity_type
              AND payout_records.entity_id = EXCLUDED.entity_id
              AND payout_records.operation = EXCLUDED.operation
              AND payout_records.state <> 'succeeded'
            RETURNING *
        """

        async with await get_db_transaction() as conn:
            if limits is not None and limits.enabled:
                await self._check_referral_limits(limits, conn)
            row = await fetch_one(query, params, connection=conn)
            if row is None:
                return None
            record_row = await fetch_one(
                record_query,
                (
                    record.idempotency_key,
                    record.entity_type.value,
                    record.entity_id,
                    record.operation.value,
                    record.amount,
                    record.currency,
                    record.destination,
                ),
                connection=conn,
            )
            if record_row is None:
                logger.warning(
                    "Idempotency key conflict, claim rolled back",
                    entity_type=entity_type.value,
                    entity_id=entity_id,
                    idempotency_key=record.idempotency_key,
                )
                raise PreconditionFailed(
                    "Idempotency key belongs to another settlement",
                    entity_type=entity_type.value,
                    entity_id=entity_id,
                )

        entity = await self._row_to_entity(entity_type, row)
        return entity, self._row_to_payout_record(record_row)

    async def _check_referral_limits(self, limits: ReferralPayoutLimits, conn) -> None:
        """Serialize payouts per referrer and re-check the policy under the lock."""
        await fetch_one(
            "SELECT pg_advisory_xact_lock(hashtext(%s))",
            (f"referral-payout:{limits.referrer_id}",),
            connection=conn,
        )
        rewarded = await fetch_val(
            "SELECT COUNT(*) FROM referrals WHERE referrer_id = %s AND status = %s",
            (limits.referrer_id, ReferralStatus.REWARDED.value),
            connection=conn,
        )
        last_payout = await fetch_val(
            """
            SELECT MAX(payout_date) FROM referrals
            WHERE referrer_id = %s AND status = 'rewarded'
            """,
            (limits.referrer_id,),
            connection=conn,
        )
        violation = limits.violation(int(rewarded or 0), last_payout)
        if violation:
            raise PreconditionFailed(violation, entity_type="referral")

    @with_db_retry()
    async def abandon_claim(
        self,
        entity_type: EntityType,
        entity_id: str,
        field: str,
        claimed: Any,
        restored: Any,
        updates: dict[str, Any] | None,
        idempotency_key: str,
        state: PayoutRecordState,
        error: str | None = None,
    ):
        """
        Close a failed claim: settle the payout record and move the entity back.

        Both writes share one transaction, so no other claimer can reopen the
        key between them.

        Returns:
            The restored entity, or None when it was no longer in ``claimed``.
        """
        query, params = self._build_cas_query(
            entity_type, field, claimed, restored, updates, entity_id
        )
        async with await get_db_transaction() as conn:
            await fetch_one(
                """
                UPDATE payout_records
                SET state = %s, error = %s, updated_at = NOW()
                WHERE idempotency_key = %s
                RETURNING idempotency_key
                """,
                (state.value, (error or None) and error[:500], idempotency_key),
                connection=conn,
            )
            row = await fetch_one(query, params, connection=conn)

        return await self._row_to_entity(entity_type, row)

    # ------------------------------------------------------------------
    # Payout records
    # ------------------------------------------------------------------

    @with_db_retry()
    async def get_payout_record(self, idempotency_key: str) -> PayoutRecord | None:
        row = await fetch_one(
            "SELECT * FROM payout_records WHERE idempotency_key = %s", (idempotency_key,)
        )
        return self._row_to_payout_record(row)

    @with_db_retry()
    async def update_payout_record(
        self,
        idempotency_key: str,
        state: PayoutRecordState,
        *,
        processor_reference: str | None = None,
        error: str | None = None,
    ) -> PayoutRecord | None:
        query = """
            UPDATE payout_records
            SET state = %s,
                processor_reference = COALESCE(%s, processor_reference),
                error = %s,
                updated_at = NOW()
            WHERE idempotency_key = %s
            RETURNING *
        """
        row = await fetch_one(
            query, (state.value, processor_reference, (error or None) and error[:500], idempotency_key)
        )
        return self._row_to_payout_record(row)

    @with_db_retry()
    async def list_payout_records(
        self,
        states: list[PayoutRecordState],
        *,
        older_than: datetime | None = None,
        limit: int = 100,
    ) -> list[PayoutRecord]:
        query = """
            SELECT * FROM payout_records
            WHERE state = ANY(%s)
              AND (%s::timestamptz IS NULL OR updated_at < %s)
            ORDER BY updated_at
            LIMIT %s
        """
        rows = await fetch_all(
            query, ([state.value for state in states], older_than, older_than, limit)
        )
        return [self._row_to_payout_record(row) for row in rows]

    @with_db_retry()
    async def latest_payout_record(
        self, entity_type: EntityType, entity_id: str, operation: PayoutOperation
    ) -> PayoutRecord | None:
        query = """
            SELECT * FROM payout_records
            WHERE entity_type = %s AND entity_id = %s AND operation = %s
            ORDER BY created_at DESC
            LIMIT 1
        """
        row = await fetch_one(query, (entity_type.value, entity_id, operation.value))
        return self._row_to_payout_record(row)
