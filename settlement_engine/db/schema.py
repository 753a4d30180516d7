"""
Table definitions for the settlement engine.

Each entity is a standalone record keyed by its id. Status columns are plain
text so compare-and-set updates can match on the previous value.
"""

from settlement_engine.db.pool import db_pool
from settlement_engine.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

SCHEMA_STATEMENTS: tuple[str, ...] = (
    """
    CREATE TABLE IF NOT EXISTS sessions (
        id TEXT PRIMARY KEY,
        seeker_id TEXT NOT NULL,
        professional_id TEXT NOT NULL,
        start_time TIMESTAMPTZ NOT NULL,
        end_time TIMESTAMPTZ NOT NULL,
        amount NUMERIC(12, 2) NOT NULL CHECK (amount > 0),
        currency TEXT NOT NULL DEFAULT 'usd',
        payout_account TEXT,
        status TEXT NOT NULL DEFAULT 'requested',
        payment_status TEXT NOT NULL DEFAULT 'pending',
        payment_reference TEXT,
        payout_reference TEXT,
        seeker_feedback_at TIMESTAMPTZ,
        seeker_rating SMALLINT,
        seeker_comment TEXT,
        professional_feedback_at TIMESTAMPTZ,
        professional_rating SMALLINT,
        professional_comment TEXT,
        cancel_reason TEXT,
        refund_reason TEXT,
        released_at TIMESTAMPTZ,
        refunded_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        CHECK (end_time > start_time)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_sessions_seeker ON sessions (seeker_id)",
    "CREATE INDEX IF NOT EXISTS idx_sessions_professional ON sessions (professional_id)",
    """
    CREATE TABLE IF NOT EXISTS session_verifications (
        sequence BIGSERIAL PRIMARY KEY,
        session_id TEXT NOT NULL REFERENCES sessions (id),
        verified BOOLEAN NOT NULL,
        method TEXT NOT NULL,
        duration_minutes INTEGER,
        participant_count INTEGER,
        reason TEXT,
        received_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_session_verifications_session
        ON session_verifications (session_id, sequence DESC)
    """,
    """
    CREATE TABLE IF NOT EXISTS referrals (
        id TEXT PRIMARY KEY,
        referrer_id TEXT NOT NULL,
        candidate_email TEXT NOT NULL,
        company_domain TEXT,
        payout_account TEXT,
        status TEXT NOT NULL DEFAULT 'pending',
        email_domain_verified BOOLEAN NOT NULL DEFAULT FALSE,
        reward_amount NUMERIC(12, 2),
        currency TEXT NOT NULL DEFAULT 'usd',
        payout_date TIMESTAMPTZ,
        payout_reference TEXT,
        verified_at TIMESTAMPTZ,
        rejected_reason TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_referrals_referrer ON referrals (referrer_id, status)",
    """
    CREATE TABLE IF NOT EXISTS job_offers (
        id TEXT PRIMARY KEY,
        session_id TEXT NOT NULL REFERENCES sessions (id),
        candidate_id TEXT NOT NULL,
        professional_id TEXT NOT NULL,
        company_id TEXT NOT NULL,
        reported_by TEXT NOT NULL,
        confirmed_by TEXT,
        status TEXT NOT NULL DEFAULT 'reported',
        bonus_amount NUMERIC(12, 2) NOT NULL CHECK (bonus_amount > 0),
        currency TEXT NOT NULL DEFAULT 'usd',
        payout_account TEXT,
        position TEXT,
        start_date DATE,
        salary NUMERIC(12, 2),
        payout_reference TEXT,
        reported_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        confirmed_at TIMESTAMPTZ,
        paid_at TIMESTAMPTZ,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        UNIQUE (candidate_id, company_id),
        CHECK (confirmed_by IS NULL OR confirmed_by <> reported_by)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS payout_records (
        idempotency_key TEXT PRIMARY KEY,
        entity_type TEXT NOT NULL,
        entity_id TEXT NOT NULL,
        operation TEXT NOT NULL,
        amount NUMERIC(12, 2) NOT NULL,
        currency TEXT NOT NULL,
        destination TEXT,
        state TEXT NOT NULL,
        processor_reference TEXT,
        error TEXT,
        attempts INTEGER NOT NULL DEFAULT 1,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_payout_records_state ON payout_records (state, updated_at)",
    """
    CREATE TABLE IF NOT EXISTS settlement_audit_events (
        id BIGSERIAL PRIMARY KEY,
        actor_id TEXT,
        actor_role TEXT NOT NULL,
        action TEXT NOT NULL,
        resource_type TEXT NOT NULL,
        resource_id TEXT,
        request_id TEXT,
        metadata JSONB,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
)


async def ensure_schema() -> None:
    """Create the settlement tables if they do not exist yet."""
    async with db_pool.transaction() as conn:
        for statement in SCHEMA_STATEMENTS:
            await conn.execute(statement)

    logger.info("Settlement schema ensured", statement_count=len(SCHEMA_STATEMENTS))
