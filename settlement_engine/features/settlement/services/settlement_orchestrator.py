"""
Settlement orchestrator - the only path to the payment processor.

Every payout or refund follows the same sequence:

    1. Re-read the entity and check its settlement field.
    2. Claim it: compare-and-set source → target, and open an ``in_flight``
       payout record, in one transaction.
    3. Call the processor with the payout record's idempotency key.
    4. Success: mark the record ``succeeded`` and store the processor reference.
       Failure: in one transaction, mark the record ``failed`` (or ``unknown``
       on timeout) and roll the entity back to the source state, then raise
       ``PayoutFailed``.

A crash between 2 and 3 leaves an ``in_flight`` record behind. ``reconcile``
re-drives it with the same key, so the processor sees one logical request.

While a session's payout has an unresolved outcome, no refund is started for
it, and the other way round.
"""

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any

from settlement_engine.config import settings
from settlement_engine.features.settlement.domain import (
    AlreadySettled,
    CallerRole,
    EntityType,
    InvalidTransition,
    JobOfferStatus,
    NotFound,
    PaymentStatus,
    PayoutFailed,
    PayoutOperation,
    PayoutOutcome,
    PayoutRecord,
    PayoutRecordState,
    PayoutResult,
    PreconditionFailed,
    ReferralPayoutLimits,
    ReferralStatus,
    SessionStatus,
    SettlementError,
)
from settlement_engine.features.settlement.services.payment_processor import (
    PaymentProcessor,
    PaymentProcessorError,
    PaymentProcessorTimeout,
    ProcessorReceipt,
)
from settlement_engine.infrastructure.audit import AuditLogger
from settlement_engine.infrastructure.observability.logging import get_logger, log_transition

logger = get_logger(__name__)


@dataclass(frozen=True)
class SettlementPath:
    """Which field a settlement moves, from where to where, and what it stamps."""

    field: str
    source: Enum
    target: Enum
    timestamp_field: str
    amount_attr: str


SETTLEMENT_PATHS: dict[EntityType, SettlementPath] = {
    EntityType.SESSION: SettlementPath(
        field="payment_status",
        source=PaymentStatus.PAID,
        target=PaymentStatus.RELEASED,
        timestamp_field="released_at",
        amount_attr="amount",
    ),
    EntityType.REFERRAL: SettlementPath(
        field="status",
        source=ReferralStatus.VERIFIED,
        target=ReferralStatus.REWARDED,
        timestamp_field="payout_date",
        amount_attr="reward_amount",
    ),
    EntityType.JOB_OFFER: SettlementPath(
        field="status",
        source=JobOfferStatus.CONFIRMED,
        target=JobOfferStatus.PAID,
        timestamp_field="paid_at",
        amount_attr="bonus_amount",
    ),
}

REFUND_PATH = SettlementPath(
    field="payment_status",
    source=PaymentStatus.PAID,
    target=PaymentStatus.REFUNDED,
    timestamp_field="refunded_at",
    amount_attr="amount",
)

# Record states whose money movement may still happen.
UNRESOLVED_STATES = frozenset(
    {PayoutRecordState.IN_FLIGHT, PayoutRecordState.UNKNOWN, PayoutRecordState.NEEDS_REVIEW}
)

OPPOSING_OPERATION = {
    PayoutOperation.PAYOUT: PayoutOperation.REFUND,
    PayoutOperation.REFUND: PayoutOperation.PAYOUT,
}


def default_idempotency_key(
    entity_type: EntityType, entity_id: str, operation: PayoutOperation
) -> str:
    return f"{entity_type.value}-{entity_id}-{operation.value}"


class SettlementOrchestrator:
    """
    Single choke point for payouts and refunds.

    Args:
        repository: Settlement repository (compare-and-set + payout records)
        processor: Payment processor client
        audit: Audit logger for accepted and failed settlements
        max_attempts: Compare-and-set attempts before giving up on a hot entity
    """

    def __init__(
        self,
        repository,
        processor: PaymentProcessor,
        audit: AuditLogger | None = None,
        *,
        max_attempts: int | None = None,
    ):
        self.repository = repository
        self.processor = processor
        self.audit = audit
        self.max_attempts = max_attempts or settings.CAS_MAX_ATTEMPTS

    # ------------------------------------------------------------------
    # Payouts
    # ------------------------------------------------------------------

    async def request_payout(
        self,
        entity_type: EntityType | str,
        entity_id: str,
        amount: Decimal | None = None,
        idempotency_key: str | None = None,
        *,
        destination_account: str | None = None,
        actor_id: str | None = None,
        actor_role: CallerRole = CallerRole.SYSTEM,
        reward_limits: ReferralPayoutLimits | None = None,
        raise_if_settled: bool = False,
    ) -> PayoutResult:
        """
        Settle a session, referral or job offer exactly once.

        ``reward_limits`` is re-checked inside the claim transaction, so
        concurrent payouts to one referrer cannot both pass it.

        Returns:
            PayoutResult with outcome ``accepted`` or ``already_settled``

        Raises:
            NotFound: Unknown entity
            InvalidTransition: Entity is neither ready for settlement nor settled
            PreconditionFailed: Amount mismatch, no destination account, key
                owned by another settlement, exhausted referral limits, or a
                refund of this session with an unresolved outcome
            AlreadySettled: Only with ``raise_if_settled``
            PayoutFailed: Processor failed; entity rolled back, retry with the same key
        """
        entity_type = EntityType(entity_type)
        path = SETTLEMENT_PATHS[entity_type]
        key = idempotency_key or default_idempotency_key(
            entity_type, entity_id, PayoutOperation.PAYOUT
        )
        key = await self._reuse_unknown_key(entity_type, entity_id, PayoutOperation.PAYOUT, key)

        for attempt in range(1, self.max_attempts + 1):
            entity = await self._load(entity_type, entity_id)
            current = getattr(entity, path.field)

            if current == path.target:
                logger.info(
                    "Payout already settled",
                    entity_type=entity_type.value,
                    entity_id=entity_id,
                    idempotency_key=key,
                )
                if raise_if_settled:
                    raise AlreadySettled(
                        f"{entity_type.value} {entity_id} is already {path.target.value}",
                        idempotency_key=key,
                        entity_type=entity_type.value,
                        entity_id=entity_id,
                    )
                return PayoutResult(
                    outcome=PayoutOutcome.ALREADY_SETTLED,
                    entity_type=entity_type,
                    entity_id=entity_id,
                    idempotency_key=key,
                    amount=getattr(entity, path.amount_attr),
                    processor_reference=entity.payout_reference,
                    reason=f"{path.field} is already {path.target.value}",
                )

            if current != path.source:
                raise InvalidTransition(
                    f"Cannot settle {entity_type.value} {entity_id} from {current.value}",
                    current=current.value,
                    target=path.target.value,
                    entity_type=entity_type.value,
                    entity_id=entity_id,
                )

            recorded_amount = self._checked_amount(entity, path, amount, entity_type)
            destination = destination_account or entity.payout_account
            if not destination:
                raise PreconditionFailed(
                    "No payout account on file",
                    entity_type=entity_type.value,
                    entity_id=entity_id,
                )
            if entity_type == EntityType.SESSION:
                await self._ensure_opposing_resolved(entity_type, entity_id, PayoutOperation.PAYOUT)

            record = PayoutRecord(
                idempotency_key=key,
                entity_type=entity_type,
                entity_id=entity_id,
                operation=PayoutOperation.PAYOUT,
                amount=recorded_amount,
                currency=entity.currency,
                destination=destination,
            )
            claimed = await self.repository.claim_for_settlement(
                entity_type,
                entity_id,
                path.field,
                path.source,
                path.target,
                {path.timestamp_field: datetime.now(UTC)},
                record,
                limits=reward_limits,
            )
            if claimed is None:
                logger.debug(
                    "Settlement claim lost, re-reading",
                    entity_type=entity_type.value,
                    entity_id=entity_id,
                    attempt=attempt,
                )
                continue

            _, record = claimed
            log_transition(
                entity_type.value,
                entity_id,
                path.field,
                path.source.value,
                path.target.value,
                idempotency_key=key,
            )
            return await self._execute(
                path,
                record,
                rollback_updates={path.timestamp_field: None},
                actor_id=actor_id,
                actor_role=actor_role,
            )

        raise PayoutFailed(
            f"Could not claim {entity_type.value} {entity_id} after {self.max_attempts} attempts",
            idempotency_key=key,
            entity_type=entity_type.value,
            entity_id=entity_id,
        )

    # ------------------------------------------------------------------
    # Refunds
    # ------------------------------------------------------------------

    async def request_refund(
        self,
        session_id: str,
        reason: str | None = None,
        idempotency_key: str | None = None,
        *,
        actor_id: str | None = None,
        actor_role: CallerRole = CallerRole.SYSTEM,
        raise_if_settled: bool = False,
    ) -> PayoutResult:
        """
        Move a session's payment to refunded.

        Pending payments were never captured, so only paid sessions reach the
        processor. A paid session whose payout outcome is still unresolved is
        not refunded: PreconditionFailed until the payout is retried.
        """
        key = idempotency_key or default_idempotency_key(
            EntityType.SESSION, session_id, PayoutOperation.REFUND
        )
        key = await self._reuse_unknown_key(
            EntityType.SESSION, session_id, PayoutOperation.REFUND, key
        )

        for attempt in range(1, self.max_attempts + 1):
            session = await self._load(EntityType.SESSION, session_id)
            current = session.payment_status

            if current == PaymentStatus.REFUNDED:
                if raise_if_settled:
                    raise AlreadySettled(
                        f"Session {session_id} is already refunded",
                        idempotency_key=key,
                        entity_type=EntityType.SESSION.value,
                        entity_id=session_id,
                    )
                return PayoutResult(
                    outcome=PayoutOutcome.ALREADY_SETTLED,
                    entity_type=EntityType.SESSION,
                    entity_id=session_id,
                    idempotency_key=key,
                    amount=session.amount,
                    reason="payment_status is already refunded",
                )
            if current not in (PaymentStatus.PENDING, PaymentStatus.PAID):
                raise InvalidTransition(
                    f"Cannot refund session {session_id} from {current.value}",
                    current=current.value,
                    target=PaymentStatus.REFUNDED.value,
                    entity_type=EntityType.SESSION.value,
                    entity_id=session_id,
                )

            updates = {"refunded_at": datetime.now(UTC), "refund_reason": reason}

            if current == PaymentStatus.PENDING:
                updated = await self.repository.compare_and_set(
                    EntityType.SESSION,
                    session_id,
                    "payment_status",
                    PaymentStatus.PENDING,
                    PaymentStatus.REFUNDED,
                    updates,
                )
                if updated is None:
                    continue
                log_transition("session", session_id, "payment_status", "pending", "refunded")
                await self._audit(
                    "session_refunded", EntityType.SESSION, session_id, actor_id, actor_role,
                    {"captured": False, "reason": reason},
                )
                return PayoutResult(
                    outcome=PayoutOutcome.ACCEPTED,
                    entity_type=EntityType.SESSION,
                    entity_id=session_id,
                    idempotency_key=None,
                    amount=Decimal("0"),
                    reason="payment was never captured",
                )

            await self._ensure_opposing_resolved(
                EntityType.SESSION, session_id, PayoutOperation.REFUND
            )
            record = PayoutRecord(
                idempotency_key=key,
                entity_type=EntityType.SESSION,
                entity_id=session_id,
                operation=PayoutOperation.REFUND,
                amount=session.amount,
                currency=session.currency,
                destination=session.payment_reference,
            )
            claimed = await self.repository.claim_for_settlement(
                EntityType.SESSION,
                session_id,
                "payment_status",
                PaymentStatus.PAID,
                PaymentStatus.REFUNDED,
                updates,
                record,
            )
            if claimed is None:
                logger.debug("Refund claim lost, re-reading", session_id=session_id, attempt=attempt)
                continue

            _, record = claimed
            log_transition(
                "session", session_id, "payment_status", "paid", "refunded", idempotency_key=key
            )
            return await self._execute(
                REFUND_PATH,
                record,
                rollback_updates={"refunded_at": None, "refund_reason": None},
                actor_id=actor_id,
                actor_role=actor_role,
            )

        raise PayoutFailed(
            f"Could not claim session {session_id} for refund after {self.max_attempts} attempts",
            idempotency_key=key,
            entity_type=EntityType.SESSION.value,
            entity_id=session_id,
        )

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    async def reconcile(self, now: datetime | None = None) -> dict[str, int]:
        """
        Re-drive interrupted settlements.

        - ``in_flight`` records older than RECONCILE_MIN_AGE_SECONDS whose
          entity is still claimed: call the processor again with the same key.
        - ``unknown`` records: retry the whole settlement with the same key.
          If the entity has meanwhile settled or moved elsewhere, the old
          request may still have moved money, so the record goes to
          ``needs_review`` and is not retried again.
        - Cancelled sessions whose payment is still ``paid``: refund them.
        """
        now = now or datetime.now(UTC)
        cutoff = now - timedelta(seconds=settings.RECONCILE_MIN_AGE_SECONDS)
        summary = {"resumed": 0, "retried": 0, "refunded": 0, "failed": 0, "needs_review": 0}

        stale = await self.repository.list_payout_records(
            [PayoutRecordState.IN_FLIGHT], older_than=cutoff
        )
        for record in stale:
            path = self._path_for(record)
            entity = await self.repository.get_entity(record.entity_type, record.entity_id)
            if entity is None or getattr(entity, path.field) != path.target:
                await self._flag_for_review(record, "entity no longer claimed")
                summary["needs_review"] += 1
                continue
            try:
                await self._execute(
                    path,
                    record,
                    rollback_updates=self._rollback_updates(record, path),
                    actor_id=None,
                    actor_role=CallerRole.SYSTEM,
                )
                summary["resumed"] += 1
            except PayoutFailed as e:
                logger.warning(
                    "Reconcile could not resume payout",
                    idempotency_key=record.idempotency_key,
                    error=e.message,
                )
                summary["failed"] += 1

        unknown = await self.repository.list_payout_records(
            [PayoutRecordState.UNKNOWN], older_than=cutoff
        )
        for record in unknown:
            try:
                if record.operation == PayoutOperation.REFUND:
                    await self.request_refund(
                        record.entity_id,
                        idempotency_key=record.idempotency_key,
                        raise_if_settled=True,
                    )
                else:
                    await self.request_payout(
                        record.entity_type,
                        record.entity_id,
                        idempotency_key=record.idempotency_key,
                        raise_if_settled=True,
                    )
                summary["retried"] += 1
            except (AlreadySettled, InvalidTransition, NotFound) as e:
                await self._flag_for_review(record, e.message)
                summary["needs_review"] += 1
            except SettlementError as e:
                logger.warning(
                    "Reconcile retry failed",
                    idempotency_key=record.idempotency_key,
                    error_code=e.code,
                    error=e.message,
                )
                summary["failed"] += 1

        awaiting_refund = await self.repository.list_sessions(
            status=SessionStatus.CANCELLED, payment_status=PaymentStatus.PAID
        )
        for session in awaiting_refund:
            try:
                await self.request_refund(session.id, reason=session.cancel_reason or "cancelled")
                summary["refunded"] += 1
            except SettlementError as e:
                logger.warning(
                    "Reconcile refund failed",
                    session_id=session.id,
                    error_code=e.code,
                    error=e.message,
                )
                summary["failed"] += 1

        logger.info("Payout reconciliation finished", **summary)
        return summary

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _load(self, entity_type: EntityType, entity_id: str):
        entity = await self.repository.get_entity(entity_type, entity_id)
        if entity is None:
            raise NotFound(
                f"{entity_type.value} {entity_id} not found",
                entity_type=entity_type.value,
                entity_id=entity_id,
            )
        return entity

    @staticmethod
    def _checked_amount(
        entity, path: SettlementPath, amount: Decimal | None, entity_type: EntityType
    ) -> Decimal:
        recorded = getattr(entity, path.amount_attr)
        if recorded is None:
            raise PreconditionFailed(
                f"{entity_type.value} has no recorded {path.amount_attr}",
                entity_type=entity_type.value,
                entity_id=entity.id,
            )
        if amount is not None and Decimal(str(amount)) != Decimal(str(recorded)):
            raise PreconditionFailed(
                f"Requested amount {amount} does not match recorded {path.amount_attr} {recorded}",
                entity_type=entity_type.value,
                entity_id=entity.id,
            )
        return recorded

    async def _reuse_unknown_key(
        self,
        entity_type: EntityType,
        entity_id: str,
        operation: PayoutOperation,
        key: str,
    ) -> str:
        """An unresolved request must be retried under its original key."""
        previous = await self.repository.latest_payout_record(entity_type, entity_id, operation)
        if (
            previous is not None
            and previous.state == PayoutRecordState.UNKNOWN
            and previous.idempotency_key != key
        ):
            logger.warning(
                "Reusing idempotency key of unresolved request",
                entity_type=entity_type.value,
                entity_id=entity_id,
                requested_key=key,
                reused_key=previous.idempotency_key,
            )
            return previous.idempotency_key
        return key

    @staticmethod
    def _path_for(record: PayoutRecord) -> SettlementPath:
        if record.operation == PayoutOperation.REFUND:
            return REFUND_PATH
        return SETTLEMENT_PATHS[record.entity_type]

    @staticmethod
    def _rollback_updates(record: PayoutRecord, path: SettlementPath) -> dict[str, Any]:
        if record.operation == PayoutOperation.REFUND:
            return {"refunded_at": None, "refund_reason": None}
        return {path.timestamp_field: None}

    async def _call_processor(self, record: PayoutRecord) -> ProcessorReceipt:
        metadata = {"entity_type": record.entity_type.value, "entity_id": record.entity_id}
        if record.operation == PayoutOperation.REFUND:
            return await self.processor.create_refund(
                idempotency_key=record.idempotency_key,
                amount=record.amount,
                currency=record.currency,
                payment_reference=record.destination,
                metadata=metadata,
            )
        return await self.processor.create_transfer(
            idempotency_key=record.idempotency_key,
            amount=record.amount,
            currency=record.currency,
            destination_account=record.destination,
            metadata=metadata,
        )

    async def _execute(
        self,
        path: SettlementPath,
        record: PayoutRecord,
        *,
        rollback_updates: dict[str, Any],
        actor_id: str | None,
        actor_role: CallerRole,
    ) -> PayoutResult:
        """Call the processor for a claimed entity and settle the outcome."""
        entity_type = record.entity_type
        entity_id = record.entity_id
        action = f"{entity_type.value}_{record.operation.value}"

        try:
            receipt = await self._call_processor(record)
        except Exception as e:
            outcome_unknown = isinstance(e, PaymentProcessorTimeout) or not isinstance(
                e, PaymentProcessorError
            )
            await self._abandon(
                path,
                record,
                rollback_updates,
                PayoutRecordState.UNKNOWN if outcome_unknown else PayoutRecordState.FAILED,
                str(e),
            )
            logger.error(
                "Payout failed, entity rolled back",
                entity_type=entity_type.value,
                entity_id=entity_id,
                idempotency_key=record.idempotency_key,
                outcome_unknown=outcome_unknown,
                error=str(e),
                error_type=type(e).__name__,
            )
            await self._audit(
                f"{action}_failed", entity_type, entity_id, actor_id, actor_role,
                {"idempotency_key": record.idempotency_key, "outcome_unknown": outcome_unknown},
            )
            raise PayoutFailed(
                f"Payment processor error: {e}",
                idempotency_key=record.idempotency_key,
                outcome_unknown=outcome_unknown,
                entity_type=entity_type.value,
                entity_id=entity_id,
            ) from e

        await self.repository.update_payout_record(
            record.idempotency_key,
            PayoutRecordState.SUCCEEDED,
            processor_reference=receipt.reference,
        )
        await self.repository.compare_and_set(
            entity_type,
            entity_id,
            path.field,
            path.target,
            path.target,
            {"payout_reference": receipt.reference},
        )
        await self._audit(
            f"{action}_accepted", entity_type, entity_id, actor_id, actor_role,
            {
                "idempotency_key": record.idempotency_key,
                "amount": str(record.amount),
                "processor_reference": receipt.reference,
            },
        )
        logger.info(
            "Payout accepted",
            entity_type=entity_type.value,
            entity_id=entity_id,
            operation=record.operation.value,
            idempotency_key=record.idempotency_key,
            processor_reference=receipt.reference,
        )
        return PayoutResult(
            outcome=PayoutOutcome.ACCEPTED,
            entity_type=entity_type,
            entity_id=entity_id,
            idempotency_key=record.idempotency_key,
            amount=record.amount,
            processor_reference=receipt.reference,
        )

    async def _ensure_opposing_resolved(
        self, entity_type: EntityType, entity_id: str, operation: PayoutOperation
    ) -> None:
        opposing = OPPOSING_OPERATION[operation]
        previous = await self.repository.latest_payout_record(entity_type, entity_id, opposing)
        if previous is not None and previous.state in UNRESOLVED_STATES:
            logger.warning(
                "Settlement blocked by unresolved request",
                entity_type=entity_type.value,
                entity_id=entity_id,
                operation=operation.value,
                blocking_key=previous.idempotency_key,
                blocking_state=previous.state.value,
            )
            raise PreconditionFailed(
                f"{opposing.value} {previous.idempotency_key} is {previous.state.value}; "
                f"resolve it before requesting a {operation.value}",
                entity_type=entity_type.value,
                entity_id=entity_id,
            )

    async def _flag_for_review(self, record: PayoutRecord, reason: str) -> None:
        await self.repository.update_payout_record(
            record.idempotency_key, PayoutRecordState.NEEDS_REVIEW, error=reason
        )
        logger.error(
            "Payout record needs manual review",
            entity_type=record.entity_type.value,
            entity_id=record.entity_id,
            operation=record.operation.value,
            idempotency_key=record.idempotency_key,
            previous_state=record.state.value,
            reason=reason,
        )
        await self._audit(
            f"{record.entity_type.value}_{record.operation.value}_needs_review",
            record.entity_type,
            record.entity_id,
            None,
            CallerRole.SYSTEM,
            {"idempotency_key": record.idempotency_key, "reason": reason},
        )

    async def _abandon(
        self,
        path: SettlementPath,
        record: PayoutRecord,
        rollback_updates: dict[str, Any],
        state: PayoutRecordState,
        error: str,
    ) -> None:
        restored = await self.repository.abandon_claim(
            record.entity_type,
            record.entity_id,
            path.field,
            path.target,
            path.source,
            rollback_updates,
            record.idempotency_key,
            state,
            error,
        )
        if restored is None:
            logger.error(
                "Rollback found entity outside the claimed state",
                entity_type=record.entity_type.value,
                entity_id=record.entity_id,
                expected=path.target.value,
            )
            return
        log_transition(
            record.entity_type.value,
            record.entity_id,
            path.field,
            path.target.value,
            path.source.value,
            rollback=True,
        )

    async def _audit(
        self,
        action: str,
        entity_type: EntityType,
        entity_id: str,
        actor_id: str | None,
        actor_role: CallerRole,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        if self.audit is None:
            return
        await self.audit.log(
            action=action,
            resource_type=entity_type.value,
            resource_id=entity_id,
            actor_id=actor_id,
            actor_role=actor_role.value,
            metadata=metadata,
        )
