"""
Error kinds raised by the settlement state machines.

Business-rule violations (InvalidTransition, PreconditionFailed, Forbidden,
NotFound) are surfaced to the caller and never retried automatically.
PayoutFailed is retryable with the same idempotency key.
"""


class SettlementError(Exception):
    """Base class for settlement errors with a stable error code."""

    code = "settlement_error"

    def __init__(
        self,
        message: str,
        *,
        entity_type: str | None = None,
        entity_id: str | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.entity_type = entity_type
        self.entity_id = entity_id

    def to_dict(self) -> dict:
        return {
            "error": self.code,
            "message": self.message,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
        }


class NotFound(SettlementError):
    code = "not_found"


class InvalidTransition(SettlementError):
    """Operation is not legal from the entity's current state."""

    code = "invalid_transition"

    def __init__(
        self,
        message: str,
        *,
        current: str | None = None,
        target: str | None = None,
        **kwargs,
    ):
        super().__init__(message, **kwargs)
        self.current = current
        self.target = target

    def to_dict(self) -> dict:
        data = super().to_dict()
        data.update({"current": self.current, "target": self.target})
        return data


class PreconditionFailed(SettlementError):
    """A required verification or gate is not yet satisfied."""

    code = "precondition_failed"


class Forbidden(SettlementError):
    """Wrong actor for the operation."""

    code = "forbidden"


class AlreadySettled(SettlementError):
    """
    Benign idempotent no-op.

    The orchestrator returns ``PayoutOutcome.ALREADY_SETTLED`` by default and
    raises this only when asked to (``raise_if_settled=True``).
    """

    code = "already_settled"

    def __init__(self, message: str, *, idempotency_key: str | None = None, **kwargs):
        super().__init__(message, **kwargs)
        self.idempotency_key = idempotency_key

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["idempotency_key"] = self.idempotency_key
        return data


class PayoutFailed(SettlementError):
    """External processor error; entity state was rolled back."""

    code = "payout_failed"

    def __init__(
        self,
        message: str,
        *,
        idempotency_key: str | None = None,
        outcome_unknown: bool = False,
        retryable: bool = True,
        **kwargs,
    ):
        super().__init__(message, **kwargs)
        self.idempotency_key = idempotency_key
        self.outcome_unknown = outcome_unknown
        self.retryable = retryable

    def to_dict(self) -> dict:
        data = super().to_dict()
        data.update(
            {
                "idempotency_key": self.idempotency_key,
                "outcome_unknown": self.outcome_unknown,
                "retryable": self.retryable,
            }
        )
        return data
