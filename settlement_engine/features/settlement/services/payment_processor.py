"""
HTTP client for the external payment processor.

Transfers and refunds are POSTed with an ``Idempotency-Key`` header; every
retry of one logical request re-sends the same key, so the processor moves
money at most once per key.
"""

import asyncio
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Protocol

import httpx

from settlement_engine.config import settings
from settlement_engine.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

RETRY_STATUS_CODES = {429, 500, 502, 503, 504}
BACKOFF_FACTOR = 2


class PaymentProcessorError(Exception):
    """Processor rejected the request or could not be reached."""

    def __init__(self, message: str, *, status_code: int | None = None, retryable: bool = False):
        super().__init__(message)
        self.status_code = status_code
        self.retryable = retryable


class PaymentProcessorTimeout(PaymentProcessorError):
    """The request may or may not have been applied by the processor."""

    def __init__(self, message: str, *, status_code: int | None = None):
        super().__init__(message, status_code=status_code, retryable=True)


@dataclass(slots=True, frozen=True)
class ProcessorReceipt:
    reference: str
    status: str
    raw: dict[str, Any] = field(default_factory=dict)


class PaymentProcessor(Protocol):
    """What the settlement orchestrator needs from a processor."""

    async def create_transfer(
        self,
        *,
        idempotency_key: str,
        amount: Decimal,
        currency: str,
        destination_account: str,
        metadata: dict[str, str] | None = None,
    ) -> ProcessorReceipt: ...

    async def create_refund(
        self,
        *,
        idempotency_key: str,
        amount: Decimal,
        currency: str,
        payment_reference: str | None,
        metadata: dict[str, str] | None = None,
    ) -> ProcessorReceipt: ...


def to_minor_units(amount: Decimal) -> int:
    """Convert a decimal amount to integer cents."""
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class PaymentProcessorClient:
    """
    httpx-based client for the processor's transfer and refund endpoints.

    Args:
        base_url: Processor API root, e.g. ``https://processor.example/v1``
        api_key: Bearer token
        timeout: Per-request timeout in seconds
        max_retries: Attempts per logical request (same idempotency key)
        backoff_factor: Sleep ``backoff_factor ** attempt`` between attempts
        transport: Optional httpx transport (tests use ``httpx.MockTransport``)
    """

    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        *,
        timeout: float | None = None,
        max_retries: int | None = None,
        backoff_factor: float = BACKOFF_FACTOR,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = (base_url or settings.PAYMENT_PROCESSOR_BASE_URL).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.PAYMENT_PROCESSOR_API_KEY
        self.timeout = timeout or settings.PAYMENT_PROCESSOR_TIMEOUT_SECONDS
        self.max_retries = max(1, max_retries or settings.PAYMENT_PROCESSOR_MAX_RETRIES)
        self.backoff_factor = backoff_factor
        self._transport = transport

    def _headers(self, idempotency_key: str) -> dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Idempotency-Key": idempotency_key,
        }
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def _post_with_retry(
        self, path: str, payload: dict, idempotency_key: str, operation: str
    ) -> httpx.Response:
        """
        POST with retry/backoff on transient statuses and transport errors.

        Raises:
            PaymentProcessorTimeout: Final attempt timed out or lost the connection mid-request
            PaymentProcessorError: Could not connect at all
        """
        url = f"{self.base_url}{path}"
        headers = self._headers(idempotency_key)

        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            for attempt in range(1, self.max_retries + 1):
                try:
                    response = await client.post(url, json=payload, headers=headers)

                    if response.status_code in RETRY_STATUS_CODES and attempt < self.max_retries:
                        wait_time = self.backoff_factor**attempt
                        logger.warning(
                            "Payment processor transient status",
                            operation=operation,
                            idempotency_key=idempotency_key,
                            status_code=response.status_code,
                            attempt=attempt,
                            wait_time=wait_time,
                        )
                        await asyncio.sleep(wait_time)
                        continue

                    return response

                except httpx.RequestError as exc:
                    if attempt == self.max_retries:
                        logger.error(
                            "Payment processor unreachable",
                            operation=operation,
                            idempotency_key=idempotency_key,
                            attempts=attempt,
                            error=str(exc),
                            error_type=type(exc).__name__,
                        )
                        if isinstance(exc, httpx.ConnectError):
                            raise PaymentProcessorError(
                                f"{operation} failed: could not connect to processor",
                                retryable=True,
                            ) from exc
                        raise PaymentProcessorTimeout(
                            f"{operation} outcome unknown: {type(exc).__name__}"
                        ) from exc

                    wait_time = self.backoff_factor**attempt
                    logger.warning(
                        "Payment processor request error, retrying",
                        operation=operation,
                        idempotency_key=idempotency_key,
                        attempt=attempt,
                        wait_time=wait_time,
                        error_type=type(exc).__name__,
                    )
                    await asyncio.sleep(wait_time)

        raise PaymentProcessorError(f"{operation} failed: retries exhausted", retryable=True)

    def _handle_response(self, response: httpx.Response, operation: str) -> ProcessorReceipt:
        if response.status_code >= 400:
            try:
                detail = response.json().get("error", response.text)
            except ValueError:
                detail = response.text
            retryable = response.status_code in RETRY_STATUS_CODES
            # A gateway or server error can arrive after the processor applied the request.
            outcome_unknown = response.status_code >= 500
            logger.error(
                "Payment processor rejected request",
                operation=operation,
                status_code=response.status_code,
                retryable=retryable,
                outcome_unknown=outcome_unknown,
                detail=str(detail)[:200],
            )
            if outcome_unknown:
                raise PaymentProcessorTimeout(
                    f"{operation} outcome unknown after status {response.status_code}: {detail}",
                    status_code=response.status_code,
                )
            raise PaymentProcessorError(
                f"{operation} failed with status {response.status_code}: {detail}",
                status_code=response.status_code,
                retryable=retryable,
            )

        try:
            data = response.json()
        except ValueError as exc:
            raise PaymentProcessorError(f"{operation} returned invalid JSON") from exc

        reference = data.get("id")
        if not reference:
            raise PaymentProcessorError(f"{operation} response missing id")

        return ProcessorReceipt(reference=str(reference), status=data.get("status", "succeeded"), raw=data)

    async def create_transfer(
        self,
        *,
        idempotency_key: str,
        amount: Decimal,
        currency: str,
        destination_account: str,
        metadata: dict[str, str] | None = None,
    ) -> ProcessorReceipt:
        payload = {
            "amount": to_minor_units(amount),
            "currency": currency,
            "destination": destination_account,
            "metadata": metadata or {},
        }
        response = await self._post_with_retry("/transfers", payload, idempotency_key, "transfer")
        receipt = self._handle_response(response, "transfer")
        logger.info(
            "Transfer accepted",
            idempotency_key=idempotency_key,
            reference=receipt.reference,
            amount=str(amount),
            currency=currency,
        )
        return receipt

    async def create_refund(
        self,
        *,
        idempotency_key: str,
        amount: Decimal,
        currency: str,
        payment_reference: str | None,
        metadata: dict[str, str] | None = None,
    ) -> ProcessorReceipt:
        payload = {
            "amount": to_minor_units(amount),
            "currency": currency,
            "payment": payment_reference,
            "metadata": metadata or {},
        }
        response = await self._post_with_retry("/refunds", payload, idempotency_key, "refund")
        receipt = self._handle_response(response, "refund")
        logger.info(
            "Refund accepted",
            idempotency_key=idempotency_key,
            reference=receipt.reference,
            amount=str(amount),
        )
        return receipt
