from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

import structlog

from paycore.billing.errors import (
    PaymentFailedError,
    PaymentValidationError,
    RetryExhaustedError,
    TransientProviderError,
)
from paycore.billing.types import CheckoutMetadata, PaymentStatus, VerifiedTransaction
from paycore.providers.base import PaymentProvider, ProviderTransaction

logger = structlog.get_logger(__name__)

PROVIDER_FAILED_STATUSES = frozenset({"failed", "abandoned", "reversed"})

SleepFn = Callable[[float], Awaitable[None]]


@dataclass(slots=True, frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay_seconds: float = 1.0
    multiplier: float = 2.0
    max_total_wait_seconds: float = 7.0

    def delay_before(self, attempt: int) -> float:
        """Delay to wait before ``attempt`` (2-based; the first attempt never waits)."""
        return self.base_delay_seconds * (self.multiplier ** max(0, attempt - 2))

    @classmethod
    def from_settings(cls, settings) -> RetryPolicy:
        return cls(
            max_attempts=max(1, int(settings.verify_max_attempts)),
            base_delay_seconds=float(settings.verify_base_delay_seconds),
            multiplier=float(settings.verify_backoff_multiplier),
            max_total_wait_seconds=float(settings.verify_max_total_wait_seconds),
        )


def map_provider_status(raw_status: str) -> PaymentStatus:
    normalized = (raw_status or "").strip().lower()
    if normalized == "success":
        return PaymentStatus.SUCCESS
    if normalized in PROVIDER_FAILED_STATUSES:
        return PaymentStatus.FAILED
    return PaymentStatus.PENDING


class PaymentVerifier:
    def __init__(
        self,
        *,
        provider: PaymentProvider,
        retry_policy: RetryPolicy | None = None,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self._provider = provider
        self._policy = retry_policy or RetryPolicy()
        self._sleep = sleep

    async def verify(
        self,
        reference: str,
        *,
        transaction_id: str | None = None,
        fallback_metadata: CheckoutMetadata | None = None,
    ) -> VerifiedTransaction:
        reference = (reference or "").strip()
        if not reference:
            raise PaymentValidationError("payment reference is required")

        provider_transaction = await self._verify_with_retry(reference, transaction_id)
        return to_verified_transaction(provider_transaction, fallback_metadata=fallback_metadata)

    async def verify_successful(
        self,
        reference: str,
        *,
        transaction_id: str | None = None,
        fallback_metadata: CheckoutMetadata | None = None,
    ) -> VerifiedTransaction:
        verified = await self.verify(
            reference,
            transaction_id=transaction_id,
            fallback_metadata=fallback_metadata,
        )
        if verified.status == PaymentStatus.FAILED:
            raise PaymentFailedError(reference=verified.reference, provider_status=verified.status.value)
        return verified

    async def _verify_with_retry(
        self,
        reference: str,
        transaction_id: str | None,
    ) -> ProviderTransaction:
        waited_seconds = 0.0
        last_error: TransientProviderError | None = None
        attempt = 0

        while attempt < self._policy.max_attempts:
            attempt += 1
            if attempt > 1:
                delay = self._policy.delay_before(attempt)
                if waited_seconds + delay > self._policy.max_total_wait_seconds:
                    attempt -= 1
                    break
                await self._sleep(delay)
                waited_seconds += delay

            try:
                return await self._provider.verify(reference, transaction_id)
            except TransientProviderError as exc:
                last_error = exc
                logger.warning(
                    "payment_verify_transient_failure",
                    reference=reference,
                    attempt=attempt,
                    max_attempts=self._policy.max_attempts,
                    error_type=type(exc).__name__,
                )

        logger.error(
            "payment_verify_retry_exhausted",
            reference=reference,
            attempts=attempt,
            waited_seconds=waited_seconds,
        )
        raise RetryExhaustedError(attempts=attempt, last_error=last_error)


def to_verified_transaction(
    transaction: ProviderTransaction,
    *,
    fallback_metadata: CheckoutMetadata | None = None,
) -> VerifiedTransaction:
    metadata = fallback_metadata
    raw_metadata = transaction.metadata
    if isinstance(raw_metadata, dict) and raw_metadata.get("product_id") and raw_metadata.get("product_type"):
        try:
            metadata = CheckoutMetadata.from_dict(raw_metadata)
        except (KeyError, ValueError):
            metadata = fallback_metadata
    if metadata is None:
        raise PaymentValidationError(f"transaction {transaction.reference} carries no product metadata")

    email = (transaction.customer_email or "").strip()
    if not email:
        raise PaymentValidationError(f"transaction {transaction.reference} has no customer email")
    if transaction.amount_minor < 0:
        raise PaymentValidationError("provider reported a negative amount")

    return VerifiedTransaction(
        reference=transaction.reference,
        status=map_provider_status(transaction.status),
        amount_minor=int(transaction.amount_minor),
        currency=(transaction.currency or "NGN").upper(),
        customer_email=email,
        metadata=metadata,
        customer_code=transaction.customer_code,
        provider_transaction_id=transaction.transaction_id,
        paid_at=transaction.paid_at,
    )
