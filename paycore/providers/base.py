from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Protocol

from paycore.billing.types import CheckoutSession


@dataclass(slots=True, frozen=True)
class ProviderTransaction:
    reference: str
    status: str
    amount_minor: int
    currency: str
    customer_email: str
    metadata: dict[str, object] = field(default_factory=dict)
    customer_code: str | None = None
    transaction_id: str | None = None
    paid_at: datetime | None = None


@dataclass(slots=True, frozen=True)
class ProviderSubscription:
    provider_subscription_id: str
    customer_code: str
    status: str
    next_payment_date: datetime | None = None
    email_token: str | None = None


@dataclass(slots=True, frozen=True)
class ProviderCancelResult:
    provider_subscription_id: str
    disabled: bool
    message: str | None = None


class PaymentProvider(Protocol):
    async def initialize(
        self,
        *,
        email: str,
        amount_minor: int,
        reference: str,
        metadata: dict[str, object],
    ) -> CheckoutSession: ...

    async def verify(
        self,
        reference: str,
        transaction_id: str | None = None,
    ) -> ProviderTransaction: ...

    async def create_subscription(
        self,
        *,
        email: str,
        customer_code: str,
    ) -> ProviderSubscription: ...

    async def cancel_subscription(self, provider_subscription_id: str) -> ProviderCancelResult: ...
