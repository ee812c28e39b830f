from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, assert_never

import structlog

from paycore.billing.errors import PaymentValidationError
from paycore.providers.base import ProviderTransaction
from paycore.providers.paystack import parse_provider_datetime, parse_transaction_data

logger = structlog.get_logger(__name__)

SUCCESS_EVENTS = frozenset({"charge.success", "invoice.payment_success"})
FAILURE_EVENTS = frozenset({"charge.failed", "invoice.payment_failed"})
SUBSCRIPTION_CREATED_EVENTS = frozenset({"subscription.create"})
SUBSCRIPTION_DISABLED_EVENTS = frozenset({"subscription.disable", "subscription.not_renew"})


@dataclass(slots=True, frozen=True)
class PaymentSuccessful:
    event_name: str
    transaction: ProviderTransaction


@dataclass(slots=True, frozen=True)
class PaymentFailed:
    event_name: str
    reference: str
    reason: str | None = None


@dataclass(slots=True, frozen=True)
class SubscriptionCreated:
    provider_subscription_id: str
    customer_code: str
    customer_email: str | None = None
    next_payment_date: datetime | None = None


@dataclass(slots=True, frozen=True)
class SubscriptionDisabled:
    event_name: str
    provider_subscription_id: str


@dataclass(slots=True, frozen=True)
class UnknownEvent:
    event_name: str | None
    raw: dict[str, Any]


ProviderEvent = PaymentSuccessful | PaymentFailed | SubscriptionCreated | SubscriptionDisabled | UnknownEvent


def _transaction_section(data: dict[str, Any]) -> dict[str, Any]:
    # invoice events nest the charge under "transaction"
    nested = data.get("transaction")
    if isinstance(nested, dict) and nested.get("reference"):
        merged = dict(nested)
        merged.setdefault("customer", data.get("customer"))
        merged.setdefault("metadata", data.get("metadata"))
        merged.setdefault("paid_at", data.get("paid_at"))
        return merged
    return data


def _subscription_code(data: dict[str, Any]) -> str | None:
    code = data.get("subscription_code")
    if not code and isinstance(data.get("subscription"), dict):
        code = data["subscription"].get("subscription_code")
    return str(code) if code else None


def parse_provider_event(payload: dict[str, Any]) -> ProviderEvent:
    event_name = payload.get("event") if isinstance(payload.get("event"), str) else None
    data = payload.get("data")
    if event_name is None or not isinstance(data, dict):
        return UnknownEvent(event_name=event_name, raw=payload)

    if event_name in SUCCESS_EVENTS:
        try:
            transaction = parse_transaction_data(_transaction_section(data))
        except PaymentValidationError:
            return UnknownEvent(event_name=event_name, raw=payload)
        return PaymentSuccessful(event_name=event_name, transaction=transaction)

    if event_name in FAILURE_EVENTS:
        section = _transaction_section(data)
        reference = section.get("reference")
        if not reference:
            return UnknownEvent(event_name=event_name, raw=payload)
        reason = section.get("gateway_response") or section.get("message")
        return PaymentFailed(event_name=event_name, reference=str(reference), reason=reason)

    if event_name in SUBSCRIPTION_CREATED_EVENTS:
        code = _subscription_code(data)
        customer = data.get("customer") if isinstance(data.get("customer"), dict) else {}
        customer_code = customer.get("customer_code")
        if not code or not customer_code:
            return UnknownEvent(event_name=event_name, raw=payload)
        return SubscriptionCreated(
            provider_subscription_id=code,
            customer_code=str(customer_code),
            customer_email=customer.get("email"),
            next_payment_date=parse_provider_datetime(data.get("next_payment_date")),
        )

    if event_name in SUBSCRIPTION_DISABLED_EVENTS:
        code = _subscription_code(data)
        if not code:
            return UnknownEvent(event_name=event_name, raw=payload)
        return SubscriptionDisabled(event_name=event_name, provider_subscription_id=code)

    return UnknownEvent(event_name=event_name, raw=payload)


def describe_event(event: ProviderEvent) -> str:
    if isinstance(event, PaymentSuccessful):
        return f"payment_successful:{event.transaction.reference}"
    if isinstance(event, PaymentFailed):
        return f"payment_failed:{event.reference}"
    if isinstance(event, SubscriptionCreated):
        return f"subscription_created:{event.provider_subscription_id}"
    if isinstance(event, SubscriptionDisabled):
        return f"subscription_disabled:{event.provider_subscription_id}"
    if isinstance(event, UnknownEvent):
        return f"unknown:{event.event_name}"
    assert_never(event)
