from __future__ import annotations

from datetime import datetime
from typing import assert_never

import structlog

from paycore.billing.errors import PaymentValidationError
from paycore.billing.events import (
    PaymentFailed,
    PaymentSuccessful,
    ProviderEvent,
    SubscriptionCreated,
    SubscriptionDisabled,
    UnknownEvent,
)
from paycore.billing.reconciliation import ReconciliationEngine
from paycore.billing.subscriptions import SubscriptionLifecycleManager
from paycore.billing.types import CheckoutMetadata, ProductType
from paycore.billing.verification import to_verified_transaction

logger = structlog.get_logger(__name__)

RENEWAL_PRODUCT_ID = "subscription"


class ProviderEventDispatcher:
    def __init__(
        self,
        *,
        engine: ReconciliationEngine,
        subscriptions: SubscriptionLifecycleManager,
    ) -> None:
        self._engine = engine
        self._subscriptions = subscriptions

    async def dispatch(self, event: ProviderEvent, *, now_utc: datetime) -> str:
        if isinstance(event, PaymentSuccessful):
            fallback = await self._renewal_metadata(event)
            try:
                verified = to_verified_transaction(event.transaction, fallback_metadata=fallback)
            except PaymentValidationError as exc:
                # a captured charge is never dropped
                await self._engine.hold_unattributed(event.transaction, reason=str(exc), now_utc=now_utc)
                return "review"
            result = await self._engine.reconcile(verified, now_utc=now_utc)
            return "replayed" if result.idempotent_replay else "reconciled"

        if isinstance(event, PaymentFailed):
            logger.info(
                "provider_payment_failed",
                event_name=event.event_name,
                reference=event.reference,
                reason=event.reason,
            )
            return "recorded"

        if isinstance(event, SubscriptionCreated):
            view = await self._subscriptions.attach_provider_subscription(
                customer_code=event.customer_code,
                provider_subscription_id=event.provider_subscription_id,
                next_payment_date=event.next_payment_date,
                now_utc=now_utc,
            )
            return "attached" if view is not None else "unmatched"

        if isinstance(event, SubscriptionDisabled):
            view = await self._subscriptions.mark_provider_disabled(
                provider_subscription_id=event.provider_subscription_id,
                now_utc=now_utc,
            )
            return "disabled" if view is not None else "unmatched"

        if isinstance(event, UnknownEvent):
            logger.info("provider_event_ignored", event_name=event.event_name)
            return "ignored"

        assert_never(event)

    async def _renewal_metadata(self, event: PaymentSuccessful) -> CheckoutMetadata | None:
        # recurring charges carry the customer code but not the checkout metadata
        customer_code = event.transaction.customer_code
        if not customer_code or event.transaction.metadata.get("product_id"):
            return None
        user_id = await self._subscriptions.user_for_customer_code(customer_code)
        if user_id is None:
            return None
        return CheckoutMetadata(
            product_id=RENEWAL_PRODUCT_ID,
            product_type=ProductType.SUBSCRIPTION,
            buyer_id=user_id,
        )
