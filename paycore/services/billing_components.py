from __future__ import annotations

import asyncio
from dataclasses import dataclass
from functools import lru_cache

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from paycore.billing.access import AccessGrantor
from paycore.billing.guest_linking import GuestLinker
from paycore.billing.initiation import PaymentInitiator
from paycore.billing.reconciliation import ReconciliationEngine
from paycore.billing.subscriptions import SubscriptionLifecycleManager
from paycore.billing.verification import PaymentVerifier, RetryPolicy, SleepFn
from paycore.core.config import get_settings
from paycore.providers.base import PaymentProvider
from paycore.providers.paystack import PaystackProvider
from paycore.services.alerts import send_ops_alert
from paycore.services.notifications import AccessNotifier, build_access_notifier
from paycore.services.provider_events import ProviderEventDispatcher


@dataclass(slots=True)
class BillingComponents:
    session_factory: async_sessionmaker[AsyncSession]
    provider: PaymentProvider
    initiator: PaymentInitiator
    verifier: PaymentVerifier
    subscriptions: SubscriptionLifecycleManager
    engine: ReconciliationEngine
    grantor: AccessGrantor
    guest_linker: GuestLinker
    dispatcher: ProviderEventDispatcher
    notifier: AccessNotifier


def build_billing_components(
    *,
    settings,
    session_factory: async_sessionmaker[AsyncSession],
    provider: PaymentProvider | None = None,
    notifier: AccessNotifier | None = None,
    sleep: SleepFn = asyncio.sleep,
    alert_sender=send_ops_alert,
) -> BillingComponents:
    if provider is None:
        provider = PaystackProvider(
            secret_key=settings.paystack_secret_key,
            base_url=settings.paystack_base_url,
            timeout_seconds=float(settings.provider_timeout_seconds),
            plan_code=settings.paystack_plan_code,
        )
    if notifier is None:
        notifier = build_access_notifier(settings)

    subscriptions = SubscriptionLifecycleManager(
        session_factory=session_factory,
        provider=provider,
        cycle_days=int(settings.subscription_cycle_days),
        grace_days=int(settings.subscription_grace_days),
    )
    engine = ReconciliationEngine(
        session_factory=session_factory,
        subscriptions=subscriptions,
        notifier=notifier,
        site_url=settings.site_url,
        alert_sender=alert_sender,
    )
    return BillingComponents(
        session_factory=session_factory,
        provider=provider,
        initiator=PaymentInitiator(provider=provider, currency=settings.default_currency),
        verifier=PaymentVerifier(
            provider=provider,
            retry_policy=RetryPolicy.from_settings(settings),
            sleep=sleep,
        ),
        subscriptions=subscriptions,
        engine=engine,
        grantor=AccessGrantor(
            session_factory=session_factory,
            engine=engine,
            currency=settings.default_currency,
        ),
        guest_linker=GuestLinker(session_factory=session_factory),
        dispatcher=ProviderEventDispatcher(engine=engine, subscriptions=subscriptions),
        notifier=notifier,
    )


@lru_cache(maxsize=1)
def get_billing_components() -> BillingComponents:
    from paycore.db.session import SessionLocal

    return build_billing_components(settings=get_settings(), session_factory=SessionLocal)
