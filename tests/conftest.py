from __future__ import annotations

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from paycore.billing.reconciliation import ReconciliationEngine
from paycore.billing.subscriptions import SubscriptionLifecycleManager
from paycore.db.models import Base
from tests.billing_fixtures import SITE_URL, FakeProvider, RecordingAlerts, RecordingNotifier


@pytest.fixture
async def db_engine():
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def fake_provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def alerts() -> RecordingAlerts:
    return RecordingAlerts()


@pytest.fixture
def subscriptions(session_factory, fake_provider) -> SubscriptionLifecycleManager:
    return SubscriptionLifecycleManager(
        session_factory=session_factory,
        provider=fake_provider,
        cycle_days=30,
        grace_days=3,
    )


@pytest.fixture
def engine(session_factory, subscriptions, notifier, alerts) -> ReconciliationEngine:
    return ReconciliationEngine(
        session_factory=session_factory,
        subscriptions=subscriptions,
        notifier=notifier,
        site_url=SITE_URL,
        alert_sender=alerts,
    )
