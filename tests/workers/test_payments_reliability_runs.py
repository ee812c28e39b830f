from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from types import SimpleNamespace

import pytest

from paycore.billing.reconciliation import ReconciliationEngine
from paycore.billing.types import ProductType
from paycore.db.repo.reconciliation_runs_repo import ReconciliationRunsRepo
from paycore.workers.tasks import payments_reliability
from tests.billing_fixtures import SITE_URL, FailingSubscriptions, RecordingAlerts, make_verified


def _patch_components(monkeypatch, *, session_factory, engine, subscriptions) -> RecordingAlerts:
    @asynccontextmanager
    async def fake_worker_components():
        yield SimpleNamespace(
            session_factory=session_factory,
            engine=engine,
            subscriptions=subscriptions,
        )

    alerts = RecordingAlerts()
    monkeypatch.setattr(payments_reliability, "worker_components", fake_worker_components)
    monkeypatch.setattr(payments_reliability, "send_ops_alert", alerts)
    return alerts


@pytest.mark.asyncio
async def test_reconciliation_run_without_gaps_is_ok(monkeypatch, session_factory, engine, subscriptions) -> None:
    alerts = _patch_components(
        monkeypatch,
        session_factory=session_factory,
        engine=engine,
        subscriptions=subscriptions,
    )
    await engine.reconcile(make_verified())

    result = await payments_reliability.run_payments_reconciliation_async(stale_minutes=30)

    assert result["diff_count"] == 0
    assert result["status"] == "OK"
    assert alerts.calls == []
    async with session_factory() as session:
        run = await ReconciliationRunsRepo.get_latest(session)
    assert run is not None
    assert run.status == "OK"
    assert run.diff_count == 0


@pytest.mark.asyncio
async def test_reconciliation_run_reports_open_mismatch(
    monkeypatch,
    session_factory,
    notifier,
    fake_provider,
) -> None:
    failing = FailingSubscriptions(session_factory=session_factory, provider=fake_provider)
    engine = ReconciliationEngine(
        session_factory=session_factory,
        subscriptions=failing,
        notifier=notifier,
        site_url=SITE_URL,
        alert_sender=RecordingAlerts(),
    )
    alerts = _patch_components(
        monkeypatch,
        session_factory=session_factory,
        engine=engine,
        subscriptions=failing,
    )
    await engine.reconcile(
        make_verified(product_type=ProductType.SUBSCRIPTION, product_id="pro", buyer_id="u-1", plan_name="pro")
    )

    result = await payments_reliability.run_payments_reconciliation_async(stale_minutes=30)

    assert result["open_mismatches_count"] == 1
    assert result["success_without_access_count"] == 0
    assert result["status"] == "DIFF"
    assert alerts.events() == ["payments_reconciliation_diff_detected"]


@pytest.mark.asyncio
async def test_sweep_subscriptions_expires_lapsed_rows(monkeypatch, session_factory, engine, subscriptions) -> None:
    _patch_components(
        monkeypatch,
        session_factory=session_factory,
        engine=engine,
        subscriptions=subscriptions,
    )
    await subscriptions.create(
        user_id="u-1",
        plan_name="pro",
        amount_minor=500_000,
        currency="NGN",
        payment_reference="TXN_S1",
        now_utc=datetime(2024, 1, 1, tzinfo=timezone.utc),
    )

    result = await payments_reliability.sweep_subscriptions_async(batch_size=10)

    assert result == {"checked": 1, "canceled": 0, "expired": 1}


@pytest.mark.asyncio
async def test_replay_with_nothing_stale_examines_nothing(monkeypatch, session_factory, engine, subscriptions) -> None:
    _patch_components(
        monkeypatch,
        session_factory=session_factory,
        engine=engine,
        subscriptions=subscriptions,
    )
    await engine.reconcile(make_verified())

    result = await payments_reliability.replay_received_payment_events_async(batch_size=10, stale_minutes=5)

    assert result == {"examined": 0, "processed": 0, "retryable_failure": 0, "review": 0}


@pytest.mark.asyncio
async def test_worker_components_drain_notifications_before_disposing_pool(monkeypatch) -> None:
    steps: list[str] = []

    class _Notifier:
        async def drain(self, timeout_seconds: float | None = None) -> int:
            steps.append("drain")
            return 0

    class _Engine:
        async def dispose(self) -> None:
            steps.append("dispose")

    monkeypatch.setattr(payments_reliability, "get_settings", lambda: SimpleNamespace(database_url="sqlite://"))
    monkeypatch.setattr(payments_reliability, "build_engine", lambda url: _Engine())
    monkeypatch.setattr(payments_reliability, "build_session_factory", lambda engine: None)
    monkeypatch.setattr(
        payments_reliability,
        "build_billing_components",
        lambda *, settings, session_factory: SimpleNamespace(notifier=_Notifier()),
    )

    async with payments_reliability.worker_components() as components:
        steps.append("work")
        assert isinstance(components.notifier, _Notifier)

    assert steps == ["work", "drain", "dispose"]
