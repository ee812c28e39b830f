from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone

import structlog
from sqlalchemy.exc import SQLAlchemyError

from paycore.billing.errors import BillingError
from paycore.core.config import get_settings
from paycore.db.repo.payment_events_repo import PaymentEventsRepo
from paycore.db.repo.purchases_repo import PurchasesRepo
from paycore.db.repo.reconciliation_mismatches_repo import ReconciliationMismatchesRepo
from paycore.db.repo.reconciliation_runs_repo import ReconciliationRunsRepo
from paycore.db.session import build_engine, build_session_factory
from paycore.services.alerts import send_ops_alert
from paycore.services.billing_components import BillingComponents, build_billing_components
from paycore.services.payments_reliability import compute_reconciliation_diff, reconciliation_status
from paycore.workers.celery_app import celery_app

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def worker_components() -> AsyncIterator[BillingComponents]:
    # each task runs in its own event loop, so it gets its own pool
    settings = get_settings()
    engine = build_engine(settings.database_url)
    try:
        components = build_billing_components(
            settings=settings,
            session_factory=build_session_factory(engine),
        )
        try:
            yield components
        finally:
            # notifications still in flight die with the task loop
            await components.notifier.drain()
    finally:
        await engine.dispose()


async def sweep_subscriptions_async(*, batch_size: int = 500) -> dict[str, int]:
    now_utc = datetime.now(timezone.utc)
    async with worker_components() as components:
        report = await components.subscriptions.sweep_due(now_utc=now_utc, limit=batch_size)

    result = {"checked": report.checked, "canceled": report.canceled, "expired": report.expired}
    logger.info("subscriptions_sweep_finished", **result)
    return result


async def replay_received_payment_events_async(
    *,
    batch_size: int = 100,
    stale_minutes: int = 5,
) -> dict[str, int]:
    now_utc = datetime.now(timezone.utc)
    stale_cutoff = now_utc - timedelta(minutes=stale_minutes)
    summary = {"examined": 0, "processed": 0, "retryable_failure": 0, "review": 0}

    async with worker_components() as components:
        async with components.session_factory.begin() as session:
            events = await PaymentEventsRepo.list_received_older_than(
                session,
                older_than_utc=stale_cutoff,
                limit=batch_size,
            )
            event_ids = [event.id for event in events]

        for event_id in event_ids:
            summary["examined"] += 1
            try:
                await components.engine.replay_event(event_id, now_utc=now_utc)
            except (BillingError, SQLAlchemyError) as exc:
                logger.warning(
                    "payment_event_replay_failed",
                    event_id=event_id,
                    error_type=type(exc).__name__,
                )
                status = await components.engine.record_replay_failure(
                    event_id,
                    error=exc,
                    now_utc=now_utc,
                )
                summary["review" if status == "REVIEW" else "retryable_failure"] += 1
                continue
            summary["processed"] += 1

    logger.info("payment_events_replay_finished", **summary)
    return summary


async def run_payments_reconciliation_async(*, stale_minutes: int = 30) -> dict[str, int | str]:
    started_at = datetime.now(timezone.utc)
    stale_cutoff = started_at - timedelta(minutes=stale_minutes)

    async with worker_components() as components:
        async with components.session_factory.begin() as session:
            stale_received_events_count = await PaymentEventsRepo.count_received_older_than(
                session,
                older_than_utc=stale_cutoff,
            )
            success_without_access_count = await PurchasesRepo.count_success_without_access(session)
            open_mismatches_count = await ReconciliationMismatchesRepo.count_open(session)
            diff_count = compute_reconciliation_diff(
                stale_received_events_count=stale_received_events_count,
                success_without_access_count=success_without_access_count,
                open_mismatches_count=open_mismatches_count,
            )
            status = reconciliation_status(diff_count)
            await ReconciliationRunsRepo.create(
                session,
                started_at=started_at,
                finished_at=datetime.now(timezone.utc),
                status=status,
                diff_count=diff_count,
            )

    result: dict[str, int | str] = {
        "stale_received_events_count": stale_received_events_count,
        "success_without_access_count": success_without_access_count,
        "open_mismatches_count": open_mismatches_count,
        "diff_count": diff_count,
        "status": status,
    }
    if diff_count > 0:
        await send_ops_alert(event="payments_reconciliation_diff_detected", payload=result)
        logger.warning("payments_reconciliation_diff_detected", **result)
    else:
        logger.info("payments_reconciliation_finished", **result)
    return result


@celery_app.task(name="paycore.workers.tasks.payments_reliability.sweep_subscriptions")
def sweep_subscriptions(batch_size: int = 500) -> dict[str, int]:
    return asyncio.run(sweep_subscriptions_async(batch_size=batch_size))


@celery_app.task(name="paycore.workers.tasks.payments_reliability.replay_received_payment_events")
def replay_received_payment_events(batch_size: int = 100, stale_minutes: int = 5) -> dict[str, int]:
    return asyncio.run(
        replay_received_payment_events_async(
            batch_size=batch_size,
            stale_minutes=stale_minutes,
        )
    )


@celery_app.task(name="paycore.workers.tasks.payments_reliability.run_payments_reconciliation")
def run_payments_reconciliation(stale_minutes: int = 30) -> dict[str, int | str]:
    return asyncio.run(run_payments_reconciliation_async(stale_minutes=stale_minutes))


celery_app.conf.beat_schedule = celery_app.conf.beat_schedule or {}
celery_app.conf.beat_schedule.update(
    {
        "sweep-subscriptions-every-15-minutes": {
            "task": "paycore.workers.tasks.payments_reliability.sweep_subscriptions",
            "schedule": 900.0,
            "options": {"queue": "q_normal"},
        },
        "replay-received-payment-events-every-5-minutes": {
            "task": "paycore.workers.tasks.payments_reliability.replay_received_payment_events",
            "schedule": 300.0,
            "options": {"queue": "q_high"},
        },
        "payments-reconciliation-every-15-minutes": {
            "task": "paycore.workers.tasks.payments_reliability.run_payments_reconciliation",
            "schedule": 900.0,
            "options": {"queue": "q_normal"},
        },
    }
)
