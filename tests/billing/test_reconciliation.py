from __future__ import annotations

from datetime import timedelta
from urllib.parse import parse_qs, urlparse

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from paycore.billing.errors import PaymentValidationError, PersistenceError
from paycore.billing.guest_linking import GuestLinker
from paycore.billing.reconciliation import ReconciliationEngine
from paycore.billing.types import PaymentStatus, ProductType, ReconciliationStatus
from paycore.db.models.purchases import Purchase
from paycore.db.models.reconciliation_mismatches import ReconciliationMismatch
from paycore.db.models.subscriptions import Subscription
from paycore.db.repo.payment_events_repo import PaymentEventsRepo
from paycore.db.repo.purchases_repo import PurchasesRepo
from tests.billing_fixtures import (
    NOW_UTC,
    SITE_URL,
    FailingSubscriptions,
    RecordingNotifier,
    make_verified,
)


async def _count(session_factory, model) -> int:
    async with session_factory() as session:
        return int((await session.execute(select(func.count()).select_from(model))).scalar_one())


async def _event_status(session_factory, reference: str) -> str | None:
    async with session_factory() as session:
        event = await PaymentEventsRepo.get_by_reference(session, reference)
    return event.status if event is not None else None


@pytest.mark.asyncio
async def test_reconcile_twice_keeps_single_purchase(engine, session_factory, notifier) -> None:
    verified = make_verified(reference="TXN_1", email="a@b.com", amount_minor=250_000)

    first = await engine.reconcile(verified, now_utc=NOW_UTC)
    second = await engine.reconcile(verified, now_utc=NOW_UTC + timedelta(minutes=1))

    assert first.access_granted is True
    assert first.status == ReconciliationStatus.GRANTED
    assert first.idempotent_replay is False
    assert len(first.access_token) == 64
    assert second.purchase_id == first.purchase_id
    assert second.access_token == first.access_token
    assert second.idempotent_replay is True
    assert await _count(session_factory, Purchase) == 1
    assert len(notifier.sent) == 1
    assert await _event_status(session_factory, "TXN_1") == "PROCESSED"

    async with session_factory() as session:
        purchase = await PurchasesRepo.get_by_id(session, first.purchase_id)
    assert purchase is not None
    assert purchase.amount_paid_minor == 250_000
    assert purchase.buyer_email == "a@b.com"
    assert purchase.identity_key == "a@b.com"


@pytest.mark.asyncio
async def test_reconcile_builds_course_access_link(engine) -> None:
    result = await engine.reconcile(make_verified(email="A@B.com"), now_utc=NOW_UTC)

    parsed = urlparse(result.access_link)
    assert result.access_link.startswith(f"{SITE_URL}/course/course-101/overview?")
    assert parse_qs(parsed.query) == {
        "purchase": [str(result.purchase_id)],
        "token": [result.access_token],
    }


@pytest.mark.asyncio
async def test_failed_payment_is_recorded_without_access(engine, session_factory, notifier) -> None:
    result = await engine.reconcile(make_verified(status=PaymentStatus.FAILED), now_utc=NOW_UTC)

    assert result.access_granted is False
    assert result.status == ReconciliationStatus.NOT_GRANTED
    assert result.payment_status == PaymentStatus.FAILED
    assert notifier.sent == []
    assert await _count(session_factory, Purchase) == 1


@pytest.mark.asyncio
async def test_pending_purchase_is_settled_by_later_success(engine, session_factory, notifier) -> None:
    pending = await engine.reconcile(make_verified(status=PaymentStatus.PENDING), now_utc=NOW_UTC)
    settled = await engine.reconcile(
        make_verified(status=PaymentStatus.SUCCESS),
        now_utc=NOW_UTC + timedelta(minutes=5),
    )

    assert pending.status == ReconciliationStatus.NOT_GRANTED
    assert settled.purchase_id == pending.purchase_id
    assert settled.status == ReconciliationStatus.GRANTED
    assert settled.idempotent_replay is False
    assert await _count(session_factory, Purchase) == 1
    assert len(notifier.sent) == 1

    async with session_factory() as session:
        event = await PaymentEventsRepo.get_by_reference(session, "TXN_1")
    assert event is not None
    assert event.payload["status"] == "success"
    assert event.status == "PROCESSED"


@pytest.mark.asyncio
async def test_subscription_purchase_activates_subscription_once(engine, session_factory) -> None:
    verified = make_verified(
        reference="TXN_SUB_1",
        product_id="pro-monthly",
        product_type=ProductType.SUBSCRIPTION,
        buyer_id="u-1",
        plan_name="pro",
    )

    first = await engine.reconcile(verified, now_utc=NOW_UTC)
    replay = await engine.reconcile(verified, now_utc=NOW_UTC + timedelta(days=1))

    assert first.subscription_id is not None
    assert replay.subscription_id == first.subscription_id
    assert first.access_link == f"{SITE_URL}/access/{first.purchase_id}?token={first.access_token}"

    async with session_factory() as session:
        rows = list((await session.execute(select(Subscription))).scalars().all())
    assert len(rows) == 1
    assert rows[0].status == "active"
    assert rows[0].plan_name == "pro"
    assert rows[0].end_date == NOW_UTC + timedelta(days=30)
    assert rows[0].last_payment_reference == "TXN_SUB_1"


@pytest.mark.asyncio
async def test_subscription_step_failure_keeps_access_and_records_mismatch(
    session_factory,
    notifier,
    alerts,
) -> None:
    engine = ReconciliationEngine(
        session_factory=session_factory,
        subscriptions=FailingSubscriptions(session_factory=session_factory),
        notifier=notifier,
        site_url=SITE_URL,
        alert_sender=alerts,
    )
    verified = make_verified(product_type=ProductType.SUBSCRIPTION, product_id="pro", buyer_id="u-1")

    result = await engine.reconcile(verified, now_utc=NOW_UTC)
    replay = await engine.reconcile(verified, now_utc=NOW_UTC)

    assert result.access_granted is True
    assert result.status == ReconciliationStatus.FINALIZING
    assert result.mismatch_id is not None
    assert replay.status == ReconciliationStatus.FINALIZING
    assert replay.mismatch_id == result.mismatch_id
    assert alerts.events() == ["payments_subscription_step_failed"]
    assert await _count(session_factory, ReconciliationMismatch) == 1
    assert await _event_status(session_factory, "TXN_1") == "PROCESSED"


@pytest.mark.asyncio
async def test_guest_subscription_is_repaired_after_account_link(engine, session_factory, alerts) -> None:
    verified = make_verified(
        reference="TXN_GUEST",
        email="guest@b.com",
        product_type=ProductType.SUBSCRIPTION,
        product_id="pro",
    )
    result = await engine.reconcile(verified, now_utc=NOW_UTC)
    assert result.status == ReconciliationStatus.FINALIZING
    assert result.mismatch_id is not None

    linked = await GuestLinker(session_factory=session_factory).link(
        user_id="u-9",
        email="guest@b.com",
        now_utc=NOW_UTC,
    )
    assert linked.linked_count == 1

    repaired = await engine.repair_mismatch(result.mismatch_id, actor="ops-1", now_utc=NOW_UTC)
    again = await engine.repair_mismatch(result.mismatch_id, actor="ops-1", now_utc=NOW_UTC)

    assert repaired.status == ReconciliationStatus.GRANTED
    assert repaired.subscription_id is not None
    assert repaired.idempotent_replay is False
    assert again.idempotent_replay is True
    assert again.subscription_id == repaired.subscription_id

    async with session_factory() as session:
        mismatch = await session.get(ReconciliationMismatch, result.mismatch_id)
        subscription = await session.get(Subscription, repaired.subscription_id)
    assert mismatch is not None
    assert mismatch.status == "RESOLVED"
    assert mismatch.resolved_by == "ops-1"
    assert subscription is not None
    assert subscription.user_id == "u-9"


@pytest.mark.asyncio
async def test_repair_failure_keeps_mismatch_open(engine, session_factory) -> None:
    verified = make_verified(reference="TXN_GUEST", product_type=ProductType.SUBSCRIPTION, product_id="pro")
    result = await engine.reconcile(verified, now_utc=NOW_UTC)
    assert result.mismatch_id is not None

    with pytest.raises(PaymentValidationError):
        await engine.repair_mismatch(result.mismatch_id, actor="ops-1", now_utc=NOW_UTC)

    async with session_factory() as session:
        mismatch = await session.get(ReconciliationMismatch, result.mismatch_id)
    assert mismatch is not None
    assert mismatch.status == "OPEN"
    assert mismatch.detail is not None
    assert mismatch.detail.startswith("repair by ops-1 failed")


@pytest.mark.asyncio
async def test_notification_failure_does_not_undo_grant(session_factory, subscriptions, alerts) -> None:
    engine = ReconciliationEngine(
        session_factory=session_factory,
        subscriptions=subscriptions,
        notifier=RecordingNotifier(error=RuntimeError("mail service down")),
        site_url=SITE_URL,
        alert_sender=alerts,
    )

    result = await engine.reconcile(make_verified(), now_utc=NOW_UTC)

    assert result.status == ReconciliationStatus.GRANTED
    assert result.access_granted is True
    assert alerts.calls == []


@pytest.mark.asyncio
async def test_purchase_write_failure_is_fatal_and_leaves_event_for_replay(
    engine,
    session_factory,
    alerts,
    monkeypatch,
) -> None:
    async def _broken_create(session, *, purchase, created_at):
        raise OperationalError("INSERT INTO purchases", {}, Exception("disk I/O error"))

    monkeypatch.setattr(PurchasesRepo, "create", staticmethod(_broken_create))

    with pytest.raises(PersistenceError):
        await engine.reconcile(make_verified(), now_utc=NOW_UTC)

    assert alerts.events() == ["payments_persistence_failed"]
    assert await _event_status(session_factory, "TXN_1") == "RECEIVED"
    assert await _count(session_factory, Purchase) == 0


@pytest.mark.asyncio
async def test_replay_event_finishes_journaled_payment(engine, session_factory) -> None:
    verified = make_verified(reference="TXN_REPLAY")
    async with session_factory.begin() as session:
        event = await PaymentEventsRepo.create(
            session,
            reference=verified.reference,
            source="checkout",
            payload=verified.to_payload(),
            received_at=NOW_UTC,
        )
        event_id = event.id

    result = await engine.replay_event(event_id, now_utc=NOW_UTC + timedelta(minutes=10))

    assert result.access_granted is True
    assert result.idempotent_replay is False
    assert await _event_status(session_factory, "TXN_REPLAY") == "PROCESSED"


@pytest.mark.asyncio
async def test_replaying_first_subscription_payment_after_renewal_keeps_period(engine, session_factory) -> None:
    first = make_verified(
        reference="TXN_SUB_A",
        product_id="pro-monthly",
        product_type=ProductType.SUBSCRIPTION,
        buyer_id="u-1",
        plan_name="pro",
    )
    renewal = make_verified(
        reference="TXN_SUB_B",
        product_id="pro-monthly",
        product_type=ProductType.SUBSCRIPTION,
        buyer_id="u-1",
        plan_name="pro",
    )
    original = await engine.reconcile(first, now_utc=NOW_UTC)
    await engine.reconcile(renewal, now_utc=NOW_UTC + timedelta(days=29))
    async with session_factory.begin() as session:
        event = await PaymentEventsRepo.get_by_reference_for_update(session, "TXN_SUB_A")
        event.status = "RECEIVED"
        event_id = event.id

    replayed = await engine.replay_event(event_id, now_utc=NOW_UTC + timedelta(days=31))

    assert replayed.subscription_id == original.subscription_id
    async with session_factory() as session:
        row = (await session.execute(select(Subscription))).scalar_one()
    assert row.end_date == NOW_UTC + timedelta(days=60)
    assert row.last_payment_reference == "TXN_SUB_B"


@pytest.mark.asyncio
async def test_unreadable_event_moves_to_review_after_three_failures(engine, session_factory, alerts) -> None:
    async with session_factory.begin() as session:
        event = await PaymentEventsRepo.create(
            session,
            reference="TXN_BROKEN",
            source="checkout",
            payload={"reference": "TXN_BROKEN"},
            received_at=NOW_UTC,
        )
        event_id = event.id

    statuses = []
    for _ in range(3):
        with pytest.raises(PaymentValidationError) as exc_info:
            await engine.replay_event(event_id, now_utc=NOW_UTC)
        statuses.append(
            await engine.record_replay_failure(event_id, error=exc_info.value, now_utc=NOW_UTC)
        )

    assert statuses == ["RECEIVED", "RECEIVED", "REVIEW"]
    assert alerts.events() == ["payments_event_review_required"]
    async with session_factory() as session:
        stored = await PaymentEventsRepo.get_by_reference(session, "TXN_BROKEN")
    assert stored is not None
    assert stored.attempts == 3
    assert stored.last_error is not None
    assert stored.last_error.startswith("PaymentValidationError")
