from __future__ import annotations

from decimal import Decimal
from uuid import UUID, uuid4

import pytest

from paycore.billing.access import AccessGrantor
from paycore.billing.errors import PaymentValidationError, PurchaseNotFoundError
from paycore.billing.history import get_billing_history
from paycore.billing.links import build_access_link
from paycore.billing.types import ProductType, ReconciliationStatus
from paycore.db.repo.purchases_repo import PurchasesRepo
from tests.billing_fixtures import NOW_UTC, make_verified

PURCHASE_ID = UUID("8f14e45f-ceea-4672-a8f7-1d3f9a4c2b10")


@pytest.fixture
def grantor(session_factory, engine) -> AccessGrantor:
    return AccessGrantor(session_factory=session_factory, engine=engine, currency="NGN")


def test_course_link_points_at_course_overview() -> None:
    link = build_access_link(
        site_url="https://learn.example.test/",
        purchase_id=PURCHASE_ID,
        token="tok123",
        product_type=ProductType.COURSE,
        product_id="intro to go",
    )

    assert link == (
        "https://learn.example.test/course/intro%20to%20go/overview"
        f"?purchase={PURCHASE_ID}&token=tok123"
    )


def test_other_products_link_to_generic_access_page() -> None:
    link = build_access_link(
        site_url="https://learn.example.test",
        purchase_id=PURCHASE_ID,
        token="tok123",
        product_type="live_class",
        product_id="lc-1",
    )

    assert link == f"https://learn.example.test/access/{PURCHASE_ID}?token=tok123"


@pytest.mark.asyncio
async def test_manual_grant_goes_through_reconciliation(grantor, session_factory, notifier) -> None:
    result = await grantor.grant_manual_access(
        email="Student@B.com",
        product_id="path-7",
        product_type=ProductType.LEARNING_PATH,
        amount_major=Decimal("0"),
        actor="ops-1",
        buyer_id="u-5",
        now_utc=NOW_UTC,
    )

    assert result.status == ReconciliationStatus.GRANTED
    assert result.payment_reference.startswith("ADMIN_MANUAL_")
    assert len(notifier.sent) == 1

    async with session_factory() as session:
        purchase = await PurchasesRepo.get_by_id(session, result.purchase_id)
    assert purchase is not None
    assert purchase.source == "admin_manual"
    assert purchase.buyer_email == "student@b.com"
    assert purchase.amount_paid_minor == 0


@pytest.mark.asyncio
async def test_manual_grant_rejects_blank_product(grantor) -> None:
    with pytest.raises(PaymentValidationError):
        await grantor.grant_manual_access(
            email="student@b.com",
            product_id=" ",
            product_type=ProductType.COURSE,
            amount_major=100,
            actor="ops-1",
        )


@pytest.mark.asyncio
async def test_check_and_revoke_access(grantor, engine) -> None:
    result = await engine.reconcile(make_verified(), now_utc=NOW_UTC)

    granted = await grantor.check_access(result.purchase_id, result.access_token)
    wrong_token = await grantor.check_access(result.purchase_id, "0" * 64)
    revoked = await grantor.revoke_access(result.purchase_id, actor="ops-1", now_utc=NOW_UTC)
    revoked_again = await grantor.revoke_access(result.purchase_id, actor="ops-1", now_utc=NOW_UTC)
    after_revoke = await grantor.check_access(result.purchase_id, result.access_token)

    assert granted.granted is True
    assert granted.product_type == ProductType.COURSE
    assert wrong_token.granted is False
    assert revoked is True
    assert revoked_again is False
    assert after_revoke.granted is False


@pytest.mark.asyncio
async def test_revoke_unknown_purchase_raises(grantor) -> None:
    with pytest.raises(PurchaseNotFoundError):
        await grantor.revoke_access(uuid4(), actor="ops-1", now_utc=NOW_UTC)


@pytest.mark.asyncio
async def test_has_product_access_by_account_or_email(grantor, engine) -> None:
    await engine.reconcile(make_verified(buyer_id="u-1"), now_utc=NOW_UTC)

    assert await grantor.has_product_access(
        product_id="course-101",
        product_type=ProductType.COURSE,
        buyer_id="u-1",
    )
    assert await grantor.has_product_access(
        product_id="course-101",
        product_type=ProductType.COURSE,
        email="A@B.com",
    )
    assert not await grantor.has_product_access(
        product_id="course-999",
        product_type=ProductType.COURSE,
        buyer_id="u-1",
    )
    with pytest.raises(PaymentValidationError):
        await grantor.has_product_access(product_id="course-101", product_type=ProductType.COURSE)


@pytest.mark.asyncio
async def test_billing_history_lists_purchases_in_major_units(engine, session_factory) -> None:
    await engine.reconcile(make_verified(buyer_id="u-1", amount_minor=250_050), now_utc=NOW_UTC)

    history = await get_billing_history(session_factory, user_id="u-1")

    assert history.user_id == "u-1"
    assert [item.amount_major for item in history.purchases] == [Decimal("2500.50")]
    assert history.subscriptions == []
