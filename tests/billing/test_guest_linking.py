from __future__ import annotations

import pytest

from paycore.billing.errors import PaymentValidationError
from paycore.billing.guest_linking import GuestLinker
from paycore.db.repo.purchases_repo import PurchasesRepo
from tests.billing_fixtures import NOW_UTC, make_verified


@pytest.mark.asyncio
async def test_link_attaches_guest_purchases_once(engine, session_factory) -> None:
    await engine.reconcile(make_verified(reference="TXN_G1", email="guest@b.com"), now_utc=NOW_UTC)
    await engine.reconcile(
        make_verified(reference="TXN_G2", email="guest@b.com", product_id="course-202"),
        now_utc=NOW_UTC,
    )
    other = await engine.reconcile(make_verified(reference="TXN_O1", email="other@b.com"), now_utc=NOW_UTC)
    owned = await engine.reconcile(
        make_verified(reference="TXN_U1", email="guest@b.com", buyer_id="u-2"),
        now_utc=NOW_UTC,
    )
    linker = GuestLinker(session_factory=session_factory)

    first = await linker.link(user_id="u-1", email=" Guest@B.com ", now_utc=NOW_UTC)
    second = await linker.link(user_id="u-1", email="guest@b.com", now_utc=NOW_UTC)

    assert first.linked_count == 2
    assert second.linked_count == 0
    assert second.purchase_ids == []

    async with session_factory() as session:
        linked = await PurchasesRepo.list_for_buyer(session, buyer_id="u-1")
        untouched = await PurchasesRepo.get_by_id(session, other.purchase_id)
        already_owned = await PurchasesRepo.get_by_id(session, owned.purchase_id)

    assert {purchase.payment_reference for purchase in linked} == {"TXN_G1", "TXN_G2"}
    assert untouched is not None
    assert untouched.buyer_id is None
    assert already_owned is not None
    assert already_owned.buyer_id == "u-2"


@pytest.mark.asyncio
async def test_link_requires_user_and_valid_email(session_factory) -> None:
    linker = GuestLinker(session_factory=session_factory)

    with pytest.raises(PaymentValidationError):
        await linker.link(user_id=" ", email="guest@b.com", now_utc=NOW_UTC)
    with pytest.raises(PaymentValidationError):
        await linker.link(user_id="u-1", email="not-an-email", now_utc=NOW_UTC)
