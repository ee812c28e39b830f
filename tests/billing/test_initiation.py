from __future__ import annotations

import re
from datetime import datetime, timezone

import pytest

from paycore.billing.errors import PaymentValidationError
from paycore.billing.initiation import PaymentInitiator, normalize_email
from paycore.billing.references import generate_reference, tokens_match
from paycore.billing.types import CheckoutMetadata, ProductType
from tests.billing_fixtures import FakeProvider


@pytest.mark.asyncio
async def test_initiate_sends_minor_units_and_metadata() -> None:
    provider = FakeProvider()
    initiator = PaymentInitiator(provider=provider, currency="NGN")

    session = await initiator.initiate(
        email=" A@B.com ",
        amount_major="2500",
        metadata=CheckoutMetadata(product_id="course-101", product_type=ProductType.COURSE, buyer_id="u-1"),
    )

    [call] = provider.initialized
    assert call["email"] == "a@b.com"
    assert call["amount_minor"] == 250_000
    assert call["metadata"] == {"product_id": "course-101", "product_type": "course", "buyer_id": "u-1"}
    assert re.fullmatch(r"PAY_\d{13}_[0-9a-f]{16}", call["reference"])
    assert session.reference == call["reference"]
    assert session.checkout_url.endswith(call["reference"])


@pytest.mark.asyncio
@pytest.mark.parametrize("amount", ["0", "-10", "1.001"])
async def test_initiate_rejects_bad_amounts(amount: str) -> None:
    provider = FakeProvider()
    initiator = PaymentInitiator(provider=provider)

    with pytest.raises(PaymentValidationError):
        await initiator.initiate(
            email="a@b.com",
            amount_major=amount,
            metadata=CheckoutMetadata(product_id="course-101", product_type=ProductType.COURSE),
        )
    assert provider.initialized == []


@pytest.mark.asyncio
async def test_initiate_rejects_blank_product() -> None:
    initiator = PaymentInitiator(provider=FakeProvider())

    with pytest.raises(PaymentValidationError):
        await initiator.initiate(
            email="a@b.com",
            amount_major=100,
            metadata=CheckoutMetadata(product_id="  ", product_type=ProductType.COURSE),
        )


@pytest.mark.parametrize("raw", ["", None, "no-at-sign", "a@b", "a b@c.com"])
def test_normalize_email_rejects_invalid(raw: str | None) -> None:
    with pytest.raises(PaymentValidationError):
        normalize_email(raw)


def test_generate_reference_embeds_timestamp() -> None:
    moment = datetime(2024, 1, 1, tzinfo=timezone.utc)

    reference = generate_reference("ADMIN_MANUAL", now_utc=moment)

    assert reference.startswith("ADMIN_MANUAL_1704067200000_")
    assert reference != generate_reference("ADMIN_MANUAL", now_utc=moment)


def test_tokens_match() -> None:
    assert tokens_match("abc", "abc") is True
    assert tokens_match("abc", "abd") is False
    assert tokens_match("abc", None) is False
    assert tokens_match(None, "abc") is False
