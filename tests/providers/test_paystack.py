from __future__ import annotations

import hashlib
import hmac
import json

import httpx
import pytest

from paycore.billing.errors import (
    PaymentValidationError,
    ProviderRejectedError,
    ProviderTimeoutError,
    ProviderUnavailableError,
)
from paycore.providers.paystack import PaystackProvider, is_valid_webhook_signature, parse_transaction_data

SECRET = "sk_test_secret"


def _provider(handler) -> PaystackProvider:
    return PaystackProvider(
        secret_key=SECRET,
        base_url="https://api.paystack.test",
        plan_code="PLN_monthly",
        transport=httpx.MockTransport(handler),
    )


def _ok(data: dict[str, object]) -> httpx.Response:
    return httpx.Response(200, json={"status": True, "message": "ok", "data": data})


def test_webhook_signature_is_hmac_sha512_of_raw_body() -> None:
    body = b'{"event":"charge.success"}'
    signature = hmac.new(SECRET.encode(), body, hashlib.sha512).hexdigest()

    assert is_valid_webhook_signature(secret=SECRET, raw_body=body, signature=signature) is True
    assert is_valid_webhook_signature(secret=SECRET, raw_body=body + b" ", signature=signature) is False
    assert is_valid_webhook_signature(secret=SECRET, raw_body=body, signature=None) is False
    assert is_valid_webhook_signature(secret="", raw_body=body, signature=signature) is False


@pytest.mark.asyncio
async def test_initialize_posts_minor_amount_and_plan_for_subscriptions() -> None:
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return _ok({"authorization_url": "https://checkout.paystack.test/x", "access_code": "ac_1", "reference": "PAY_1"})

    session = await _provider(handler).initialize(
        email="a@b.com",
        amount_minor=500_000,
        reference="PAY_1",
        metadata={"product_id": "pro", "product_type": "subscription"},
    )

    [request] = requests
    body = json.loads(request.content)
    assert request.url.path == "/transaction/initialize"
    assert request.headers["Authorization"] == f"Bearer {SECRET}"
    assert body["amount"] == 500_000
    assert body["plan"] == "PLN_monthly"
    assert session.checkout_url == "https://checkout.paystack.test/x"
    assert session.access_code == "ac_1"


@pytest.mark.asyncio
async def test_verify_parses_transaction() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/transaction/verify/TXN_1"
        return _ok(
            {
                "id": 4099,
                "reference": "TXN_1",
                "status": "success",
                "amount": 250000,
                "currency": "NGN",
                "customer": {"email": "a@b.com", "customer_code": "CUS_1"},
                "metadata": {"product_id": "course-101", "product_type": "course"},
            }
        )

    transaction = await _provider(handler).verify("TXN_1", "4099")

    assert transaction.status == "success"
    assert transaction.amount_minor == 250000
    assert transaction.customer_code == "CUS_1"


@pytest.mark.asyncio
async def test_verify_rejects_transaction_id_mismatch() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return _ok({"id": 1, "reference": "TXN_1", "status": "success", "amount": 100})

    with pytest.raises(ProviderRejectedError):
        await _provider(handler).verify("TXN_1", "4099")


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("response", "expected"),
    [
        (httpx.Response(502, text="bad gateway"), ProviderUnavailableError),
        (httpx.Response(429, json={"status": False}), ProviderUnavailableError),
        (httpx.Response(200, text="<html>"), ProviderUnavailableError),
        (httpx.Response(400, json={"status": False, "message": "Invalid key"}), ProviderRejectedError),
        (httpx.Response(200, json={"status": False, "message": "Transaction not found"}), ProviderRejectedError),
    ],
)
async def test_request_errors_are_classified(response: httpx.Response, expected: type[Exception]) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return response

    with pytest.raises(expected):
        await _provider(handler).verify("TXN_1")


@pytest.mark.asyncio
async def test_timeouts_and_connection_errors_are_transient() -> None:
    def timeout_handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("slow", request=request)

    def connect_handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(ProviderTimeoutError):
        await _provider(timeout_handler).verify("TXN_1")
    with pytest.raises(ProviderUnavailableError):
        await _provider(connect_handler).verify("TXN_1")


@pytest.mark.asyncio
async def test_cancel_subscription_fetches_token_then_disables() -> None:
    calls: list[tuple[str, str]] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append((request.method, request.url.path))
        if request.method == "GET":
            return _ok({"subscription_code": "SUB_abc", "email_token": "tok_1"})
        assert json.loads(request.content) == {"code": "SUB_abc", "token": "tok_1"}
        return httpx.Response(200, json={"status": True, "message": "Subscription disabled successfully"})

    result = await _provider(handler).cancel_subscription("SUB_abc")

    assert calls == [("GET", "/subscription/SUB_abc"), ("POST", "/subscription/disable")]
    assert result.disabled is True


def test_parse_transaction_data_requires_reference() -> None:
    with pytest.raises(PaymentValidationError):
        parse_transaction_data({"status": "success"})
