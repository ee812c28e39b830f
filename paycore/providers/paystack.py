from __future__ import annotations

import hashlib
import hmac
from datetime import datetime
from typing import Any

import httpx
import structlog

from paycore.billing.errors import (
    PaymentValidationError,
    ProviderRejectedError,
    ProviderTimeoutError,
    ProviderUnavailableError,
)
from paycore.billing.types import CheckoutSession
from paycore.providers.base import ProviderCancelResult, ProviderSubscription, ProviderTransaction

logger = structlog.get_logger(__name__)

SIGNATURE_HEADER = "X-Paystack-Signature"
RETRYABLE_STATUS_CODES = frozenset({429})


def is_valid_webhook_signature(*, secret: str, raw_body: bytes, signature: str | None) -> bool:
    if not secret or not signature:
        return False
    expected = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha512).hexdigest()
    return hmac.compare_digest(expected, signature.strip().lower())


def parse_provider_datetime(raw_value: object) -> datetime | None:
    if not isinstance(raw_value, str) or not raw_value.strip():
        return None
    try:
        return datetime.fromisoformat(raw_value.strip().replace("Z", "+00:00"))
    except ValueError:
        return None


def parse_transaction_data(data: dict[str, Any]) -> ProviderTransaction:
    reference = data.get("reference")
    if not isinstance(reference, str) or not reference.strip():
        raise PaymentValidationError("provider transaction has no reference")

    customer = data.get("customer") if isinstance(data.get("customer"), dict) else {}
    metadata = data.get("metadata") if isinstance(data.get("metadata"), dict) else {}
    try:
        amount_minor = int(data.get("amount") or 0)
    except (TypeError, ValueError) as exc:
        raise PaymentValidationError(f"provider amount is not an integer for {reference}") from exc

    transaction_id = data.get("id")
    return ProviderTransaction(
        reference=reference.strip(),
        status=str(data.get("status") or "pending"),
        amount_minor=amount_minor,
        currency=str(data.get("currency") or "NGN"),
        customer_email=str(customer.get("email") or ""),
        metadata=metadata,
        customer_code=customer.get("customer_code"),
        transaction_id=str(transaction_id) if transaction_id is not None else None,
        paid_at=parse_provider_datetime(data.get("paid_at") or data.get("paidAt")),
    )


class PaystackProvider:
    def __init__(
        self,
        *,
        secret_key: str,
        base_url: str = "https://api.paystack.co",
        timeout_seconds: float = 10.0,
        plan_code: str = "",
        callback_url: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._secret_key = secret_key
        self._base_url = base_url.rstrip("/")
        self._timeout_seconds = timeout_seconds
        self._plan_code = plan_code
        self._callback_url = callback_url
        self._transport = transport

    async def initialize(
        self,
        *,
        email: str,
        amount_minor: int,
        reference: str,
        metadata: dict[str, object],
    ) -> CheckoutSession:
        body: dict[str, Any] = {
            "email": email,
            "amount": amount_minor,
            "reference": reference,
            "metadata": metadata,
        }
        if self._callback_url:
            body["callback_url"] = self._callback_url
        if metadata.get("product_type") == "subscription" and self._plan_code:
            body["plan"] = self._plan_code

        data = await self._request("POST", "/transaction/initialize", json=body)
        return CheckoutSession(
            checkout_url=str(data.get("authorization_url") or ""),
            reference=str(data.get("reference") or reference),
            access_code=data.get("access_code"),
        )

    async def verify(self, reference: str, transaction_id: str | None = None) -> ProviderTransaction:
        data = await self._request("GET", f"/transaction/verify/{reference}")
        transaction = parse_transaction_data(data)
        if transaction_id is not None and transaction.transaction_id not in (None, transaction_id):
            raise ProviderRejectedError(
                f"transaction id mismatch for {reference}: expected {transaction_id}"
            )
        return transaction

    async def create_subscription(self, *, email: str, customer_code: str) -> ProviderSubscription:
        data = await self._request(
            "POST",
            "/subscription",
            json={"customer": customer_code, "plan": self._plan_code},
        )
        return ProviderSubscription(
            provider_subscription_id=str(data.get("subscription_code") or ""),
            customer_code=customer_code,
            status=str(data.get("status") or "active"),
            next_payment_date=parse_provider_datetime(data.get("next_payment_date")),
            email_token=data.get("email_token"),
        )

    async def cancel_subscription(self, provider_subscription_id: str) -> ProviderCancelResult:
        details = await self._request("GET", f"/subscription/{provider_subscription_id}")
        token = details.get("email_token")
        if not token:
            raise ProviderRejectedError(f"subscription {provider_subscription_id} has no email token")
        await self._request(
            "POST",
            "/subscription/disable",
            json={"code": provider_subscription_id, "token": token},
        )
        logger.info("paystack_subscription_disabled", provider_subscription_id=provider_subscription_id)
        return ProviderCancelResult(provider_subscription_id=provider_subscription_id, disabled=True)

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        headers = {
            "Authorization": f"Bearer {self._secret_key}",
            "Content-Type": "application/json",
        }
        try:
            async with httpx.AsyncClient(
                base_url=self._base_url,
                timeout=self._timeout_seconds,
                transport=self._transport,
            ) as client:
                response = await client.request(method, path, json=json, headers=headers)
        except httpx.TimeoutException as exc:
            raise ProviderTimeoutError(f"paystack {method} {path} timed out") from exc
        except httpx.TransportError as exc:
            raise ProviderUnavailableError(f"paystack {method} {path} unreachable") from exc

        if response.status_code >= 500 or response.status_code in RETRYABLE_STATUS_CODES:
            raise ProviderUnavailableError(f"paystack {method} {path} returned {response.status_code}")

        try:
            body = response.json()
        except ValueError as exc:
            raise ProviderUnavailableError(f"paystack {method} {path} returned invalid JSON") from exc

        if response.status_code >= 400 or not isinstance(body, dict) or not body.get("status"):
            message = body.get("message") if isinstance(body, dict) else None
            logger.warning(
                "paystack_request_rejected",
                method=method,
                path=path,
                status_code=response.status_code,
                message=message,
            )
            raise ProviderRejectedError(message or f"paystack {method} {path} rejected the request")

        data = body.get("data")
        return data if isinstance(data, dict) else {}
