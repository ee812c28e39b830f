from __future__ import annotations

import re

import structlog

from paycore.billing.amounts import to_minor
from paycore.billing.errors import PaymentValidationError
from paycore.billing.references import CHECKOUT_REFERENCE_PREFIX, generate_reference
from paycore.billing.types import CheckoutMetadata, CheckoutSession
from paycore.providers.base import PaymentProvider

logger = structlog.get_logger(__name__)

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def normalize_email(raw_email: str | None) -> str:
    email = (raw_email or "").strip().lower()
    if not EMAIL_PATTERN.match(email):
        raise PaymentValidationError("a valid buyer email is required")
    return email


class PaymentInitiator:
    def __init__(
        self,
        *,
        provider: PaymentProvider,
        currency: str = "NGN",
        reference_prefix: str = CHECKOUT_REFERENCE_PREFIX,
    ) -> None:
        self._provider = provider
        self._currency = currency
        self._reference_prefix = reference_prefix

    async def initiate(
        self,
        *,
        email: str,
        amount_major: object,
        metadata: CheckoutMetadata,
    ) -> CheckoutSession:
        buyer_email = normalize_email(email)
        amount_minor = to_minor(amount_major, currency=self._currency)
        if amount_minor <= 0:
            raise PaymentValidationError("amount must be greater than zero")
        if not metadata.product_id.strip():
            raise PaymentValidationError("product_id is required")

        reference = generate_reference(self._reference_prefix)
        session = await self._provider.initialize(
            email=buyer_email,
            amount_minor=amount_minor,
            reference=reference,
            metadata=metadata.to_dict(),
        )
        logger.info(
            "payment_initialized",
            reference=session.reference,
            product_id=metadata.product_id,
            product_type=metadata.product_type.value,
            amount_minor=amount_minor,
        )
        return session
