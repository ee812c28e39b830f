from __future__ import annotations

from decimal import Decimal
from uuid import UUID

import structlog
from fastapi import APIRouter
from pydantic import BaseModel, Field

from paycore.api.errors import FINALIZING_MESSAGE, billing_http_exception
from paycore.billing.errors import BillingError
from paycore.billing.types import (
    CheckoutMetadata,
    PaymentStatus,
    ProductType,
    ReconciliationResult,
    ReconciliationStatus,
)
from paycore.services.billing_components import get_billing_components

router = APIRouter(tags=["payments"])
logger = structlog.get_logger(__name__)

STATUS_MESSAGES = {
    ReconciliationStatus.GRANTED: "Access granted.",
    ReconciliationStatus.FINALIZING: FINALIZING_MESSAGE,
    ReconciliationStatus.NOT_GRANTED: "Payment not completed.",
}


class InitializePaymentRequest(BaseModel):
    email: str = Field(min_length=3, max_length=320)
    amount: Decimal = Field(gt=0)
    product_id: str = Field(min_length=1, max_length=64)
    product_type: ProductType
    buyer_id: str | None = Field(default=None, max_length=64)
    plan_name: str | None = Field(default=None, max_length=128)
    buyer_name: str | None = Field(default=None, max_length=128)
    product_name: str | None = Field(default=None, max_length=256)


class InitializePaymentResponse(BaseModel):
    checkout_url: str
    reference: str
    access_code: str | None = None


class VerifyPaymentRequest(BaseModel):
    reference: str = Field(min_length=1, max_length=128)
    transaction_id: str | None = Field(default=None, max_length=64)
    product_id: str | None = Field(default=None, max_length=64)
    product_type: ProductType | None = None
    buyer_id: str | None = Field(default=None, max_length=64)
    plan_name: str | None = Field(default=None, max_length=128)


class ReconciliationResponse(BaseModel):
    purchase_id: UUID
    payment_reference: str
    payment_status: PaymentStatus
    access_granted: bool
    access_link: str | None
    status: ReconciliationStatus
    message: str
    idempotent_replay: bool
    subscription_id: UUID | None = None
    mismatch_id: int | None = None

    @classmethod
    def from_result(cls, result: ReconciliationResult) -> ReconciliationResponse:
        return cls(
            purchase_id=result.purchase_id,
            payment_reference=result.payment_reference,
            payment_status=result.payment_status,
            access_granted=result.access_granted,
            access_link=result.access_link if result.access_granted else None,
            status=result.status,
            message=STATUS_MESSAGES[result.status],
            idempotent_replay=result.idempotent_replay,
            subscription_id=result.subscription_id,
            mismatch_id=result.mismatch_id,
        )


@router.post("/payments/initialize", response_model=InitializePaymentResponse)
async def initialize_payment(payload: InitializePaymentRequest) -> InitializePaymentResponse:
    components = get_billing_components()
    try:
        session = await components.initiator.initiate(
            email=payload.email,
            amount_major=payload.amount,
            metadata=CheckoutMetadata(
                product_id=payload.product_id,
                product_type=payload.product_type,
                buyer_id=payload.buyer_id,
                plan_name=payload.plan_name,
                buyer_name=payload.buyer_name,
                product_name=payload.product_name,
            ),
        )
    except BillingError as exc:
        logger.warning("payment_initialize_failed", error_type=type(exc).__name__)
        raise billing_http_exception(exc) from exc

    return InitializePaymentResponse(
        checkout_url=session.checkout_url,
        reference=session.reference,
        access_code=session.access_code,
    )


@router.post("/payments/verify", response_model=ReconciliationResponse)
async def verify_payment(payload: VerifyPaymentRequest) -> ReconciliationResponse:
    components = get_billing_components()
    fallback_metadata = None
    if payload.product_id and payload.product_type is not None:
        fallback_metadata = CheckoutMetadata(
            product_id=payload.product_id,
            product_type=payload.product_type,
            buyer_id=payload.buyer_id,
            plan_name=payload.plan_name,
        )

    try:
        verified = await components.verifier.verify_successful(
            payload.reference,
            transaction_id=payload.transaction_id,
            fallback_metadata=fallback_metadata,
        )
        result = await components.engine.reconcile(verified)
    except BillingError as exc:
        logger.warning(
            "payment_verify_failed",
            reference=payload.reference,
            error_type=type(exc).__name__,
        )
        raise billing_http_exception(exc) from exc

    return ReconciliationResponse.from_result(result)
