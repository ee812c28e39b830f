from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from uuid import UUID

import structlog
from fastapi import APIRouter, HTTPException, Query, Request
from pydantic import BaseModel, Field

from paycore.api.errors import billing_http_exception
from paycore.api.routes.payments import ReconciliationResponse
from paycore.billing.errors import BillingError
from paycore.billing.history import get_billing_history
from paycore.billing.subscriptions import SubscriptionView
from paycore.billing.types import ProductType, SubscriptionStatus
from paycore.core.config import get_settings
from paycore.services.billing_components import get_billing_components
from paycore.services.internal_auth import (
    extract_client_ip,
    is_client_ip_allowed,
    is_valid_internal_token,
)

router = APIRouter(prefix="/internal/billing", tags=["internal", "billing"])
logger = structlog.get_logger(__name__)


class ActorRequest(BaseModel):
    actor: str = Field(min_length=1, max_length=64)


class ManualGrantRequest(ActorRequest):
    email: str = Field(min_length=3, max_length=320)
    product_id: str = Field(min_length=1, max_length=64)
    product_type: ProductType
    amount: Decimal = Field(ge=0)
    buyer_id: str | None = Field(default=None, max_length=64)
    buyer_name: str | None = Field(default=None, max_length=128)
    product_name: str | None = Field(default=None, max_length=256)
    plan_name: str | None = Field(default=None, max_length=128)


class GuestLinkRequest(BaseModel):
    user_id: str = Field(min_length=1, max_length=64)
    email: str = Field(min_length=3, max_length=320)


class GuestLinkResponse(BaseModel):
    linked_count: int = Field(ge=0)
    purchase_ids: list[UUID]


class RevokeResponse(BaseModel):
    purchase_id: UUID
    revoked: bool


class SubscriptionResponse(BaseModel):
    subscription_id: UUID
    user_id: str
    status: SubscriptionStatus
    plan_name: str
    amount_minor: int
    currency: str
    start_date: datetime
    end_date: datetime | None
    next_billing_date: datetime | None
    cancel_at_period_end: bool

    @classmethod
    def from_view(cls, view: SubscriptionView) -> SubscriptionResponse:
        return cls(
            subscription_id=view.subscription_id,
            user_id=view.user_id,
            status=view.status,
            plan_name=view.plan_name,
            amount_minor=view.amount_minor,
            currency=view.currency,
            start_date=view.start_date,
            end_date=view.end_date,
            next_billing_date=view.next_billing_date,
            cancel_at_period_end=view.cancel_at_period_end,
        )


class PurchaseHistoryItem(BaseModel):
    purchase_id: UUID
    product_id: str
    product_type: str
    amount: Decimal
    currency: str
    payment_status: str
    access_granted: bool
    created_at: datetime


class BillingHistoryResponse(BaseModel):
    user_id: str
    purchases: list[PurchaseHistoryItem]
    subscriptions: list[SubscriptionResponse]


def _assert_internal_access(request: Request) -> None:
    settings = get_settings()
    client_ip = extract_client_ip(
        request,
        trusted_proxies=getattr(settings, "internal_api_trusted_proxies", ""),
    )
    if not is_valid_internal_token(
        expected_token=settings.internal_api_token,
        received_token=request.headers.get("X-Internal-Token"),
    ):
        logger.warning("internal_billing_auth_failed", reason="invalid_token", client_ip=client_ip)
        raise HTTPException(status_code=403, detail={"code": "E_FORBIDDEN"})

    if not is_client_ip_allowed(client_ip=client_ip, allowlist=settings.internal_api_allowlist):
        logger.warning("internal_billing_auth_failed", reason="ip_not_allowed", client_ip=client_ip)
        raise HTTPException(status_code=403, detail={"code": "E_FORBIDDEN"})


@router.post("/access/grant", response_model=ReconciliationResponse)
async def grant_access(request: Request, payload: ManualGrantRequest) -> ReconciliationResponse:
    _assert_internal_access(request)
    try:
        result = await get_billing_components().grantor.grant_manual_access(
            email=payload.email,
            product_id=payload.product_id,
            product_type=payload.product_type,
            amount_major=payload.amount,
            actor=payload.actor,
            buyer_id=payload.buyer_id,
            buyer_name=payload.buyer_name,
            product_name=payload.product_name,
            plan_name=payload.plan_name,
        )
    except BillingError as exc:
        raise billing_http_exception(exc) from exc
    return ReconciliationResponse.from_result(result)


@router.post("/access/{purchase_id}/revoke", response_model=RevokeResponse)
async def revoke_access(request: Request, purchase_id: UUID, payload: ActorRequest) -> RevokeResponse:
    _assert_internal_access(request)
    try:
        revoked = await get_billing_components().grantor.revoke_access(
            purchase_id,
            actor=payload.actor,
            now_utc=datetime.now(timezone.utc),
        )
    except BillingError as exc:
        raise billing_http_exception(exc) from exc
    return RevokeResponse(purchase_id=purchase_id, revoked=revoked)


@router.post("/subscriptions/{subscription_id}/cancel", response_model=SubscriptionResponse)
async def cancel_subscription(request: Request, subscription_id: UUID) -> SubscriptionResponse:
    _assert_internal_access(request)
    try:
        view = await get_billing_components().subscriptions.cancel(
            subscription_id,
            now_utc=datetime.now(timezone.utc),
        )
    except BillingError as exc:
        raise billing_http_exception(exc) from exc
    return SubscriptionResponse.from_view(view)


@router.post("/subscriptions/{subscription_id}/restore", response_model=SubscriptionResponse)
async def restore_subscription(
    request: Request,
    subscription_id: UUID,
    payload: ActorRequest,
) -> SubscriptionResponse:
    _assert_internal_access(request)
    try:
        view = await get_billing_components().subscriptions.restore(
            subscription_id,
            actor=payload.actor,
            now_utc=datetime.now(timezone.utc),
        )
    except BillingError as exc:
        raise billing_http_exception(exc) from exc
    return SubscriptionResponse.from_view(view)


@router.post("/guest-links", response_model=GuestLinkResponse)
async def link_guest_purchases(request: Request, payload: GuestLinkRequest) -> GuestLinkResponse:
    _assert_internal_access(request)
    try:
        result = await get_billing_components().guest_linker.link(
            user_id=payload.user_id,
            email=payload.email,
            now_utc=datetime.now(timezone.utc),
        )
    except BillingError as exc:
        raise billing_http_exception(exc) from exc
    return GuestLinkResponse(linked_count=result.linked_count, purchase_ids=result.purchase_ids)


@router.post("/mismatches/{mismatch_id}/repair", response_model=ReconciliationResponse)
async def repair_mismatch(
    request: Request,
    mismatch_id: int,
    payload: ActorRequest,
) -> ReconciliationResponse:
    _assert_internal_access(request)
    try:
        result = await get_billing_components().engine.repair_mismatch(mismatch_id, actor=payload.actor)
    except BillingError as exc:
        raise billing_http_exception(exc) from exc
    return ReconciliationResponse.from_result(result)


@router.get("/users/{user_id}/history", response_model=BillingHistoryResponse)
async def billing_history(
    request: Request,
    user_id: str,
    limit: int = Query(default=50, ge=1, le=200),
) -> BillingHistoryResponse:
    _assert_internal_access(request)
    history = await get_billing_history(
        get_billing_components().session_factory,
        user_id=user_id,
        limit=limit,
    )
    return BillingHistoryResponse(
        user_id=history.user_id,
        purchases=[
            PurchaseHistoryItem(
                purchase_id=item.purchase_id,
                product_id=item.product_id,
                product_type=item.product_type,
                amount=item.amount_major,
                currency=item.currency,
                payment_status=item.payment_status,
                access_granted=item.access_granted,
                created_at=item.created_at,
            )
            for item in history.purchases
        ],
        subscriptions=[SubscriptionResponse.from_view(view) for view in history.subscriptions],
    )
