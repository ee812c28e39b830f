from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter, HTTPException, Query
from pydantic import BaseModel

from paycore.billing.types import ProductType
from paycore.services.billing_components import get_billing_components

router = APIRouter(tags=["access"])


class AccessResponse(BaseModel):
    purchase_id: UUID
    granted: bool
    product_id: str
    product_type: ProductType


@router.get("/access/{purchase_id}", response_model=AccessResponse)
async def check_access(purchase_id: UUID, token: str = Query(min_length=1, max_length=128)) -> AccessResponse:
    check = await get_billing_components().grantor.check_access(purchase_id, token)
    if not check.granted or check.product_id is None or check.product_type is None:
        raise HTTPException(status_code=403, detail={"code": "E_ACCESS_DENIED"})
    return AccessResponse(
        purchase_id=check.purchase_id,
        granted=True,
        product_id=check.product_id,
        product_type=check.product_type,
    )
