from __future__ import annotations

from urllib.parse import quote, urlencode
from uuid import UUID

from paycore.billing.types import ProductType


def build_access_link(
    *,
    site_url: str,
    purchase_id: UUID,
    token: str,
    product_type: ProductType | str,
    product_id: str,
) -> str:
    base = site_url.rstrip("/")
    if ProductType(product_type) == ProductType.COURSE:
        query = urlencode({"purchase": str(purchase_id), "token": token})
        return f"{base}/course/{quote(product_id, safe='')}/overview?{query}"
    return f"{base}/access/{purchase_id}?{urlencode({'token': token})}"
