from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from paycore.billing.amounts import to_major
from paycore.billing.subscriptions import SubscriptionView
from paycore.db.repo.purchases_repo import PurchasesRepo
from paycore.db.repo.subscriptions_repo import SubscriptionsRepo


@dataclass(slots=True, frozen=True)
class PurchaseSummary:
    purchase_id: UUID
    product_id: str
    product_type: str
    amount_major: Decimal
    currency: str
    payment_status: str
    access_granted: bool
    created_at: datetime


@dataclass(slots=True)
class BillingHistory:
    user_id: str
    purchases: list[PurchaseSummary] = field(default_factory=list)
    subscriptions: list[SubscriptionView] = field(default_factory=list)


async def get_billing_history(
    session_factory: async_sessionmaker[AsyncSession],
    *,
    user_id: str,
    limit: int = 50,
) -> BillingHistory:
    async with session_factory() as session:
        purchases = await PurchasesRepo.list_for_buyer(session, buyer_id=user_id, limit=limit)
        subscriptions = await SubscriptionsRepo.list_for_user(session, user_id=user_id, limit=limit)

    return BillingHistory(
        user_id=user_id,
        purchases=[
            PurchaseSummary(
                purchase_id=purchase.id,
                product_id=purchase.product_id,
                product_type=purchase.product_type,
                amount_major=to_major(purchase.amount_paid_minor, currency=purchase.currency),
                currency=purchase.currency,
                payment_status=purchase.payment_status,
                access_granted=purchase.access_granted,
                created_at=purchase.created_at,
            )
            for purchase in purchases
        ],
        subscriptions=[SubscriptionView.from_row(row) for row in subscriptions],
    )
