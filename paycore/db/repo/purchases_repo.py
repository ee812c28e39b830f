from __future__ import annotations

from datetime import datetime
from uuid import UUID

from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from paycore.db.models.purchases import Purchase


class PurchasesRepo:
    @staticmethod
    async def get_by_id(session: AsyncSession, purchase_id: UUID) -> Purchase | None:
        return await session.get(Purchase, purchase_id)

    @staticmethod
    async def get_by_id_for_update(session: AsyncSession, purchase_id: UUID) -> Purchase | None:
        stmt = select(Purchase).where(Purchase.id == purchase_id).with_for_update()
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    @staticmethod
    async def get_by_dedup_key(session: AsyncSession, dedup_key: str) -> Purchase | None:
        stmt = select(Purchase).where(Purchase.dedup_key == dedup_key)
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    @staticmethod
    async def get_by_payment_reference(session: AsyncSession, payment_reference: str) -> Purchase | None:
        stmt = select(Purchase).where(Purchase.payment_reference == payment_reference)
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    @staticmethod
    async def get_granted_for_product(
        session: AsyncSession,
        *,
        buyer_id: str | None,
        buyer_email: str | None,
        product_id: str,
        product_type: str,
    ) -> Purchase | None:
        owner_filters = []
        if buyer_id is not None:
            owner_filters.append(Purchase.buyer_id == buyer_id)
        if buyer_email is not None:
            owner_filters.append(Purchase.buyer_email == buyer_email)
        if not owner_filters:
            return None

        stmt = (
            select(Purchase)
            .where(
                or_(*owner_filters),
                Purchase.product_id == product_id,
                Purchase.product_type == product_type,
                Purchase.access_granted.is_(True),
            )
            .order_by(Purchase.access_granted_at.desc())
            .limit(1)
        )
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    @staticmethod
    async def list_for_buyer(
        session: AsyncSession,
        *,
        buyer_id: str,
        limit: int = 50,
    ) -> list[Purchase]:
        stmt = (
            select(Purchase)
            .where(Purchase.buyer_id == buyer_id)
            .order_by(Purchase.created_at.desc())
            .limit(max(1, int(limit)))
        )
        result = await session.execute(stmt)
        return list(result.scalars().all())

    @staticmethod
    async def link_guest_purchases(
        session: AsyncSession,
        *,
        buyer_id: str,
        buyer_email: str,
        now_utc: datetime,
    ) -> list[UUID]:
        stmt = (
            update(Purchase)
            .where(
                Purchase.buyer_id.is_(None),
                Purchase.buyer_email == buyer_email,
            )
            .values(buyer_id=buyer_id, updated_at=now_utc)
            .returning(Purchase.id)
        )
        result = await session.execute(stmt)
        return list(result.scalars().all())

    @staticmethod
    async def count_success_without_access(session: AsyncSession) -> int:
        stmt = select(func.count(Purchase.id)).where(
            Purchase.payment_status == "success",
            Purchase.access_granted.is_(False),
            Purchase.access_revoked_at.is_(None),
        )
        result = await session.execute(stmt)
        return int(result.scalar_one() or 0)

    @staticmethod
    async def create(
        session: AsyncSession,
        *,
        purchase: Purchase,
        created_at: datetime,
    ) -> Purchase:
        purchase.created_at = created_at
        purchase.updated_at = created_at
        session.add(purchase)
        await session.flush()
        return purchase
