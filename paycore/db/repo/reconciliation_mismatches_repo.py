from __future__ import annotations

from datetime import datetime
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from paycore.db.models.reconciliation_mismatches import ReconciliationMismatch


class ReconciliationMismatchesRepo:
    @staticmethod
    async def get_by_id_for_update(
        session: AsyncSession,
        mismatch_id: int,
    ) -> ReconciliationMismatch | None:
        stmt = (
            select(ReconciliationMismatch)
            .where(ReconciliationMismatch.id == mismatch_id)
            .with_for_update()
        )
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    @staticmethod
    async def get_open_for_purchase(
        session: AsyncSession,
        *,
        purchase_id: UUID,
        step: str,
    ) -> ReconciliationMismatch | None:
        stmt = (
            select(ReconciliationMismatch)
            .where(
                ReconciliationMismatch.purchase_id == purchase_id,
                ReconciliationMismatch.step == step,
                ReconciliationMismatch.status == "OPEN",
            )
            .order_by(ReconciliationMismatch.created_at.desc())
            .limit(1)
        )
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    @staticmethod
    async def count_open(session: AsyncSession) -> int:
        stmt = select(func.count(ReconciliationMismatch.id)).where(
            ReconciliationMismatch.status == "OPEN",
        )
        result = await session.execute(stmt)
        return int(result.scalar_one() or 0)

    @staticmethod
    async def create(
        session: AsyncSession,
        *,
        purchase_id: UUID,
        payment_reference: str,
        step: str,
        error_type: str,
        detail: str | None,
        created_at: datetime,
    ) -> ReconciliationMismatch:
        mismatch = ReconciliationMismatch(
            purchase_id=purchase_id,
            payment_reference=payment_reference,
            step=step,
            error_type=error_type,
            detail=detail,
            status="OPEN",
            created_at=created_at,
        )
        session.add(mismatch)
        await session.flush()
        return mismatch
