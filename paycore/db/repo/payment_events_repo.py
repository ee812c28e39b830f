from __future__ import annotations

from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from paycore.db.models.payment_events import PaymentEvent


class PaymentEventsRepo:
    @staticmethod
    async def get_by_id_for_update(session: AsyncSession, event_id: int) -> PaymentEvent | None:
        stmt = select(PaymentEvent).where(PaymentEvent.id == event_id).with_for_update()
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    @staticmethod
    async def get_by_reference(session: AsyncSession, reference: str) -> PaymentEvent | None:
        stmt = select(PaymentEvent).where(PaymentEvent.reference == reference)
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    @staticmethod
    async def get_by_reference_for_update(
        session: AsyncSession,
        reference: str,
    ) -> PaymentEvent | None:
        stmt = select(PaymentEvent).where(PaymentEvent.reference == reference).with_for_update()
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    @staticmethod
    async def list_received_older_than(
        session: AsyncSession,
        *,
        older_than_utc: datetime,
        limit: int = 100,
    ) -> list[PaymentEvent]:
        stmt = (
            select(PaymentEvent)
            .where(
                PaymentEvent.status == "RECEIVED",
                PaymentEvent.received_at <= older_than_utc,
            )
            .order_by(PaymentEvent.received_at.asc())
            .limit(max(1, int(limit)))
        )
        result = await session.execute(stmt)
        return list(result.scalars().all())

    @staticmethod
    async def count_received_older_than(
        session: AsyncSession,
        *,
        older_than_utc: datetime,
    ) -> int:
        stmt = select(func.count(PaymentEvent.id)).where(
            PaymentEvent.status == "RECEIVED",
            PaymentEvent.received_at <= older_than_utc,
        )
        result = await session.execute(stmt)
        return int(result.scalar_one() or 0)

    @staticmethod
    async def create(
        session: AsyncSession,
        *,
        reference: str,
        source: str,
        payload: dict[str, object],
        received_at: datetime,
        status: str = "RECEIVED",
        last_error: str | None = None,
    ) -> PaymentEvent:
        event = PaymentEvent(
            reference=reference,
            source=source,
            status=status,
            last_error=last_error,
            payload=payload,
            attempts=0,
            received_at=received_at,
        )
        session.add(event)
        await session.flush()
        return event
