from __future__ import annotations

from datetime import datetime
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from paycore.db.models.subscription_payments import SubscriptionPayment
from paycore.db.models.subscriptions import Subscription

SWEEPABLE_STATUSES = ("active", "trialing")


class SubscriptionsRepo:
    @staticmethod
    async def get_by_id(session: AsyncSession, subscription_id: UUID) -> Subscription | None:
        return await session.get(Subscription, subscription_id)

    @staticmethod
    async def get_by_id_for_update(
        session: AsyncSession,
        subscription_id: UUID,
    ) -> Subscription | None:
        stmt = select(Subscription).where(Subscription.id == subscription_id).with_for_update()
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    @staticmethod
    async def get_active_for_user_for_update(
        session: AsyncSession,
        user_id: str,
    ) -> Subscription | None:
        stmt = (
            select(Subscription)
            .where(Subscription.user_id == user_id, Subscription.status == "active")
            .with_for_update()
        )
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    @staticmethod
    async def get_trialing_for_user_for_update(
        session: AsyncSession,
        user_id: str,
    ) -> Subscription | None:
        stmt = (
            select(Subscription)
            .where(Subscription.user_id == user_id, Subscription.status == "trialing")
            .order_by(Subscription.created_at.desc())
            .limit(1)
            .with_for_update()
        )
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    @staticmethod
    async def get_latest_by_customer_code_for_update(
        session: AsyncSession,
        customer_code: str,
    ) -> Subscription | None:
        stmt = (
            select(Subscription)
            .where(Subscription.provider_customer_code == customer_code)
            .order_by(Subscription.created_at.desc())
            .limit(1)
            .with_for_update()
        )
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    @staticmethod
    async def get_by_provider_subscription_id_for_update(
        session: AsyncSession,
        provider_subscription_id: str,
    ) -> Subscription | None:
        stmt = (
            select(Subscription)
            .where(Subscription.provider_subscription_id == provider_subscription_id)
            .order_by(Subscription.created_at.desc())
            .limit(1)
            .with_for_update()
        )
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    @staticmethod
    async def get_by_applied_payment_reference(
        session: AsyncSession,
        payment_reference: str,
    ) -> Subscription | None:
        stmt = (
            select(Subscription)
            .join(SubscriptionPayment, SubscriptionPayment.subscription_id == Subscription.id)
            .where(SubscriptionPayment.payment_reference == payment_reference)
        )
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    @staticmethod
    async def list_for_user(
        session: AsyncSession,
        *,
        user_id: str,
        limit: int = 10,
    ) -> list[Subscription]:
        stmt = (
            select(Subscription)
            .where(Subscription.user_id == user_id)
            .order_by(Subscription.created_at.desc())
            .limit(max(1, int(limit)))
        )
        result = await session.execute(stmt)
        return list(result.scalars().all())

    @staticmethod
    async def list_due_ids(
        session: AsyncSession,
        *,
        now_utc: datetime,
        limit: int,
    ) -> list[UUID]:
        stmt = (
            select(Subscription.id)
            .where(
                Subscription.status.in_(SWEEPABLE_STATUSES),
                Subscription.end_date.is_not(None),
                Subscription.end_date <= now_utc,
            )
            .order_by(Subscription.end_date.asc())
            .limit(max(1, int(limit)))
        )
        result = await session.execute(stmt)
        return list(result.scalars().all())

    @staticmethod
    async def transition_status(
        session: AsyncSession,
        *,
        subscription_id: UUID,
        from_status: str,
        to_status: str,
        now_utc: datetime,
    ) -> bool:
        stmt = (
            update(Subscription)
            .where(
                Subscription.id == subscription_id,
                Subscription.status == from_status,
            )
            .values(status=to_status, updated_at=now_utc)
            .returning(Subscription.id)
        )
        result = await session.execute(stmt)
        return result.scalar_one_or_none() is not None

    @staticmethod
    async def create(session: AsyncSession, *, subscription: Subscription) -> Subscription:
        session.add(subscription)
        await session.flush()
        return subscription

    @staticmethod
    async def record_payment(
        session: AsyncSession,
        *,
        subscription_id: UUID,
        payment_reference: str,
        kind: str,
        applied_at: datetime,
    ) -> SubscriptionPayment:
        payment = SubscriptionPayment(
            subscription_id=subscription_id,
            payment_reference=payment_reference,
            kind=kind,
            applied_at=applied_at,
        )
        session.add(payment)
        await session.flush()
        return payment
