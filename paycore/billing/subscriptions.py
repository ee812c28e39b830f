from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from uuid import UUID, uuid4

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from paycore.billing.errors import (
    BillingError,
    PersistenceError,
    SubscriptionNotFoundError,
    SubscriptionTransitionError,
)
from paycore.billing.types import SubscriptionStatus
from paycore.db.models.subscriptions import Subscription
from paycore.db.repo.subscriptions_repo import SWEEPABLE_STATUSES, SubscriptionsRepo
from paycore.providers.base import PaymentProvider

logger = structlog.get_logger(__name__)

DEFAULT_SWEEP_BATCH = 500


class SweepOutcome(str, Enum):
    UNCHANGED = "unchanged"
    CANCELED = "canceled"
    EXPIRED = "expired"


@dataclass(slots=True, frozen=True)
class SubscriptionView:
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
    provider_subscription_id: str | None = None
    idempotent_replay: bool = False

    @property
    def in_grace_period(self) -> bool:
        return self.status == SubscriptionStatus.ACTIVE and self.cancel_at_period_end

    @classmethod
    def from_row(cls, row: Subscription, *, idempotent_replay: bool = False) -> SubscriptionView:
        return cls(
            subscription_id=row.id,
            user_id=row.user_id,
            status=SubscriptionStatus(row.status),
            plan_name=row.plan_name,
            amount_minor=row.amount_minor,
            currency=row.currency,
            start_date=row.start_date,
            end_date=row.end_date,
            next_billing_date=row.next_billing_date,
            cancel_at_period_end=row.cancel_at_period_end,
            provider_subscription_id=row.provider_subscription_id,
            idempotent_replay=idempotent_replay,
        )


@dataclass(slots=True)
class SweepReport:
    checked: int = 0
    canceled: int = 0
    expired: int = 0


class SubscriptionLifecycleManager:
    def __init__(
        self,
        *,
        session_factory: async_sessionmaker[AsyncSession],
        provider: PaymentProvider | None = None,
        cycle_days: int = 30,
        grace_days: int = 3,
    ) -> None:
        if cycle_days <= 0:
            raise ValueError("cycle_days must be positive")
        self._session_factory = session_factory
        self._provider = provider
        self._cycle = timedelta(days=cycle_days)
        self._cycle_days = cycle_days
        self._grace = timedelta(days=max(0, grace_days))

    @staticmethod
    def legacy_end_date(row: Subscription) -> datetime:
        """Read-only fallback for rows written before end_date was always set."""
        if row.end_date is not None:
            return row.end_date
        if row.next_billing_date is not None:
            return row.next_billing_date
        return row.created_at + timedelta(days=row.cycle_days)

    async def create(
        self,
        *,
        user_id: str,
        plan_name: str,
        amount_minor: int,
        currency: str,
        payment_reference: str | None,
        now_utc: datetime,
        customer_code: str | None = None,
    ) -> SubscriptionView:
        try:
            async with self._session_factory.begin() as session:
                active = await SubscriptionsRepo.get_active_for_user_for_update(session, user_id)
                if active is not None:
                    raise SubscriptionTransitionError(f"user {user_id} already has an active subscription")
                row = await self._insert_active(
                    session,
                    user_id=user_id,
                    plan_name=plan_name,
                    amount_minor=amount_minor,
                    currency=currency,
                    payment_reference=payment_reference,
                    customer_code=customer_code,
                    now_utc=now_utc,
                )
                return SubscriptionView.from_row(row)
        except IntegrityError as exc:
            async with self._session_factory.begin() as session:
                winner = await SubscriptionsRepo.get_active_for_user_for_update(session, user_id)
            if winner is None:
                raise PersistenceError(
                    f"subscription insert for user {user_id} conflicted but no active row was found"
                ) from exc
            logger.info(
                "subscription_create_conflict",
                user_id=user_id,
                subscription_id=str(winner.id),
            )
            raise SubscriptionTransitionError(f"user {user_id} already has an active subscription") from exc

    async def activate_from_payment(
        self,
        *,
        user_id: str,
        plan_name: str,
        amount_minor: int,
        currency: str,
        payment_reference: str,
        now_utc: datetime,
        customer_code: str | None = None,
    ) -> SubscriptionView:
        try:
            async with self._session_factory.begin() as session:
                applied = await SubscriptionsRepo.get_by_applied_payment_reference(
                    session,
                    payment_reference,
                )
                if applied is not None:
                    return SubscriptionView.from_row(applied, idempotent_replay=True)

                active = await SubscriptionsRepo.get_active_for_user_for_update(session, user_id)
                if active is not None:
                    self._renew(
                        active,
                        amount_minor=amount_minor,
                        payment_reference=payment_reference,
                        customer_code=customer_code,
                        now_utc=now_utc,
                    )
                    await SubscriptionsRepo.record_payment(
                        session,
                        subscription_id=active.id,
                        payment_reference=payment_reference,
                        kind="renewed",
                        applied_at=now_utc,
                    )
                    logger.info(
                        "subscription_renewed",
                        subscription_id=str(active.id),
                        user_id=user_id,
                        end_date=active.end_date.isoformat() if active.end_date else None,
                    )
                    return SubscriptionView.from_row(active)

                trialing = await SubscriptionsRepo.get_trialing_for_user_for_update(session, user_id)
                if trialing is not None:
                    self._start_cycle(trialing, now_utc=now_utc)
                    trialing.status = SubscriptionStatus.ACTIVE.value
                    trialing.plan_name = plan_name
                    trialing.amount_minor = amount_minor
                    trialing.currency = currency
                    trialing.last_payment_reference = payment_reference
                    if customer_code is not None:
                        trialing.provider_customer_code = customer_code
                    await SubscriptionsRepo.record_payment(
                        session,
                        subscription_id=trialing.id,
                        payment_reference=payment_reference,
                        kind="converted",
                        applied_at=now_utc,
                    )
                    logger.info(
                        "subscription_trial_converted",
                        subscription_id=str(trialing.id),
                        user_id=user_id,
                    )
                    return SubscriptionView.from_row(trialing)

                row = await self._insert_active(
                    session,
                    user_id=user_id,
                    plan_name=plan_name,
                    amount_minor=amount_minor,
                    currency=currency,
                    payment_reference=payment_reference,
                    customer_code=customer_code,
                    now_utc=now_utc,
                )
                return SubscriptionView.from_row(row)
        except IntegrityError:
            return await self._renew_after_conflict(
                user_id=user_id,
                amount_minor=amount_minor,
                payment_reference=payment_reference,
                customer_code=customer_code,
                now_utc=now_utc,
            )

    async def start_trial(
        self,
        *,
        user_id: str,
        plan_name: str,
        trial_days: int,
        now_utc: datetime,
        currency: str = "NGN",
    ) -> SubscriptionView:
        if trial_days <= 0:
            raise SubscriptionTransitionError("trial_days must be positive")
        async with self._session_factory.begin() as session:
            active = await SubscriptionsRepo.get_active_for_user_for_update(session, user_id)
            trialing = await SubscriptionsRepo.get_trialing_for_user_for_update(session, user_id)
            if active is not None or trialing is not None:
                raise SubscriptionTransitionError(f"user {user_id} already has a live subscription")

            end_date = now_utc + timedelta(days=trial_days)
            row = await SubscriptionsRepo.create(
                session,
                subscription=Subscription(
                    id=uuid4(),
                    user_id=user_id,
                    status=SubscriptionStatus.TRIALING.value,
                    plan_name=plan_name,
                    amount_minor=0,
                    currency=currency,
                    cycle_days=self._cycle_days,
                    start_date=now_utc,
                    end_date=end_date,
                    next_billing_date=end_date,
                    cancel_at_period_end=False,
                    created_at=now_utc,
                    updated_at=now_utc,
                ),
            )
            logger.info("subscription_trial_started", subscription_id=str(row.id), user_id=user_id)
            return SubscriptionView.from_row(row)

    async def cancel(self, subscription_id: UUID, *, now_utc: datetime) -> SubscriptionView:
        async with self._session_factory.begin() as session:
            row = await SubscriptionsRepo.get_by_id_for_update(session, subscription_id)
            if row is None:
                raise SubscriptionNotFoundError(str(subscription_id))
            if row.status != SubscriptionStatus.ACTIVE.value or row.cancel_at_period_end:
                raise SubscriptionTransitionError(
                    f"subscription {subscription_id} cannot be canceled from {row.status}"
                )
            row.cancel_at_period_end = True
            row.canceled_at = now_utc
            row.updated_at = now_utc
            await session.flush()
            view = SubscriptionView.from_row(row)

        logger.info(
            "subscription_cancel_scheduled",
            subscription_id=str(subscription_id),
            end_date=view.end_date.isoformat() if view.end_date else None,
        )
        if view.provider_subscription_id and self._provider is not None:
            try:
                await self._provider.cancel_subscription(view.provider_subscription_id)
            except BillingError as exc:
                logger.warning(
                    "subscription_provider_disable_failed",
                    subscription_id=str(subscription_id),
                    provider_subscription_id=view.provider_subscription_id,
                    error_type=type(exc).__name__,
                )
        return view

    async def expire_sweep(self, subscription_id: UUID, *, now_utc: datetime) -> SweepOutcome:
        async with self._session_factory.begin() as session:
            row = await SubscriptionsRepo.get_by_id_for_update(session, subscription_id)
            if row is None:
                raise SubscriptionNotFoundError(str(subscription_id))
            if row.status not in SWEEPABLE_STATUSES:
                return SweepOutcome.UNCHANGED

            end_date = self.legacy_end_date(row)
            if now_utc < end_date:
                return SweepOutcome.UNCHANGED

            if row.cancel_at_period_end:
                target = SweepOutcome.CANCELED
            elif row.status == SubscriptionStatus.TRIALING.value or now_utc >= end_date + self._grace:
                target = SweepOutcome.EXPIRED
            else:
                return SweepOutcome.UNCHANGED

            changed = await SubscriptionsRepo.transition_status(
                session,
                subscription_id=subscription_id,
                from_status=row.status,
                to_status=target.value,
                now_utc=now_utc,
            )
        if not changed:
            return SweepOutcome.UNCHANGED
        logger.info(
            "subscription_swept",
            subscription_id=str(subscription_id),
            outcome=target.value,
        )
        return target

    async def sweep_due(self, *, now_utc: datetime, limit: int = DEFAULT_SWEEP_BATCH) -> SweepReport:
        async with self._session_factory.begin() as session:
            due_ids = await SubscriptionsRepo.list_due_ids(session, now_utc=now_utc, limit=limit)

        report = SweepReport()
        for subscription_id in due_ids:
            report.checked += 1
            try:
                outcome = await self.expire_sweep(subscription_id, now_utc=now_utc)
            except SubscriptionNotFoundError:
                continue
            if outcome == SweepOutcome.CANCELED:
                report.canceled += 1
            elif outcome == SweepOutcome.EXPIRED:
                report.expired += 1
        return report

    async def restore(
        self,
        subscription_id: UUID,
        *,
        actor: str,
        now_utc: datetime,
    ) -> SubscriptionView:
        try:
            async with self._session_factory.begin() as session:
                row = await SubscriptionsRepo.get_by_id_for_update(session, subscription_id)
                if row is None:
                    raise SubscriptionNotFoundError(str(subscription_id))
                if row.status == SubscriptionStatus.ACTIVE.value and not row.cancel_at_period_end:
                    raise SubscriptionTransitionError(f"subscription {subscription_id} is already active")

                other_active = await SubscriptionsRepo.get_active_for_user_for_update(session, row.user_id)
                if other_active is not None and other_active.id != row.id:
                    raise SubscriptionTransitionError(
                        f"user {row.user_id} already has another active subscription"
                    )

                previous_status = row.status
                if row.end_date is None or row.end_date <= now_utc:
                    self._start_cycle(row, now_utc=now_utc)
                else:
                    row.next_billing_date = row.end_date
                row.status = SubscriptionStatus.ACTIVE.value
                row.cancel_at_period_end = False
                row.canceled_at = None
                row.restored_at = now_utc
                row.restored_by = actor
                row.updated_at = now_utc
                await session.flush()
                view = SubscriptionView.from_row(row)
        except IntegrityError as exc:
            raise SubscriptionTransitionError(
                f"subscription {subscription_id} lost a race with another activation"
            ) from exc

        logger.info(
            "subscription_restored",
            subscription_id=str(subscription_id),
            user_id=view.user_id,
            actor=actor,
            previous_status=previous_status,
            end_date=view.end_date.isoformat() if view.end_date else None,
        )
        return view

    async def attach_provider_subscription(
        self,
        *,
        customer_code: str,
        provider_subscription_id: str,
        next_payment_date: datetime | None,
        now_utc: datetime,
    ) -> SubscriptionView | None:
        async with self._session_factory.begin() as session:
            row = await SubscriptionsRepo.get_latest_by_customer_code_for_update(session, customer_code)
            if row is None:
                logger.warning(
                    "subscription_provider_attach_unmatched",
                    customer_code=customer_code,
                    provider_subscription_id=provider_subscription_id,
                )
                return None
            row.provider_subscription_id = provider_subscription_id
            if next_payment_date is not None:
                row.next_billing_date = next_payment_date
            row.updated_at = now_utc
            await session.flush()
            return SubscriptionView.from_row(row)

    async def mark_provider_disabled(
        self,
        *,
        provider_subscription_id: str,
        now_utc: datetime,
    ) -> SubscriptionView | None:
        async with self._session_factory.begin() as session:
            row = await SubscriptionsRepo.get_by_provider_subscription_id_for_update(
                session,
                provider_subscription_id,
            )
            if row is None:
                logger.warning(
                    "subscription_provider_disable_unmatched",
                    provider_subscription_id=provider_subscription_id,
                )
                return None
            if row.status == SubscriptionStatus.ACTIVE.value and not row.cancel_at_period_end:
                row.cancel_at_period_end = True
                row.canceled_at = now_utc
                row.updated_at = now_utc
                await session.flush()
                logger.info(
                    "subscription_provider_disabled",
                    subscription_id=str(row.id),
                    provider_subscription_id=provider_subscription_id,
                )
            return SubscriptionView.from_row(row)

    async def user_for_customer_code(self, customer_code: str) -> str | None:
        async with self._session_factory.begin() as session:
            row = await SubscriptionsRepo.get_latest_by_customer_code_for_update(session, customer_code)
        return row.user_id if row is not None else None

    async def list_for_user(self, user_id: str, *, limit: int = 10) -> list[SubscriptionView]:
        async with self._session_factory() as session:
            rows = await SubscriptionsRepo.list_for_user(session, user_id=user_id, limit=limit)
        return [SubscriptionView.from_row(row) for row in rows]

    def _start_cycle(self, row: Subscription, *, now_utc: datetime) -> None:
        row.start_date = now_utc
        row.end_date = now_utc + self._cycle
        row.next_billing_date = row.end_date
        row.cycle_days = self._cycle_days
        row.updated_at = now_utc

    def _renew(
        self,
        row: Subscription,
        *,
        amount_minor: int,
        payment_reference: str | None,
        customer_code: str | None,
        now_utc: datetime,
    ) -> None:
        row.end_date = self.legacy_end_date(row) + self._cycle
        row.next_billing_date = row.end_date
        row.cancel_at_period_end = False
        row.canceled_at = None
        row.amount_minor = amount_minor
        if payment_reference is not None:
            row.last_payment_reference = payment_reference
        if customer_code is not None:
            row.provider_customer_code = customer_code
        row.updated_at = now_utc

    async def _insert_active(
        self,
        session: AsyncSession,
        *,
        user_id: str,
        plan_name: str,
        amount_minor: int,
        currency: str,
        payment_reference: str | None,
        customer_code: str | None,
        now_utc: datetime,
    ) -> Subscription:
        end_date = now_utc + self._cycle
        row = await SubscriptionsRepo.create(
            session,
            subscription=Subscription(
                id=uuid4(),
                user_id=user_id,
                status=SubscriptionStatus.ACTIVE.value,
                plan_name=plan_name,
                amount_minor=amount_minor,
                currency=currency,
                cycle_days=self._cycle_days,
                start_date=now_utc,
                end_date=end_date,
                next_billing_date=end_date,
                cancel_at_period_end=False,
                provider_customer_code=customer_code,
                last_payment_reference=payment_reference,
                created_at=now_utc,
                updated_at=now_utc,
            ),
        )
        if payment_reference is not None:
            await SubscriptionsRepo.record_payment(
                session,
                subscription_id=row.id,
                payment_reference=payment_reference,
                kind="created",
                applied_at=now_utc,
            )
        logger.info(
            "subscription_created",
            subscription_id=str(row.id),
            user_id=user_id,
            plan_name=plan_name,
            end_date=end_date.isoformat(),
        )
        return row

    async def _renew_after_conflict(
        self,
        *,
        user_id: str,
        amount_minor: int,
        payment_reference: str,
        customer_code: str | None,
        now_utc: datetime,
    ) -> SubscriptionView:
        # the loser of a concurrent first payment is applied as a renewal of the winner
        try:
            async with self._session_factory.begin() as session:
                applied = await SubscriptionsRepo.get_by_applied_payment_reference(session, payment_reference)
                if applied is not None:
                    return SubscriptionView.from_row(applied, idempotent_replay=True)
                active = await SubscriptionsRepo.get_active_for_user_for_update(session, user_id)
                if active is None:
                    raise PersistenceError(
                        f"subscription insert for user {user_id} conflicted but no active row was found"
                    )
                self._renew(
                    active,
                    amount_minor=amount_minor,
                    payment_reference=payment_reference,
                    customer_code=customer_code,
                    now_utc=now_utc,
                )
                await SubscriptionsRepo.record_payment(
                    session,
                    subscription_id=active.id,
                    payment_reference=payment_reference,
                    kind="renewed",
                    applied_at=now_utc,
                )
                view = SubscriptionView.from_row(active)
        except IntegrityError as exc:
            async with self._session_factory.begin() as session:
                applied = await SubscriptionsRepo.get_by_applied_payment_reference(session, payment_reference)
            if applied is None:
                raise PersistenceError(f"payment {payment_reference} could not be applied") from exc
            return SubscriptionView.from_row(applied, idempotent_replay=True)

        logger.info(
            "subscription_create_conflict_renewed",
            subscription_id=str(view.subscription_id),
            user_id=user_id,
        )
        return view
