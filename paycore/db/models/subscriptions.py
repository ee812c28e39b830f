from __future__ import annotations

from datetime import datetime
from uuid import UUID

from sqlalchemy import Boolean, CheckConstraint, Index, String, Uuid, text
from sqlalchemy.orm import Mapped, mapped_column

from paycore.db.models.base import Base, UTCDateTime


class Subscription(Base):
    __tablename__ = "subscriptions"
    __table_args__ = (
        CheckConstraint(
            "status IN ('trialing','active','canceled','expired')",
            name="ck_subscriptions_status",
        ),
        CheckConstraint("cycle_days > 0", name="ck_subscriptions_cycle_positive"),
        CheckConstraint("amount_minor >= 0", name="ck_subscriptions_amount_non_negative"),
        Index("idx_subscriptions_user_created", "user_id", "created_at"),
        Index("idx_subscriptions_status_end", "status", "end_date"),
        Index("idx_subscriptions_provider_subscription", "provider_subscription_id"),
        Index("idx_subscriptions_provider_customer", "provider_customer_code"),
        Index(
            "uq_subscriptions_active_per_user",
            "user_id",
            unique=True,
            postgresql_where=text("status = 'active'"),
            sqlite_where=text("status = 'active'"),
        ),
    )

    id: Mapped[UUID] = mapped_column(Uuid(), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    plan_name: Mapped[str] = mapped_column(String(128), nullable=False)
    amount_minor: Mapped[int] = mapped_column(nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, server_default=text("'NGN'"))
    cycle_days: Mapped[int] = mapped_column(nullable=False, server_default=text("30"))
    start_date: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    end_date: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    next_billing_date: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    cancel_at_period_end: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        server_default=text("false"),
    )
    canceled_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    provider_subscription_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    provider_customer_code: Mapped[str | None] = mapped_column(String(64), nullable=True)
    last_payment_reference: Mapped[str | None] = mapped_column(String(128), nullable=True)
    restored_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    restored_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
