from __future__ import annotations

from datetime import datetime
from uuid import UUID

from sqlalchemy import CheckConstraint, ForeignKey, Index, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from paycore.db.models.base import Base, BigIntPK, UTCDateTime


class SubscriptionPayment(Base):
    """One row per payment reference that has moved a subscription's period."""

    __tablename__ = "subscription_payments"
    __table_args__ = (
        CheckConstraint(
            "kind IN ('created','renewed','converted')",
            name="ck_subscription_payments_kind",
        ),
        Index("idx_subscription_payments_subscription", "subscription_id"),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    subscription_id: Mapped[UUID] = mapped_column(Uuid(), ForeignKey("subscriptions.id"), nullable=False)
    payment_reference: Mapped[str] = mapped_column(String(128), unique=True, nullable=False)
    kind: Mapped[str] = mapped_column(String(16), nullable=False)
    applied_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
