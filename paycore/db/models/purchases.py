from __future__ import annotations

from datetime import datetime
from uuid import UUID

from sqlalchemy import Boolean, CheckConstraint, Index, String, UniqueConstraint, Uuid, text
from sqlalchemy.orm import Mapped, mapped_column

from paycore.db.models.base import Base, UTCDateTime


class Purchase(Base):
    __tablename__ = "purchases"
    __table_args__ = (
        CheckConstraint(
            "product_type IN ('course','learning_path','subscription','live_class')",
            name="ck_purchases_product_type",
        ),
        CheckConstraint(
            "payment_status IN ('pending','success','failed')",
            name="ck_purchases_payment_status",
        ),
        CheckConstraint("source IN ('checkout','admin_manual')", name="ck_purchases_source"),
        CheckConstraint("amount_paid_minor >= 0", name="ck_purchases_amount_non_negative"),
        UniqueConstraint(
            "identity_key",
            "product_id",
            "product_type",
            "payment_reference",
            name="uq_purchases_identity_product_reference",
        ),
        Index("idx_purchases_buyer_product", "buyer_id", "product_id", "product_type"),
        Index("idx_purchases_email_product", "buyer_email", "product_id", "product_type"),
        Index(
            "idx_purchases_guest_email",
            "buyer_email",
            postgresql_where=text("buyer_id IS NULL"),
            sqlite_where=text("buyer_id IS NULL"),
        ),
        Index("idx_purchases_created", "created_at"),
    )

    id: Mapped[UUID] = mapped_column(Uuid(), primary_key=True)
    buyer_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    buyer_email: Mapped[str] = mapped_column(String(320), nullable=False)
    identity_key: Mapped[str] = mapped_column(String(320), nullable=False)
    dedup_key: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    product_id: Mapped[str] = mapped_column(String(64), nullable=False)
    product_type: Mapped[str] = mapped_column(String(16), nullable=False)
    amount_paid_minor: Mapped[int] = mapped_column(nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, server_default=text("'NGN'"))
    payment_reference: Mapped[str] = mapped_column(String(128), unique=True, nullable=False)
    provider_transaction_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    payment_status: Mapped[str] = mapped_column(String(16), nullable=False)
    source: Mapped[str] = mapped_column(String(16), nullable=False, server_default=text("'checkout'"))
    access_granted: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        server_default=text("false"),
    )
    access_token: Mapped[str] = mapped_column(String(128), unique=True, nullable=False)
    access_granted_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    access_revoked_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    paid_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
