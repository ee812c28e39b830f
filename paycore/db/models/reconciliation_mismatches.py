from __future__ import annotations

from datetime import datetime
from uuid import UUID

from sqlalchemy import CheckConstraint, ForeignKey, Index, String, Text, Uuid, text
from sqlalchemy.orm import Mapped, mapped_column

from paycore.db.models.base import Base, BigIntPK, UTCDateTime


class ReconciliationMismatch(Base):
    __tablename__ = "reconciliation_mismatches"
    __table_args__ = (
        CheckConstraint("status IN ('OPEN','RESOLVED')", name="ck_reconciliation_mismatches_status"),
        Index("idx_reconciliation_mismatches_purchase", "purchase_id"),
        Index(
            "idx_reconciliation_mismatches_open",
            "created_at",
            postgresql_where=text("status = 'OPEN'"),
            sqlite_where=text("status = 'OPEN'"),
        ),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    purchase_id: Mapped[UUID] = mapped_column(Uuid(), ForeignKey("purchases.id"), nullable=False)
    payment_reference: Mapped[str] = mapped_column(String(128), nullable=False)
    step: Mapped[str] = mapped_column(String(32), nullable=False)
    error_type: Mapped[str] = mapped_column(String(64), nullable=False)
    detail: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    resolved_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    resolved_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
