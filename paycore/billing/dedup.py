from __future__ import annotations

import hashlib
from datetime import datetime

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from paycore.billing.errors import PersistenceError
from paycore.db.models.purchases import Purchase
from paycore.db.repo.purchases_repo import PurchasesRepo

logger = structlog.get_logger(__name__)


def build_identity_key(*, buyer_id: str | None, email: str) -> str:
    if buyer_id is not None and buyer_id.strip():
        return buyer_id.strip()
    return email.strip().lower()


def build_dedup_key(
    *,
    identity_key: str,
    product_id: str,
    product_type: str,
    payment_reference: str,
) -> str:
    raw = "|".join((identity_key, product_id, product_type, payment_reference))
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


class DuplicateGuard:
    def __init__(self, *, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    @staticmethod
    async def find_existing(
        session: AsyncSession,
        *,
        dedup_key: str,
        payment_reference: str,
    ) -> Purchase | None:
        existing = await PurchasesRepo.get_by_dedup_key(session, dedup_key)
        if existing is not None:
            return existing
        return await PurchasesRepo.get_by_payment_reference(session, payment_reference)

    async def insert_or_reread(self, *, purchase: Purchase, now_utc: datetime) -> tuple[Purchase, bool]:
        """Insert ``purchase`` or return the row that won the race for its keys.

        The boolean is True when this call created the row.
        """
        dedup_key = purchase.dedup_key
        payment_reference = purchase.payment_reference
        try:
            async with self._session_factory.begin() as session:
                await PurchasesRepo.create(session, purchase=purchase, created_at=now_utc)
            return purchase, True
        except IntegrityError:
            logger.info(
                "purchase_insert_conflict_reread",
                payment_reference=payment_reference,
                dedup_key=dedup_key,
            )

        async with self._session_factory.begin() as session:
            existing = await self.find_existing(
                session,
                dedup_key=dedup_key,
                payment_reference=payment_reference,
            )
        if existing is None:
            raise PersistenceError(
                f"purchase insert for {payment_reference} conflicted but no row was found"
            )
        return existing, False
