from __future__ import annotations

from datetime import datetime

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from paycore.billing.errors import PaymentValidationError
from paycore.billing.initiation import normalize_email
from paycore.billing.types import LinkResult
from paycore.db.repo.purchases_repo import PurchasesRepo

logger = structlog.get_logger(__name__)


class GuestLinker:
    def __init__(self, *, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def link(self, *, user_id: str, email: str, now_utc: datetime) -> LinkResult:
        user_id = (user_id or "").strip()
        if not user_id:
            raise PaymentValidationError("user_id is required")
        buyer_email = normalize_email(email)

        async with self._session_factory.begin() as session:
            purchase_ids = await PurchasesRepo.link_guest_purchases(
                session,
                buyer_id=user_id,
                buyer_email=buyer_email,
                now_utc=now_utc,
            )

        if purchase_ids:
            logger.info(
                "guest_purchases_linked",
                user_id=user_id,
                linked_count=len(purchase_ids),
            )
        return LinkResult(linked_count=len(purchase_ids), purchase_ids=purchase_ids)
