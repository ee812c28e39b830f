from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from uuid import UUID

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from paycore.billing.amounts import to_minor
from paycore.billing.errors import PaymentValidationError, PurchaseNotFoundError
from paycore.billing.initiation import normalize_email
from paycore.billing.reconciliation import ReconciliationEngine
from paycore.billing.references import MANUAL_REFERENCE_PREFIX, generate_reference, tokens_match
from paycore.billing.types import (
    CheckoutMetadata,
    PaymentStatus,
    ProductType,
    PurchaseSource,
    ReconciliationResult,
    VerifiedTransaction,
)
from paycore.db.repo.purchases_repo import PurchasesRepo

logger = structlog.get_logger(__name__)


@dataclass(slots=True, frozen=True)
class AccessCheck:
    granted: bool
    purchase_id: UUID
    product_id: str | None = None
    product_type: ProductType | None = None


class AccessGrantor:
    def __init__(
        self,
        *,
        session_factory: async_sessionmaker[AsyncSession],
        engine: ReconciliationEngine,
        currency: str = "NGN",
    ) -> None:
        self._session_factory = session_factory
        self._engine = engine
        self._currency = currency

    async def grant_manual_access(
        self,
        *,
        email: str,
        product_id: str,
        product_type: ProductType,
        amount_major: object,
        actor: str,
        buyer_id: str | None = None,
        buyer_name: str | None = None,
        product_name: str | None = None,
        plan_name: str | None = None,
        now_utc: datetime | None = None,
    ) -> ReconciliationResult:
        now = now_utc or datetime.now(timezone.utc)
        if not product_id.strip():
            raise PaymentValidationError("product_id is required")

        verified = VerifiedTransaction(
            reference=generate_reference(MANUAL_REFERENCE_PREFIX, now_utc=now),
            status=PaymentStatus.SUCCESS,
            amount_minor=to_minor(amount_major, currency=self._currency),
            currency=self._currency,
            customer_email=normalize_email(email),
            metadata=CheckoutMetadata(
                product_id=product_id.strip(),
                product_type=product_type,
                buyer_id=buyer_id,
                plan_name=plan_name,
                buyer_name=buyer_name,
                product_name=product_name,
            ),
            paid_at=now,
        )
        result = await self._engine.reconcile(verified, source=PurchaseSource.ADMIN_MANUAL, now_utc=now)
        logger.info(
            "access_granted_manually",
            purchase_id=str(result.purchase_id),
            actor=actor,
            product_id=product_id,
            product_type=product_type.value,
        )
        return result

    async def revoke_access(self, purchase_id: UUID, *, actor: str, now_utc: datetime) -> bool:
        async with self._session_factory.begin() as session:
            purchase = await PurchasesRepo.get_by_id_for_update(session, purchase_id)
            if purchase is None:
                raise PurchaseNotFoundError(str(purchase_id))
            if not purchase.access_granted:
                return False
            purchase.access_granted = False
            purchase.access_revoked_at = now_utc
            purchase.updated_at = now_utc

        logger.info("access_revoked", purchase_id=str(purchase_id), actor=actor)
        return True

    async def check_access(self, purchase_id: UUID, token: str | None) -> AccessCheck:
        async with self._session_factory() as session:
            purchase = await PurchasesRepo.get_by_id(session, purchase_id)
        if purchase is None or not tokens_match(purchase.access_token, token):
            return AccessCheck(granted=False, purchase_id=purchase_id)
        return AccessCheck(
            granted=purchase.access_granted,
            purchase_id=purchase_id,
            product_id=purchase.product_id,
            product_type=ProductType(purchase.product_type),
        )

    async def has_product_access(
        self,
        *,
        product_id: str,
        product_type: ProductType,
        buyer_id: str | None = None,
        email: str | None = None,
    ) -> bool:
        buyer_email = normalize_email(email) if email else None
        if buyer_id is None and buyer_email is None:
            raise PaymentValidationError("buyer_id or email is required")
        async with self._session_factory() as session:
            purchase = await PurchasesRepo.get_granted_for_product(
                session,
                buyer_id=buyer_id,
                buyer_email=buyer_email,
                product_id=product_id,
                product_type=product_type.value,
            )
        return purchase is not None
