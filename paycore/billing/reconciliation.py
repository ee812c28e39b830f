"""Turns a verified provider transaction into a durable purchase and access grant.

Every step that can fail after money has been captured is classified as fatal
or advisory. Fatal failures (the journal or purchase write) are logged at
critical level with the full payload, alerted on and re-raised; the journal row
stays RECEIVED so the replay worker can pick it up. Advisory failures (the
subscription step, the access notification) never undo the grant.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from uuid import UUID, uuid4

import structlog
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from paycore.billing.dedup import DuplicateGuard, build_dedup_key, build_identity_key
from paycore.billing.errors import (
    BillingError,
    MismatchNotFoundError,
    PaymentEventNotFoundError,
    PaymentValidationError,
    PersistenceError,
    PurchaseNotFoundError,
)
from paycore.billing.initiation import normalize_email
from paycore.billing.links import build_access_link
from paycore.billing.references import generate_access_token
from paycore.billing.subscriptions import SubscriptionLifecycleManager, SubscriptionView
from paycore.billing.types import (
    AccessNotification,
    CheckoutMetadata,
    PaymentStatus,
    ProductType,
    PurchaseSource,
    ReconciliationResult,
    ReconciliationStatus,
    VerifiedTransaction,
)
from paycore.core.logging import bind_payment_context, clear_payment_context
from paycore.db.models.purchases import Purchase
from paycore.db.repo.payment_events_repo import PaymentEventsRepo
from paycore.db.repo.purchases_repo import PurchasesRepo
from paycore.db.repo.reconciliation_mismatches_repo import ReconciliationMismatchesRepo
from paycore.db.repo.subscriptions_repo import SubscriptionsRepo
from paycore.providers.base import ProviderTransaction
from paycore.services.alerts import send_ops_alert
from paycore.services.notifications import AccessNotifier

logger = structlog.get_logger(__name__)

SUBSCRIPTION_STEP = "subscription_activation"
DEFAULT_PLAN_NAME = "standard"
MAX_REPLAY_ATTEMPTS = 3

AlertSender = Callable[..., Awaitable[bool]]


class FailureClass(str, Enum):
    FATAL = "fatal"
    ADVISORY = "advisory"


@dataclass(slots=True, frozen=True)
class JournalEntry:
    event_id: int
    already_processed: bool


class ReconciliationEngine:
    def __init__(
        self,
        *,
        session_factory: async_sessionmaker[AsyncSession],
        subscriptions: SubscriptionLifecycleManager,
        notifier: AccessNotifier,
        site_url: str,
        alert_sender: AlertSender = send_ops_alert,
    ) -> None:
        self._session_factory = session_factory
        self._subscriptions = subscriptions
        self._notifier = notifier
        self._site_url = site_url
        self._alert_sender = alert_sender
        self._guard = DuplicateGuard(session_factory=session_factory)

    async def reconcile(
        self,
        verified: VerifiedTransaction,
        *,
        source: PurchaseSource = PurchaseSource.CHECKOUT,
        now_utc: datetime | None = None,
    ) -> ReconciliationResult:
        now = now_utc or datetime.now(timezone.utc)
        bind_payment_context(payment_reference=verified.reference, source=source.value)
        try:
            journal = await self._journal(verified, source=source, now_utc=now)
            result = await self._reconcile_journaled(
                verified,
                source=source,
                journal=journal,
                now_utc=now,
            )
            await self._mark_processed(journal.event_id, now_utc=now)
            return result
        finally:
            clear_payment_context()

    async def replay_event(self, event_id: int, *, now_utc: datetime | None = None) -> ReconciliationResult:
        async with self._session_factory.begin() as session:
            event = await PaymentEventsRepo.get_by_id_for_update(session, event_id)
            if event is None:
                raise PaymentEventNotFoundError(str(event_id))
            payload = dict(event.payload)
            source = PurchaseSource(event.source)

        try:
            verified = VerifiedTransaction.from_payload(payload)
        except (KeyError, TypeError, ValueError) as exc:
            raise PaymentValidationError(f"payment event {event_id} payload is unreadable") from exc

        logger.info("payment_event_replay_started", event_id=event_id, reference=verified.reference)
        return await self.reconcile(verified, source=source, now_utc=now_utc)

    async def record_replay_failure(
        self,
        event_id: int,
        *,
        error: BaseException,
        now_utc: datetime,
        max_attempts: int = MAX_REPLAY_ATTEMPTS,
    ) -> str:
        async with self._session_factory.begin() as session:
            event = await PaymentEventsRepo.get_by_id_for_update(session, event_id)
            if event is None:
                raise PaymentEventNotFoundError(str(event_id))
            event.attempts += 1
            event.last_error = f"{type(error).__name__}: {error}"[:1000]
            if event.attempts >= max_attempts:
                event.status = "REVIEW"
            reference = event.reference
            attempts = event.attempts
            status = event.status

        if status == "REVIEW":
            logger.error(
                "payment_event_review_required",
                event_id=event_id,
                reference=reference,
                attempts=attempts,
            )
            await self._alert_sender(
                event="payments_event_review_required",
                payload={"event_id": event_id, "reference": reference, "attempts": attempts},
            )
        return status

    async def hold_unattributed(
        self,
        transaction: ProviderTransaction,
        *,
        reason: str,
        now_utc: datetime | None = None,
    ) -> int:
        """Journal a captured charge that cannot be tied to a buyer or product.

        The row is written straight to REVIEW so the replay worker leaves it to
        an operator, and the raw provider payload is kept for manual repair.
        """
        now = now_utc or datetime.now(timezone.utc)
        payload: dict[str, object] = {
            "reference": transaction.reference,
            "status": transaction.status,
            "amount_minor": transaction.amount_minor,
            "currency": transaction.currency,
            "customer_email": transaction.customer_email,
            "customer_code": transaction.customer_code,
            "provider_transaction_id": transaction.transaction_id,
            "paid_at": transaction.paid_at.isoformat() if transaction.paid_at else None,
            "metadata": dict(transaction.metadata),
            "unattributed": True,
        }
        logger.critical(
            "payment_unattributed",
            reference=transaction.reference,
            reason=reason,
            payload=payload,
        )
        try:
            async with self._session_factory.begin() as session:
                existing = await PaymentEventsRepo.get_by_reference_for_update(session, transaction.reference)
                if existing is None:
                    event = await PaymentEventsRepo.create(
                        session,
                        reference=transaction.reference,
                        source=PurchaseSource.CHECKOUT.value,
                        payload=payload,
                        received_at=now,
                        status="REVIEW",
                        last_error=reason[:1000],
                    )
                    event_id = event.id
                else:
                    if existing.status != "PROCESSED":
                        existing.status = "REVIEW"
                        existing.last_error = reason[:1000]
                    event_id = existing.id
        except SQLAlchemyError as exc:
            logger.critical(
                "reconciliation_persistence_failed",
                failure_class=FailureClass.FATAL.value,
                step="journal",
                reference=transaction.reference,
                error_type=type(exc).__name__,
                payload=payload,
            )
            await self._alert_sender(
                event="payments_persistence_failed",
                payload={"reference": transaction.reference, "step": "journal", "error_type": type(exc).__name__},
            )
            raise PersistenceError(f"could not journal payment {transaction.reference}") from exc

        await self._alert_sender(
            event="payments_unattributed_charge",
            payload={
                "event_id": event_id,
                "reference": transaction.reference,
                "amount_minor": transaction.amount_minor,
                "currency": transaction.currency,
                "customer_code": transaction.customer_code,
                "reason": reason,
            },
        )
        return event_id

    async def repair_mismatch(
        self,
        mismatch_id: int,
        *,
        actor: str,
        now_utc: datetime | None = None,
    ) -> ReconciliationResult:
        now = now_utc or datetime.now(timezone.utc)
        async with self._session_factory.begin() as session:
            mismatch = await ReconciliationMismatchesRepo.get_by_id_for_update(session, mismatch_id)
            if mismatch is None:
                raise MismatchNotFoundError(str(mismatch_id))
            purchase = await PurchasesRepo.get_by_id(session, mismatch.purchase_id)
            if purchase is None:
                raise PurchaseNotFoundError(str(mismatch.purchase_id))
            event = await PaymentEventsRepo.get_by_reference(session, purchase.payment_reference)
            already_resolved = mismatch.status == "RESOLVED"
            journal_payload = dict(event.payload) if event is not None else None

        if already_resolved:
            subscription_id = await self._applied_subscription_id(purchase.payment_reference)
            return self._as_result(
                purchase,
                idempotent_replay=True,
                subscription_id=subscription_id,
            )

        verified = self._verified_for_repair(purchase, journal_payload)
        try:
            view = await self._activate_subscription(purchase, verified, now_utc=now)
        except (BillingError, SQLAlchemyError) as exc:
            async with self._session_factory.begin() as session:
                mismatch = await ReconciliationMismatchesRepo.get_by_id_for_update(session, mismatch_id)
                if mismatch is not None:
                    mismatch.detail = f"repair by {actor} failed: {type(exc).__name__}: {exc}"[:1000]
            logger.warning(
                "reconciliation_mismatch_repair_failed",
                mismatch_id=mismatch_id,
                actor=actor,
                error_type=type(exc).__name__,
            )
            raise

        async with self._session_factory.begin() as session:
            mismatch = await ReconciliationMismatchesRepo.get_by_id_for_update(session, mismatch_id)
            if mismatch is not None:
                mismatch.status = "RESOLVED"
                mismatch.resolved_at = now
                mismatch.resolved_by = actor

        logger.info(
            "reconciliation_mismatch_repaired",
            mismatch_id=mismatch_id,
            actor=actor,
            subscription_id=str(view.subscription_id),
        )
        return self._as_result(purchase, idempotent_replay=False, subscription_id=view.subscription_id)

    async def _journal(
        self,
        verified: VerifiedTransaction,
        *,
        source: PurchaseSource,
        now_utc: datetime,
    ) -> JournalEntry:
        payload = verified.to_payload()
        try:
            try:
                async with self._session_factory.begin() as session:
                    existing = await PaymentEventsRepo.get_by_reference_for_update(session, verified.reference)
                    if existing is None:
                        event = await PaymentEventsRepo.create(
                            session,
                            reference=verified.reference,
                            source=source.value,
                            payload=payload,
                            received_at=now_utc,
                        )
                        return JournalEntry(event_id=event.id, already_processed=False)

                    if existing.payload.get("status") != payload["status"] and (
                        verified.status != PaymentStatus.PENDING
                    ):
                        # a definitive outcome supersedes a journaled pending one
                        existing.payload = payload
                        existing.status = "RECEIVED"
                        return JournalEntry(event_id=existing.id, already_processed=False)
                    return JournalEntry(
                        event_id=existing.id,
                        already_processed=existing.status == "PROCESSED",
                    )
            except IntegrityError:
                async with self._session_factory.begin() as session:
                    existing = await PaymentEventsRepo.get_by_reference(session, verified.reference)
                if existing is None:
                    raise
                return JournalEntry(
                    event_id=existing.id,
                    already_processed=existing.status == "PROCESSED",
                )
        except SQLAlchemyError as exc:
            await self._handle_failure(
                FailureClass.FATAL,
                step="journal",
                exc=exc,
                verified=verified,
            )
            raise PersistenceError(f"could not journal payment {verified.reference}") from exc

    async def _reconcile_journaled(
        self,
        verified: VerifiedTransaction,
        *,
        source: PurchaseSource,
        journal: JournalEntry,
        now_utc: datetime,
    ) -> ReconciliationResult:
        metadata = verified.metadata
        buyer_email = normalize_email(verified.customer_email)
        identity_key = build_identity_key(buyer_id=metadata.buyer_id, email=buyer_email)
        dedup_key = build_dedup_key(
            identity_key=identity_key,
            product_id=metadata.product_id,
            product_type=metadata.product_type.value,
            payment_reference=verified.reference,
        )

        try:
            async with self._session_factory.begin() as session:
                existing = await DuplicateGuard.find_existing(
                    session,
                    dedup_key=dedup_key,
                    payment_reference=verified.reference,
                )
            if existing is None:
                purchase, created = await self._guard.insert_or_reread(
                    purchase=self._build_purchase(
                        verified,
                        source=source,
                        buyer_email=buyer_email,
                        identity_key=identity_key,
                        dedup_key=dedup_key,
                        now_utc=now_utc,
                    ),
                    now_utc=now_utc,
                )
            else:
                purchase, created = existing, False

            if not created:
                purchase, created = await self._settle_pending(purchase, verified, now_utc=now_utc)
        except (SQLAlchemyError, PersistenceError) as exc:
            await self._handle_failure(FailureClass.FATAL, step="purchase", exc=exc, verified=verified)
            if isinstance(exc, PersistenceError):
                raise
            raise PersistenceError(f"could not persist purchase {verified.reference}") from exc

        if created:
            logger.info(
                "purchase_recorded",
                purchase_id=str(purchase.id),
                payment_status=purchase.payment_status,
                access_granted=purchase.access_granted,
                product_id=purchase.product_id,
                product_type=purchase.product_type,
            )
        else:
            logger.info("purchase_replay", purchase_id=str(purchase.id))

        subscription_id = None
        mismatch_id = None
        if purchase.access_granted and metadata.product_type == ProductType.SUBSCRIPTION:
            subscription_id = await self._applied_subscription_id(purchase.payment_reference)
            mismatch_id = await self._open_mismatch_id(purchase)
            if subscription_id is None and mismatch_id is None and (created or not journal.already_processed):
                subscription_id, mismatch_id = await self._run_subscription_step(
                    purchase,
                    verified,
                    now_utc=now_utc,
                )

        result = self._as_result(
            purchase,
            idempotent_replay=not created,
            subscription_id=subscription_id,
            mismatch_id=mismatch_id,
        )
        if created and purchase.access_granted:
            self._notify(purchase, metadata, access_link=result.access_link)
        return result

    async def _settle_pending(
        self,
        purchase: Purchase,
        verified: VerifiedTransaction,
        *,
        now_utc: datetime,
    ) -> tuple[Purchase, bool]:
        if purchase.payment_status != PaymentStatus.PENDING.value or verified.status == PaymentStatus.PENDING:
            return purchase, False
        if purchase.payment_reference != verified.reference:
            return purchase, False

        async with self._session_factory.begin() as session:
            row = await PurchasesRepo.get_by_id_for_update(session, purchase.id)
            if row is None or row.payment_status != PaymentStatus.PENDING.value:
                return (row or purchase), False
            row.payment_status = verified.status.value
            row.provider_transaction_id = verified.provider_transaction_id or row.provider_transaction_id
            if verified.status == PaymentStatus.SUCCESS:
                row.access_granted = True
                row.access_granted_at = now_utc
                row.paid_at = verified.paid_at or now_utc
            row.updated_at = now_utc
        logger.info(
            "purchase_pending_settled",
            purchase_id=str(row.id),
            payment_status=row.payment_status,
        )
        return row, True

    def _build_purchase(
        self,
        verified: VerifiedTransaction,
        *,
        source: PurchaseSource,
        buyer_email: str,
        identity_key: str,
        dedup_key: str,
        now_utc: datetime,
    ) -> Purchase:
        metadata = verified.metadata
        is_success = verified.status == PaymentStatus.SUCCESS
        return Purchase(
            id=uuid4(),
            buyer_id=metadata.buyer_id,
            buyer_email=buyer_email,
            identity_key=identity_key,
            dedup_key=dedup_key,
            product_id=metadata.product_id,
            product_type=metadata.product_type.value,
            amount_paid_minor=verified.amount_minor,
            currency=verified.currency,
            payment_reference=verified.reference,
            provider_transaction_id=verified.provider_transaction_id,
            payment_status=verified.status.value,
            source=source.value,
            access_granted=is_success,
            access_token=generate_access_token(),
            access_granted_at=now_utc if is_success else None,
            paid_at=(verified.paid_at or now_utc) if is_success else None,
        )

    async def _run_subscription_step(
        self,
        purchase: Purchase,
        verified: VerifiedTransaction,
        *,
        now_utc: datetime,
    ) -> tuple[UUID | None, int | None]:
        try:
            view = await self._activate_subscription(purchase, verified, now_utc=now_utc)
            return view.subscription_id, None
        except (BillingError, SQLAlchemyError) as exc:
            await self._handle_failure(
                FailureClass.ADVISORY,
                step=SUBSCRIPTION_STEP,
                exc=exc,
                verified=verified,
            )
            mismatch_id = await self._record_mismatch(purchase, exc=exc, now_utc=now_utc)
            return None, mismatch_id

    async def _activate_subscription(
        self,
        purchase: Purchase,
        verified: VerifiedTransaction,
        *,
        now_utc: datetime,
    ) -> SubscriptionView:
        user_id = purchase.buyer_id or verified.metadata.buyer_id
        if not user_id:
            raise PaymentValidationError("subscription purchases need an account to attach to")
        return await self._subscriptions.activate_from_payment(
            user_id=user_id,
            plan_name=verified.metadata.plan_name or DEFAULT_PLAN_NAME,
            amount_minor=purchase.amount_paid_minor,
            currency=purchase.currency,
            payment_reference=purchase.payment_reference,
            customer_code=verified.customer_code,
            now_utc=now_utc,
        )

    async def _record_mismatch(
        self,
        purchase: Purchase,
        *,
        exc: BaseException,
        now_utc: datetime,
    ) -> int | None:
        try:
            async with self._session_factory.begin() as session:
                mismatch = await ReconciliationMismatchesRepo.create(
                    session,
                    purchase_id=purchase.id,
                    payment_reference=purchase.payment_reference,
                    step=SUBSCRIPTION_STEP,
                    error_type=type(exc).__name__,
                    detail=str(exc)[:1000] or None,
                    created_at=now_utc,
                )
                mismatch_id = mismatch.id
        except SQLAlchemyError:
            logger.critical(
                "reconciliation_mismatch_record_failed",
                purchase_id=str(purchase.id),
                exc_info=True,
            )
            mismatch_id = None

        await self._alert_sender(
            event="payments_subscription_step_failed",
            payload={
                "purchase_id": str(purchase.id),
                "payment_reference": purchase.payment_reference,
                "mismatch_id": mismatch_id,
                "error_type": type(exc).__name__,
            },
        )
        return mismatch_id

    async def _applied_subscription_id(self, payment_reference: str) -> UUID | None:
        async with self._session_factory() as session:
            row = await SubscriptionsRepo.get_by_applied_payment_reference(session, payment_reference)
        return row.id if row is not None else None

    async def _open_mismatch_id(self, purchase: Purchase) -> int | None:
        async with self._session_factory() as session:
            mismatch = await ReconciliationMismatchesRepo.get_open_for_purchase(
                session,
                purchase_id=purchase.id,
                step=SUBSCRIPTION_STEP,
            )
        return mismatch.id if mismatch is not None else None

    async def _mark_processed(self, event_id: int, *, now_utc: datetime) -> None:
        try:
            async with self._session_factory.begin() as session:
                event = await PaymentEventsRepo.get_by_id_for_update(session, event_id)
                if event is not None:
                    event.status = "PROCESSED"
                    event.processed_at = now_utc
        except SQLAlchemyError:
            # replaying a processed payment is a no-op, so the worker can retry this
            logger.warning("payment_event_mark_processed_failed", event_id=event_id, exc_info=True)

    def _notify(self, purchase: Purchase, metadata: CheckoutMetadata, *, access_link: str) -> None:
        notification = AccessNotification(
            email=purchase.buyer_email,
            name=metadata.buyer_name or purchase.buyer_email.split("@", maxsplit=1)[0],
            product_name=metadata.product_name or purchase.product_id,
            access_link=access_link,
        )
        try:
            self._notifier.notify(notification)
        except Exception:
            logger.warning(
                "access_notification_dispatch_failed",
                purchase_id=str(purchase.id),
                exc_info=True,
            )

    async def _handle_failure(
        self,
        failure_class: FailureClass,
        *,
        step: str,
        exc: BaseException,
        verified: VerifiedTransaction,
    ) -> None:
        if failure_class == FailureClass.ADVISORY:
            logger.warning(
                "reconciliation_step_failed",
                failure_class=failure_class.value,
                step=step,
                reference=verified.reference,
                error_type=type(exc).__name__,
            )
            return

        logger.critical(
            "reconciliation_persistence_failed",
            failure_class=failure_class.value,
            step=step,
            reference=verified.reference,
            error_type=type(exc).__name__,
            payload=verified.to_payload(),
        )
        await self._alert_sender(
            event="payments_persistence_failed",
            payload={"reference": verified.reference, "step": step, "error_type": type(exc).__name__},
        )

    def _verified_for_repair(
        self,
        purchase: Purchase,
        journal_payload: dict[str, object] | None,
    ) -> VerifiedTransaction:
        if journal_payload is not None:
            try:
                return VerifiedTransaction.from_payload(journal_payload)
            except (KeyError, TypeError, ValueError):
                logger.warning("payment_event_payload_unreadable", reference=purchase.payment_reference)
        return VerifiedTransaction(
            reference=purchase.payment_reference,
            status=PaymentStatus(purchase.payment_status),
            amount_minor=purchase.amount_paid_minor,
            currency=purchase.currency,
            customer_email=purchase.buyer_email,
            metadata=CheckoutMetadata(
                product_id=purchase.product_id,
                product_type=ProductType(purchase.product_type),
                buyer_id=purchase.buyer_id,
            ),
            provider_transaction_id=purchase.provider_transaction_id,
            paid_at=purchase.paid_at,
        )

    def _as_result(
        self,
        purchase: Purchase,
        *,
        idempotent_replay: bool,
        subscription_id: UUID | None = None,
        mismatch_id: int | None = None,
    ) -> ReconciliationResult:
        if not purchase.access_granted:
            status = ReconciliationStatus.NOT_GRANTED
        elif mismatch_id is not None:
            status = ReconciliationStatus.FINALIZING
        else:
            status = ReconciliationStatus.GRANTED

        return ReconciliationResult(
            purchase_id=purchase.id,
            payment_reference=purchase.payment_reference,
            payment_status=PaymentStatus(purchase.payment_status),
            access_granted=purchase.access_granted,
            access_token=purchase.access_token,
            access_link=build_access_link(
                site_url=self._site_url,
                purchase_id=purchase.id,
                token=purchase.access_token,
                product_type=purchase.product_type,
                product_id=purchase.product_id,
            ),
            status=status,
            idempotent_replay=idempotent_replay,
            subscription_id=subscription_id,
            mismatch_id=mismatch_id,
        )
