from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from uuid import UUID


class ProductType(str, Enum):
    COURSE = "course"
    LEARNING_PATH = "learning_path"
    SUBSCRIPTION = "subscription"
    LIVE_CLASS = "live_class"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


class SubscriptionStatus(str, Enum):
    TRIALING = "trialing"
    ACTIVE = "active"
    CANCELED = "canceled"
    EXPIRED = "expired"


class ReconciliationStatus(str, Enum):
    GRANTED = "GRANTED"
    FINALIZING = "FINALIZING"
    NOT_GRANTED = "NOT_GRANTED"


class PurchaseSource(str, Enum):
    CHECKOUT = "checkout"
    ADMIN_MANUAL = "admin_manual"


@dataclass(slots=True, frozen=True)
class CheckoutMetadata:
    product_id: str
    product_type: ProductType
    buyer_id: str | None = None
    plan_name: str | None = None
    buyer_name: str | None = None
    product_name: str | None = None

    def to_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {
            "product_id": self.product_id,
            "product_type": self.product_type.value,
        }
        for key in ("buyer_id", "plan_name", "buyer_name", "product_name"):
            value = getattr(self, key)
            if value is not None:
                payload[key] = value
        return payload

    @classmethod
    def from_dict(cls, payload: dict[str, object]) -> CheckoutMetadata:
        def _optional(key: str) -> str | None:
            value = payload.get(key)
            if value is None:
                return None
            text = str(value).strip()
            return text or None

        return cls(
            product_id=str(payload["product_id"]),
            product_type=ProductType(str(payload["product_type"])),
            buyer_id=_optional("buyer_id"),
            plan_name=_optional("plan_name"),
            buyer_name=_optional("buyer_name"),
            product_name=_optional("product_name"),
        )


@dataclass(slots=True, frozen=True)
class VerifiedTransaction:
    reference: str
    status: PaymentStatus
    amount_minor: int
    currency: str
    customer_email: str
    metadata: CheckoutMetadata
    customer_code: str | None = None
    provider_transaction_id: str | None = None
    paid_at: datetime | None = None

    @property
    def is_subscription(self) -> bool:
        return self.metadata.product_type == ProductType.SUBSCRIPTION

    def to_payload(self) -> dict[str, object]:
        return {
            "reference": self.reference,
            "status": self.status.value,
            "amount_minor": self.amount_minor,
            "currency": self.currency,
            "customer_email": self.customer_email,
            "customer_code": self.customer_code,
            "provider_transaction_id": self.provider_transaction_id,
            "paid_at": self.paid_at.isoformat() if self.paid_at is not None else None,
            "metadata": self.metadata.to_dict(),
        }

    @classmethod
    def from_payload(cls, payload: dict[str, object]) -> VerifiedTransaction:
        raw_paid_at = payload.get("paid_at")
        raw_metadata = payload.get("metadata")
        if not isinstance(raw_metadata, dict):
            raise ValueError("payment event payload is missing metadata")
        return cls(
            reference=str(payload["reference"]),
            status=PaymentStatus(str(payload["status"])),
            amount_minor=int(payload["amount_minor"]),
            currency=str(payload["currency"]),
            customer_email=str(payload["customer_email"]),
            customer_code=(
                str(payload["customer_code"]) if payload.get("customer_code") is not None else None
            ),
            provider_transaction_id=(
                str(payload["provider_transaction_id"])
                if payload.get("provider_transaction_id") is not None
                else None
            ),
            paid_at=datetime.fromisoformat(str(raw_paid_at)) if raw_paid_at else None,
            metadata=CheckoutMetadata.from_dict(raw_metadata),
        )


@dataclass(slots=True, frozen=True)
class CheckoutSession:
    checkout_url: str
    reference: str
    access_code: str | None = None


@dataclass(slots=True)
class ReconciliationResult:
    purchase_id: UUID
    payment_reference: str
    payment_status: PaymentStatus
    access_granted: bool
    access_token: str
    access_link: str
    status: ReconciliationStatus
    idempotent_replay: bool
    subscription_id: UUID | None = None
    mismatch_id: int | None = None


@dataclass(slots=True)
class LinkResult:
    linked_count: int
    purchase_ids: list[UUID] = field(default_factory=list)


@dataclass(slots=True, frozen=True)
class AccessNotification:
    email: str
    name: str
    product_name: str
    access_link: str
