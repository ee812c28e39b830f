from paycore.db.models.base import Base
from paycore.db.models.payment_events import PaymentEvent
from paycore.db.models.purchases import Purchase
from paycore.db.models.reconciliation_mismatches import ReconciliationMismatch
from paycore.db.models.reconciliation_runs import ReconciliationRun
from paycore.db.models.subscription_payments import SubscriptionPayment
from paycore.db.models.subscriptions import Subscription

__all__ = [
    "Base",
    "PaymentEvent",
    "Purchase",
    "ReconciliationMismatch",
    "ReconciliationRun",
    "Subscription",
    "SubscriptionPayment",
]
