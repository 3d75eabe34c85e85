"""Billing services package.

Subscription reconciliation: webhook ingest, activation, recovery, and the
supporting plan, checkout and lifecycle services.

    from app.services import billing as billing_service
    billing_service.activation.activate(db, request)
"""

from app.services.billing.activation import ActivationService
from app.services.billing.lifecycle import SubscriptionLifecycle
from app.services.billing.matcher import PaymentMatcher
from app.services.billing.plans import BillingPlans
from app.services.billing.recovery import RecoveryService
from app.services.billing.repository import (
    PaymentRepository,
    SubscriptionHistoryRepository,
    SubscriptionRepository,
)
from app.services.billing.subscriptions import Subscriptions

# Singleton instances for service access
activation = ActivationService()
lifecycle = SubscriptionLifecycle()
payment_matcher = PaymentMatcher()
plans = BillingPlans()
recovery = RecoveryService()
subscriptions = Subscriptions()

__all__ = [
    "ActivationService",
    "BillingPlans",
    "PaymentMatcher",
    "PaymentRepository",
    "RecoveryService",
    "SubscriptionHistoryRepository",
    "SubscriptionLifecycle",
    "SubscriptionRepository",
    "Subscriptions",
    "activation",
    "lifecycle",
    "payment_matcher",
    "plans",
    "recovery",
    "subscriptions",
]
