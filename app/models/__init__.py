from app.models.billing import (  # noqa: F401
    BillingInterval,
    BillingPlan,
    Payment,
    PaymentStatus,
    Subscription,
    SubscriptionHistory,
    SubscriptionHistoryAction,
    SubscriptionStatus,
)
