from .billing import (  # noqa: F401
    BillingWebhookEvent,
    PaymentTransaction,
    SubscriptionPlan,
    UsageQuota,
    UserSubscription,
)
