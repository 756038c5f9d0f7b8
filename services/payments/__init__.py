"""Payment provider integration: Stripe client, checkout contexts and webhook reconciliation."""

from .stripe_provider import (
    CheckoutSessionResult,
    PaymentProvider,
    PaymentProviderError,
    StripePaymentProvider,
    WebhookSignatureError,
    get_stripe_provider,
)

__all__ = [
    "CheckoutSessionResult",
    "PaymentProvider",
    "PaymentProviderError",
    "StripePaymentProvider",
    "WebhookSignatureError",
    "get_stripe_provider",
]
