"""Stripe wrapper behind a small provider protocol."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Protocol

import stripe

from core.env import env_str
from core.env_utils import require_env_vars
from core.errors import BillingError, ValidationError
from services.billing_types import Plan, ProviderSubscription

logger = logging.getLogger(__name__)


class PaymentProviderError(BillingError):
    """Raised when the payment provider rejects or cannot serve a request."""

    def __init__(self, message: str, *, provider_code: Optional[str] = None) -> None:
        context = {"providerCode": provider_code} if provider_code else {}
        super().__init__(code="PAYMENT_PROVIDER_ERROR", message=message, context=context)


class WebhookSignatureError(ValidationError):
    def __init__(self, message: str = "Webhook signature verification failed.") -> None:
        super().__init__(code="INVALID_SIGNATURE", message=message)


@dataclass(frozen=True, slots=True)
class CheckoutSessionResult:
    session_id: str
    url: str
    customer_id: Optional[str] = None


class PaymentProvider(Protocol):
    def create_customer(self, user_id: str, *, email: Optional[str] = None) -> str: ...

    def create_checkout_session(
        self,
        *,
        user_id: str,
        plan: Plan,
        customer_id: Optional[str],
        success_url: str,
        cancel_url: str,
    ) -> CheckoutSessionResult: ...

    def retrieve_subscription(self, subscription_id: str) -> Optional[ProviderSubscription]: ...

    def set_cancel_at_period_end(self, subscription_id: str, cancel: bool) -> Optional[ProviderSubscription]: ...

    def construct_event(self, payload: bytes, signature: str) -> Mapping[str, Any]: ...


def _to_dict(obj: Any) -> Dict[str, Any]:
    if obj is None:
        return {}
    if hasattr(obj, "to_dict"):
        return obj.to_dict()
    return dict(obj)


class StripePaymentProvider:
    """Stripe-backed provider. Calls are blocking; callers run them off the event loop."""

    def __init__(self, secret_key: str, *, webhook_secret: Optional[str] = None) -> None:
        self._secret_key = secret_key
        self._webhook_secret = webhook_secret
        stripe.api_key = secret_key

    def create_customer(self, user_id: str, *, email: Optional[str] = None) -> str:
        try:
            customer = stripe.Customer.create(email=email, metadata={"userId": user_id})
        except stripe.StripeError as exc:
            logger.warning("Stripe customer creation failed for user=%s: %s", user_id, exc)
            raise PaymentProviderError("Unable to create payment customer.", provider_code=getattr(exc, "code", None)) from exc
        logger.info("Created Stripe customer", extra={"user_id": user_id, "customer_id": customer.id})
        return customer.id

    def create_checkout_session(
        self,
        *,
        user_id: str,
        plan: Plan,
        customer_id: Optional[str],
        success_url: str,
        cancel_url: str,
    ) -> CheckoutSessionResult:
        if not plan.stripe_price_id:
            raise ValidationError(
                code="PLAN_NOT_PURCHASABLE",
                message=f"Plan '{plan.id}' has no price configured.",
                context={"planId": plan.id},
            )
        metadata = {"userId": user_id, "planId": plan.id}
        try:
            # No trial_period_days: trials are granted by the application only.
            session = stripe.checkout.Session.create(
                mode="subscription",
                customer=customer_id,
                line_items=[{"price": plan.stripe_price_id, "quantity": 1}],
                success_url=success_url,
                cancel_url=cancel_url,
                client_reference_id=user_id,
                metadata=metadata,
                subscription_data={"metadata": metadata},
            )
        except stripe.StripeError as exc:
            logger.warning("Stripe checkout creation failed for user=%s plan=%s: %s", user_id, plan.id, exc)
            raise PaymentProviderError("Unable to create checkout session.", provider_code=getattr(exc, "code", None)) from exc
        return CheckoutSessionResult(session_id=session.id, url=session.url, customer_id=customer_id)

    def retrieve_subscription(self, subscription_id: str) -> Optional[ProviderSubscription]:
        if not subscription_id:
            return None
        try:
            raw = stripe.Subscription.retrieve(subscription_id)
        except stripe.StripeError as exc:
            logger.warning("Stripe subscription lookup failed for %s: %s", subscription_id, exc)
            raise PaymentProviderError("Unable to load subscription from provider.", provider_code=getattr(exc, "code", None)) from exc
        return ProviderSubscription.from_stripe(_to_dict(raw))

    def set_cancel_at_period_end(self, subscription_id: str, cancel: bool) -> Optional[ProviderSubscription]:
        try:
            raw = stripe.Subscription.modify(subscription_id, cancel_at_period_end=cancel)
        except stripe.StripeError as exc:
            logger.warning("Stripe subscription update failed for %s: %s", subscription_id, exc)
            raise PaymentProviderError("Unable to update subscription at provider.", provider_code=getattr(exc, "code", None)) from exc
        return ProviderSubscription.from_stripe(_to_dict(raw))

    def construct_event(self, payload: bytes, signature: str) -> Mapping[str, Any]:
        if not self._webhook_secret:
            raise RuntimeError("STRIPE_WEBHOOK_SECRET is not configured.")
        if not signature:
            raise WebhookSignatureError("Missing Stripe-Signature header.")
        try:
            event = stripe.Webhook.construct_event(payload, signature, self._webhook_secret)
        except ValueError as exc:
            raise WebhookSignatureError("Webhook payload is not valid JSON.") from exc
        except stripe.SignatureVerificationError as exc:
            raise WebhookSignatureError() from exc
        return _to_dict(event)


def get_stripe_provider() -> StripePaymentProvider:
    require_env_vars(["STRIPE_SECRET_KEY", "STRIPE_WEBHOOK_SECRET"], context="stripe")
    return StripePaymentProvider(env_str("STRIPE_SECRET_KEY"), webhook_secret=env_str("STRIPE_WEBHOOK_SECRET"))


__all__ = [
    "CheckoutSessionResult",
    "PaymentProvider",
    "PaymentProviderError",
    "StripePaymentProvider",
    "WebhookSignatureError",
    "get_stripe_provider",
]
