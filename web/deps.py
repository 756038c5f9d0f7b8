"""Shared FastAPI dependencies and the billing service container."""

from __future__ import annotations

import hmac
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Optional

from fastapi import Depends, HTTPException, Request, status

from core.env import env_int, env_str
from core.logging import get_logger
from services.billing_store import BillingStore
from services.payments.checkout_context_store import CheckoutContextStore
from services.payments.stripe_provider import PaymentProvider, get_stripe_provider
from services.payments.webhook_reconciler import WebhookReconciler
from services.plan_catalog_service import PlanCatalog
from services.quota_service import QuotaService
from services.subscription_service import SubscriptionService
from services.ttl_store import TTLStore, build_ttl_store

logger = get_logger(__name__)


@dataclass
class BillingServices:
    store: BillingStore
    catalog: PlanCatalog
    quotas: QuotaService
    subscriptions: SubscriptionService
    reconciler: WebhookReconciler
    checkout_contexts: CheckoutContextStore
    provider: Optional[PaymentProvider] = None


def build_billing_services(
    store: Optional[BillingStore] = None,
    *,
    provider: Optional[PaymentProvider] = None,
    ttl_store: Optional[TTLStore] = None,
    quotas: Optional[QuotaService] = None,
    clock: Optional[Callable[[], datetime]] = None,
) -> BillingServices:
    """Wire the billing services. Defaults come from the environment."""
    if store is None:
        from services.billing_store_sql import SqlBillingStore

        store = SqlBillingStore()
    if provider is None and env_str("STRIPE_SECRET_KEY"):
        provider = get_stripe_provider()
    if provider is None:
        logger.warning("STRIPE_SECRET_KEY not configured; checkout and webhooks are disabled.")
    if ttl_store is None:
        ttl_store = build_ttl_store(env_str("BILLING_REDIS_URL"))

    catalog = PlanCatalog(store.plans)
    clock_kwargs = {"clock": clock} if clock is not None else {}
    quotas = quotas or QuotaService(store, catalog, **clock_kwargs)
    checkout_contexts = CheckoutContextStore(
        ttl_store,
        ttl_seconds=env_int("CHECKOUT_CONTEXT_TTL_SECONDS", 72 * 3600, minimum=60),
    )
    return BillingServices(
        store=store,
        catalog=catalog,
        quotas=quotas,
        subscriptions=SubscriptionService(
            store,
            catalog,
            quotas,
            provider=provider,
            checkout_contexts=checkout_contexts,
            **clock_kwargs,
        ),
        reconciler=WebhookReconciler(
            store,
            catalog,
            quotas,
            provider=provider,
            checkout_contexts=checkout_contexts,
            **clock_kwargs,
        ),
        checkout_contexts=checkout_contexts,
        provider=provider,
    )


def get_billing_services(request: Request) -> BillingServices:
    services = getattr(request.app.state, "billing", None)
    if services is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"code": "billing.unavailable", "message": "Billing services are not initialised."},
        )
    return services


def get_quota_service(services: BillingServices = Depends(get_billing_services)) -> QuotaService:
    return services.quotas


def get_subscription_service(services: BillingServices = Depends(get_billing_services)) -> SubscriptionService:
    return services.subscriptions


def _user_id_from_state(user: Any) -> Optional[str]:
    if user is None:
        return None
    if isinstance(user, dict):
        value = user.get("id") or user.get("user_id")
    else:
        value = getattr(user, "id", None) or getattr(user, "user_id", None)
    return str(value) if value else None


def get_current_user_id(request: Request) -> str:
    """Return the id of the user authenticated upstream.

    Authentication happens before this service: either a middleware stores the
    user on ``request.state.user`` or the gateway forwards ``X-User-Id``.
    """
    user_id = _user_id_from_state(getattr(request.state, "user", None))
    if not user_id:
        header = (request.headers.get("x-user-id") or "").strip()
        user_id = header or None
    if not user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"code": "auth.required", "message": "Authentication is required."},
        )
    return user_id


def require_admin(request: Request) -> str:
    """Validate the operator bearer token and return the acting admin id."""
    expected = env_str("ADMIN_API_TOKEN")
    if not expected:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"code": "admin.disabled", "message": "ADMIN_API_TOKEN is not configured."},
        )
    header = request.headers.get("authorization") or ""
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not hmac.compare_digest(token.strip(), expected):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"code": "admin.forbidden", "message": "A valid admin token is required."},
        )
    return (request.headers.get("x-admin-id") or "admin").strip() or "admin"


__all__ = [
    "BillingServices",
    "build_billing_services",
    "get_billing_services",
    "get_current_user_id",
    "get_quota_service",
    "get_subscription_service",
    "require_admin",
]
