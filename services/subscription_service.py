"""User-facing subscription operations: trial, checkout, cancel, admin override."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Mapping, Optional

from core.billing_constants import TRIAL_PLAN_ID, SubscriptionStatus
from core.errors import ConflictError, ValidationError
from core.logging import get_logger
from services.billing_store import BillingStore
from services.billing_types import Plan, Subscription, isoformat_utc
from services.payments.checkout_context_store import CheckoutContextStore
from services.payments.stripe_provider import PaymentProvider, PaymentProviderError
from services.plan_catalog_service import PlanCatalog
from services.quota_service import QuotaService
from services.subscription_state import (
    TrialRejected,
    apply_admin_override,
    apply_cancel_request,
    apply_checkout_pending,
    apply_reactivate_request,
    is_period_elapsed,
    start_trial,
)

logger = get_logger(__name__)

Compute = Callable[[Optional[Subscription]], Subscription]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SubscriptionService:
    def __init__(
        self,
        store: BillingStore,
        catalog: PlanCatalog,
        quotas: QuotaService,
        *,
        provider: Optional[PaymentProvider] = None,
        checkout_contexts: Optional[CheckoutContextStore] = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._catalog = catalog
        self._quotas = quotas
        self._provider = provider
        self._checkout_contexts = checkout_contexts
        self._clock = clock

    async def _write(self, user_id: str, compute: Compute) -> Subscription:
        """Create or compare-and-set the user's row, recomputing once on conflict."""
        for _attempt in range(2):
            current = await asyncio.to_thread(self._store.subscriptions.get, user_id)
            proposed = compute(current)
            if current is None:
                if await asyncio.to_thread(self._store.subscriptions.create, proposed):
                    stored = await asyncio.to_thread(self._store.subscriptions.get, user_id)
                    return stored or proposed
            else:
                stored = await asyncio.to_thread(self._store.subscriptions.compare_and_set, proposed, current.version)
                if stored is not None:
                    return stored
            logger.info("Concurrent subscription update for user=%s; recomputing.", user_id)
        raise ConflictError(
            code="CONCURRENT_UPDATE",
            message="The subscription was changed by another request. Please retry.",
        )

    async def get_subscription_info(self, user_id: str) -> Dict[str, Any]:
        now = self._clock()
        context = await self._quotas.access_context(user_id, now)
        usage = await self._quotas.usage_summary(user_id, now)
        decision = context.decision
        return {
            "subscription": context.subscription.to_dict() if context.subscription else None,
            "plan": context.plan.to_dict(),
            "permissions": decision.permissions.to_dict(),
            "hasAccess": decision.has_access,
            "reason": decision.reason.value if decision.reason else None,
            "trialAvailable": decision.trial_available,
            "usage": {resource: snapshot.to_dict() for resource, snapshot in usage.items()},
        }

    async def start_trial(self, user_id: str, plan_id: Optional[str] = None) -> Subscription:
        plan = await asyncio.to_thread(self._catalog.get_plan, plan_id or TRIAL_PLAN_ID)
        if not plan.trial_days:
            raise ValidationError(
                code="INVALID_TRIAL_PLAN",
                message=f"Plan '{plan.id}' cannot be used for a free trial.",
                context={"planId": plan.id},
            )
        now = self._clock()

        def compute(current: Optional[Subscription]) -> Subscription:
            outcome = start_trial(current, user_id, now, plan=plan)
            if isinstance(outcome, TrialRejected):
                raise ConflictError(code=outcome.reason.value, message=outcome.message)
            return outcome.subscription

        subscription = await self._write(user_id, compute)
        logger.info("Trial started", extra={"user_id": user_id, "plan_id": plan.id, "trial_end": isoformat_utc(subscription.trial_end)})
        await self._quotas.initialize_quotas(user_id, plan, now)
        return subscription

    def _require_provider(self) -> PaymentProvider:
        if self._provider is None:
            raise PaymentProviderError("Payments are not configured.")
        return self._provider

    async def create_checkout_session(
        self,
        user_id: str,
        plan_id: str,
        *,
        success_url: str,
        cancel_url: str,
        email: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Create a provider checkout session for ``plan_id``.

        The pending row is persisted before the redirect URL is returned so
        that the completion webhook always finds it.
        """
        provider = self._require_provider()
        plan = await asyncio.to_thread(self._catalog.get_plan, plan_id)
        if plan.price_cents <= 0 or not plan.stripe_price_id:
            raise ValidationError(
                code="PLAN_NOT_PURCHASABLE",
                message=f"Plan '{plan.id}' cannot be purchased.",
                context={"planId": plan.id},
            )
        now = self._clock()
        current = await asyncio.to_thread(self._store.subscriptions.get, user_id)
        if self._has_paid_access(current, now):
            raise ConflictError(code="ALREADY_SUBSCRIBED", message="An active paid subscription already exists.")

        customer_id = current.stripe_customer_id if current else None
        if not customer_id:
            customer_id = await asyncio.to_thread(provider.create_customer, user_id, email=email)
        session = await asyncio.to_thread(
            provider.create_checkout_session,
            user_id=user_id,
            plan=plan,
            customer_id=customer_id,
            success_url=success_url,
            cancel_url=cancel_url,
        )

        await self._write(
            user_id,
            lambda row: apply_checkout_pending(row, user_id, plan, session_id=session.session_id, customer_id=customer_id),
        )
        if self._checkout_contexts is not None:
            await asyncio.to_thread(
                self._checkout_contexts.record, session_id=session.session_id, user_id=user_id, plan_id=plan.id
            )
        logger.info("Checkout session created", extra={"user_id": user_id, "plan_id": plan.id, "session_id": session.session_id})
        return {"sessionId": session.session_id, "url": session.url, "planId": plan.id}

    @staticmethod
    def _has_paid_access(subscription: Optional[Subscription], now: datetime) -> bool:
        return (
            subscription is not None
            and subscription.status is SubscriptionStatus.ACTIVE
            and not is_period_elapsed(subscription, now)
        )

    async def cancel(self, user_id: str) -> Subscription:
        now = self._clock()
        current = await asyncio.to_thread(self._store.subscriptions.get, user_id)
        if current is None or current.status not in (SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING):
            raise ConflictError(code="NO_ACTIVE_SUBSCRIPTION", message="There is no active subscription to cancel.")
        if current.status is SubscriptionStatus.ACTIVE and current.stripe_subscription_id:
            provider = self._require_provider()
            await asyncio.to_thread(provider.set_cancel_at_period_end, current.stripe_subscription_id, True)

        def compute(row: Optional[Subscription]) -> Subscription:
            if row is None:
                raise ConflictError(code="NO_ACTIVE_SUBSCRIPTION", message="There is no active subscription to cancel.")
            return apply_cancel_request(row, now)

        subscription = await self._write(user_id, compute)
        logger.info("Subscription cancel requested", extra={"user_id": user_id, "status": subscription.status.value})
        return subscription

    async def reactivate(self, user_id: str) -> Subscription:
        now = self._clock()
        current = await asyncio.to_thread(self._store.subscriptions.get, user_id)
        if current is None or not current.cancel_at_period_end or not self._has_paid_access(current, now):
            raise ConflictError(
                code="NOT_REACTIVATABLE",
                message="Only a paid subscription scheduled for cancellation can be reactivated.",
            )
        if current.stripe_subscription_id:
            provider = self._require_provider()
            await asyncio.to_thread(provider.set_cancel_at_period_end, current.stripe_subscription_id, False)

        def compute(row: Optional[Subscription]) -> Subscription:
            if row is None:
                raise ConflictError(code="NOT_REACTIVATABLE", message="The subscription no longer exists.")
            return apply_reactivate_request(row)

        return await self._write(user_id, compute)

    async def admin_override(
        self,
        user_id: str,
        fields: Mapping[str, Any],
        *,
        plan_id: Optional[str],
        admin_id: str,
    ) -> Subscription:
        plan: Optional[Plan] = None
        if plan_id:
            plan = await asyncio.to_thread(self._catalog.get_plan, plan_id)
        subscription = await self._write(
            user_id,
            lambda row: apply_admin_override(row, user_id, fields, plan=plan, admin_id=admin_id),
        )
        logger.warning(
            "Subscription overridden by admin",
            extra={"user_id": user_id, "admin_id": admin_id, "fields": sorted(fields), "plan_id": plan_id},
        )
        if plan is not None:
            await self._quotas.initialize_quotas(user_id, plan, self._clock())
        return subscription

    async def billing_history(self, user_id: str, *, page: int = 1, limit: int = 10) -> Dict[str, Any]:
        page = max(page, 1)
        limit = min(max(limit, 1), 100)
        records, total = await asyncio.to_thread(
            self._store.payments.list_for_user, user_id, offset=(page - 1) * limit, limit=limit
        )
        return {
            "transactions": [
                {
                    "sessionId": record.stripe_session_id,
                    "amount": record.amount,
                    "currency": record.currency,
                    "status": record.status,
                    "createdAt": isoformat_utc(record.created_at),
                }
                for record in records
            ],
            "total": total,
            "page": page,
            "limit": limit,
        }


__all__ = ["SubscriptionService"]
