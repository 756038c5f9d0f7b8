"""Applies Stripe webhook events to local subscription state.

The local subscription row is the source of truth for plan identity. Events
only confirm or reject payment for a plan the application already proposed,
so an event for a user without a row is logged and dropped.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Tuple

from core.errors import SubscriptionWriteError, TransientStoreError
from services import billing_metrics
from services.billing_store import BillingStore, PaymentRecord, WebhookEventEntry
from services.billing_types import Plan, ProviderSubscription, Subscription, parse_datetime
from services.payments.checkout_context_store import CheckoutContextStore
from services.payments.stripe_provider import PaymentProvider, PaymentProviderError
from services.plan_catalog_service import PlanCatalog
from services.quota_service import QuotaService
from services.subscription_state import (
    apply_checkout_completed,
    apply_payment_failed,
    apply_payment_succeeded,
    apply_subscription_deleted,
    apply_subscription_updated,
    is_stale_transition,
)

logger = logging.getLogger(__name__)

CHECKOUT_COMPLETED = "checkout.session.completed"
PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
PAYMENT_FAILED = "invoice.payment_failed"
SUBSCRIPTION_UPDATED = "customer.subscription.updated"
SUBSCRIPTION_DELETED = "customer.subscription.deleted"

RESULT_APPLIED = "applied"
RESULT_IGNORED = "ignored_event_type"
RESULT_MALFORMED = "malformed"
RESULT_MISSING_SUBSCRIPTION = "missing_subscription"
RESULT_STALE = "stale"
RESULT_WRITE_FAILED = "write_failed"

# Receives the current row and the plan its pending checkout proposed, if any.
Transition = Callable[[Subscription, Optional[Plan]], Optional[Subscription]]


@dataclass(frozen=True)
class WebhookOutcome:
    event_id: Optional[str]
    event_type: Optional[str]
    result: str
    user_id: Optional[str] = None
    message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "eventId": self.event_id,
            "eventType": self.event_type,
            "result": self.result,
            "userId": self.user_id,
            "message": self.message,
        }


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_mapping(value: Any) -> Mapping[str, Any]:
    return value if isinstance(value, Mapping) else {}


def _metadata_value(metadata: Mapping[str, Any], *keys: str) -> Optional[str]:
    for key in keys:
        value = metadata.get(key)
        if value is not None and str(value).strip():
            return str(value).strip()
    return None


def _user_id_from(metadata: Mapping[str, Any]) -> Optional[str]:
    return _metadata_value(metadata, "userId", "user_id")


def _plan_id_from(metadata: Mapping[str, Any]) -> Optional[str]:
    return _metadata_value(metadata, "planId", "plan_id")


def _object_id(value: Any) -> Optional[str]:
    if isinstance(value, str):
        return value or None
    return _as_mapping(value).get("id")


def _invoice_subscription_id(invoice: Mapping[str, Any]) -> Optional[str]:
    subscription_id = _object_id(invoice.get("subscription"))
    if subscription_id:
        return subscription_id
    details = _as_mapping(_as_mapping(invoice.get("parent")).get("subscription_details"))
    return _object_id(details.get("subscription"))


def _invoice_metadata(invoice: Mapping[str, Any]) -> Mapping[str, Any]:
    candidates = [
        _as_mapping(invoice.get("subscription_details")).get("metadata"),
        _as_mapping(_as_mapping(invoice.get("parent")).get("subscription_details")).get("metadata"),
        _as_mapping(invoice.get("subscription")).get("metadata"),
    ]
    lines = _as_mapping(invoice.get("lines")).get("data") or []
    if lines:
        candidates.append(_as_mapping(lines[0]).get("metadata"))
    for candidate in candidates:
        metadata = _as_mapping(candidate)
        if _user_id_from(metadata):
            return metadata
    return {}


def _invoice_period(invoice: Mapping[str, Any], subscription_id: Optional[str]) -> ProviderSubscription:
    lines = _as_mapping(invoice.get("lines")).get("data") or []
    period = _as_mapping(_as_mapping(lines[0]).get("period")) if lines else {}
    return ProviderSubscription(
        id=subscription_id,
        status=None,
        current_period_start=parse_datetime(period.get("start")),
        current_period_end=parse_datetime(period.get("end")),
    )


class WebhookReconciler:
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
        self._handlers: Dict[str, Callable[[Mapping[str, Any], datetime], Awaitable[Tuple[str, Optional[str], Optional[str]]]]] = {
            CHECKOUT_COMPLETED: self._on_checkout_completed,
            PAYMENT_SUCCEEDED: self._on_payment_succeeded,
            PAYMENT_FAILED: self._on_payment_failed,
            SUBSCRIPTION_UPDATED: self._on_subscription_updated,
            SUBSCRIPTION_DELETED: self._on_subscription_deleted,
        }

    async def handle_event(self, event: Mapping[str, Any], *, replay: bool = False) -> WebhookOutcome:
        """Apply one provider event and record its outcome.

        Raises ``SubscriptionWriteError`` when the subscription row could not be
        written; the delivery must then be retried by the provider.
        """
        event_id = event.get("id")
        event_type = event.get("type")
        data_object = _as_mapping(_as_mapping(event.get("data")).get("object"))
        now = self._clock()
        # Transitions are stamped with the provider's event time so a redelivery
        # reproduces the same row.
        occurred_at = parse_datetime(event.get("created")) or now
        log_context = {"event_id": event_id, "event_type": event_type, "replay": replay}

        handler = self._handlers.get(str(event_type or ""))
        if handler is None:
            logger.info("Ignoring unsupported Stripe webhook event.", extra={"webhook": log_context})
            outcome = WebhookOutcome(event_id, event_type, RESULT_IGNORED)
            await self._record(outcome, event, now, replay=replay)
            return outcome

        try:
            result, user_id, message = await handler(data_object, occurred_at)
        except SubscriptionWriteError as exc:
            billing_metrics.record_subscription_write_failure(event_type)
            logger.error(
                "Subscription write failed for webhook event.",
                extra={"webhook": {**log_context, "user_id": exc.context.get("userId")}},
            )
            await self._record(
                WebhookOutcome(event_id, event_type, RESULT_WRITE_FAILED, exc.context.get("userId"), exc.message),
                event,
                now,
                replay=replay,
            )
            exc.context.setdefault("eventId", event_id)
            raise

        outcome = WebhookOutcome(event_id, event_type, result, user_id, message)
        if result == RESULT_MALFORMED:
            logger.warning("Dropping malformed Stripe webhook: %s", message, extra={"webhook": log_context})
        elif result == RESULT_MISSING_SUBSCRIPTION:
            logger.warning(
                "Stripe webhook references a user without a subscription row.",
                extra={"webhook": {**log_context, "user_id": user_id}},
            )
        else:
            logger.info("Stripe webhook processed: %s", result, extra={"webhook": {**log_context, "user_id": user_id}})
        await self._record(outcome, event, now, replay=replay)
        return outcome

    async def _record(self, outcome: WebhookOutcome, event: Mapping[str, Any], now: datetime, *, replay: bool) -> None:
        result = f"replay_{outcome.result}" if replay else outcome.result
        billing_metrics.record_webhook_result(outcome.event_type, result)
        entry = WebhookEventEntry(
            event_id=outcome.event_id,
            event_type=outcome.event_type,
            result=result,
            user_id=outcome.user_id,
            message=outcome.message,
            payload=dict(event),
            processed_at=now,
        )
        try:
            await asyncio.to_thread(self._store.webhook_events.record, entry)
        except (TransientStoreError, TypeError, ValueError) as exc:
            logger.error("Failed to persist webhook event log for %s: %s", outcome.event_id, exc)

    async def _transition(self, user_id: str, compute: Transition) -> Tuple[str, Optional[Subscription]]:
        """Read, recompute and compare-and-set the row, retrying once on conflict."""
        last_error: Optional[Exception] = None
        for attempt in range(2):
            try:
                current = await asyncio.to_thread(self._store.subscriptions.get, user_id)
                if current is None:
                    return RESULT_MISSING_SUBSCRIPTION, None
                pending_plan = await self._find_plan(current.pending_plan_id)
                proposed = compute(current, pending_plan)
                if proposed is None:
                    return RESULT_MISSING_SUBSCRIPTION, None
                if is_stale_transition(current, proposed):
                    return RESULT_STALE, current
                stored = await asyncio.to_thread(self._store.subscriptions.compare_and_set, proposed, current.version)
            except TransientStoreError as exc:
                last_error = exc
                logger.warning("Subscription store error for user=%s (attempt %d): %s", user_id, attempt + 1, exc)
                continue
            if stored is not None:
                return RESULT_APPLIED, stored
            logger.info("Subscription version conflict for user=%s; recomputing.", user_id)
        raise SubscriptionWriteError(
            f"Could not persist subscription update: {last_error or 'version conflict'}",
            user_id=user_id,
        )

    async def _find_plan(self, plan_id: Optional[str]) -> Optional[Plan]:
        if not plan_id:
            return None
        return await asyncio.to_thread(self._catalog.find_plan, plan_id)

    async def _retrieve_subscription(self, subscription_id: Optional[str]) -> Optional[ProviderSubscription]:
        if self._provider is None or not subscription_id:
            return None
        try:
            return await asyncio.to_thread(self._provider.retrieve_subscription, subscription_id)
        except PaymentProviderError as exc:
            logger.warning("Provider subscription lookup failed for %s: %s", subscription_id, exc)
            return None

    async def _on_checkout_completed(self, session: Mapping[str, Any], occurred_at: datetime):
        metadata = _as_mapping(session.get("metadata"))
        user_id = _user_id_from(metadata)
        plan_id = _plan_id_from(metadata)
        session_id = session.get("id")
        if not user_id:
            return RESULT_MALFORMED, None, "checkout session has no userId metadata"
        if not plan_id:
            return RESULT_MALFORMED, user_id, "checkout session has no planId metadata"

        context = None
        if self._checkout_contexts is not None:
            context = await asyncio.to_thread(self._checkout_contexts.get, session_id)
        if context is not None and (context.plan_id != plan_id or context.user_id != user_id):
            return RESULT_MALFORMED, user_id, f"checkout metadata does not match the issued session (plan {context.plan_id})"

        plan = await self._find_plan(plan_id)
        if plan is None:
            return RESULT_MALFORMED, user_id, f"unknown plan '{plan_id}'"

        subscription_ref = session.get("subscription")
        subscription_id = _object_id(subscription_ref)
        provider_subscription = None
        if isinstance(subscription_ref, Mapping):
            provider_subscription = ProviderSubscription.from_stripe(subscription_ref)
        if provider_subscription is None or provider_subscription.current_period_end is None:
            provider_subscription = await self._retrieve_subscription(subscription_id) or provider_subscription
        if provider_subscription is None:
            provider_subscription = ProviderSubscription(
                id=subscription_id, status=None, current_period_start=None, current_period_end=None
            )

        customer_id = _object_id(session.get("customer"))
        result, _ = await self._transition(
            user_id,
            lambda current, _pending: apply_checkout_completed(
                current,
                plan,
                provider_subscription,
                occurred_at,
                session_id=session_id,
                customer_id=customer_id,
            ),
        )
        if result == RESULT_APPLIED:
            await self._after_checkout(session, user_id, plan)
        return result, user_id, None

    async def _after_checkout(self, session: Mapping[str, Any], user_id: str, plan: Plan) -> None:
        session_id = session.get("id")
        if session_id:
            payment = PaymentRecord(
                user_id=user_id,
                stripe_session_id=session_id,
                amount=int(session.get("amount_total") or plan.price_cents),
                currency=str(session.get("currency") or plan.currency),
                status=str(session.get("payment_status") or "succeeded"),
            )
            try:
                await asyncio.to_thread(self._store.payments.record, payment)
            except TransientStoreError as exc:
                logger.warning("Could not record payment transaction for session %s: %s", session_id, exc)
            if self._checkout_contexts is not None:
                await asyncio.to_thread(self._checkout_contexts.pop, session_id)
        await self._quotas.initialize_quotas(user_id, plan)

    async def _resolve_invoice(
        self, invoice: Mapping[str, Any]
    ) -> Tuple[Optional[str], Optional[ProviderSubscription]]:
        subscription_id = _invoice_subscription_id(invoice)
        user_id = _user_id_from(_invoice_metadata(invoice))
        provider_subscription = await self._retrieve_subscription(subscription_id)
        if user_id is None and provider_subscription is not None:
            user_id = _user_id_from(provider_subscription.metadata)
        if provider_subscription is None:
            provider_subscription = _invoice_period(invoice, subscription_id)
        return user_id, provider_subscription

    async def _on_payment_succeeded(self, invoice: Mapping[str, Any], occurred_at: datetime):
        user_id, provider_subscription = await self._resolve_invoice(invoice)
        if not user_id:
            return RESULT_MALFORMED, None, "invoice has no userId metadata"
        paid_at = parse_datetime(_as_mapping(invoice.get("status_transitions")).get("paid_at")) or occurred_at
        result, _ = await self._transition(
            user_id,
            lambda current, pending_plan: apply_payment_succeeded(current, provider_subscription, paid_at, pending_plan),
        )
        return result, user_id, None

    async def _on_payment_failed(self, invoice: Mapping[str, Any], occurred_at: datetime):
        user_id, _provider_subscription = await self._resolve_invoice(invoice)
        if not user_id:
            return RESULT_MALFORMED, None, "invoice has no userId metadata"
        result, _ = await self._transition(user_id, lambda current, _pending: apply_payment_failed(current))
        return result, user_id, None

    async def _on_subscription_updated(self, raw: Mapping[str, Any], occurred_at: datetime):
        provider_subscription = ProviderSubscription.from_stripe(raw)
        user_id = _user_id_from(provider_subscription.metadata)
        if not user_id:
            return RESULT_MALFORMED, None, "subscription has no userId metadata"
        result, _ = await self._transition(
            user_id,
            lambda current, pending_plan: apply_subscription_updated(current, provider_subscription, pending_plan),
        )
        return result, user_id, None

    async def _on_subscription_deleted(self, raw: Mapping[str, Any], occurred_at: datetime):
        provider_subscription = ProviderSubscription.from_stripe(raw)
        user_id = _user_id_from(provider_subscription.metadata)
        if not user_id:
            return RESULT_MALFORMED, None, "subscription has no userId metadata"
        canceled_at = parse_datetime(raw.get("canceled_at")) or occurred_at
        result, _ = await self._transition(
            user_id,
            lambda current, _pending: apply_subscription_deleted(current, canceled_at),
        )
        return result, user_id, None


__all__ = [
    "CHECKOUT_COMPLETED",
    "PAYMENT_FAILED",
    "PAYMENT_SUCCEEDED",
    "RESULT_APPLIED",
    "RESULT_IGNORED",
    "RESULT_MALFORMED",
    "RESULT_MISSING_SUBSCRIPTION",
    "RESULT_STALE",
    "RESULT_WRITE_FAILED",
    "SUBSCRIPTION_DELETED",
    "SUBSCRIPTION_UPDATED",
    "WebhookOutcome",
    "WebhookReconciler",
]
