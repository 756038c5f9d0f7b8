"""Subscription lifecycle rules.

Every function here is pure: it takes the current ``Subscription`` (or ``None``
when the user has no row) plus the inputs of a lifecycle event and returns the
next state. Persistence, retries and logging live in the callers.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Any, Mapping, Optional, Union

from core.billing_constants import (
    INACTIVE_STATUSES,
    TRIAL_PLAN_ID,
    AccessReason,
    SubscriptionStatus,
    TrialRejection,
)
from core.env import env_int
from core.errors import ConflictError
from services.billing_types import (
    FeatureFlags,
    PermissionDecision,
    Plan,
    ProviderSubscription,
    Subscription,
    as_utc,
)

TRIAL_DURATION = timedelta(hours=env_int("TRIAL_DURATION_HOURS", 72, minimum=1))

_TRIAL_REJECTION_MESSAGES = {
    TrialRejection.ALREADY_PAID: "An active paid subscription already exists.",
    TrialRejection.ALREADY_TRIALING: "A free trial is already running.",
    TrialRejection.TRIAL_ALREADY_USED: "The free trial has already been used on this account.",
}

# Provider statuses mirrored on customer.subscription.updated. A provider-side
# trial is never honoured, so "trialing" maps to active.
_PROVIDER_STATUS_MAP = {
    "active": SubscriptionStatus.ACTIVE,
    "trialing": SubscriptionStatus.ACTIVE,
    "past_due": SubscriptionStatus.PAST_DUE,
    "unpaid": SubscriptionStatus.PAST_DUE,
    "incomplete": SubscriptionStatus.PENDING,
    "canceled": SubscriptionStatus.CANCELED,
    "incomplete_expired": SubscriptionStatus.CANCELED,
}


@dataclass(frozen=True)
class TrialGrant:
    subscription: Subscription


@dataclass(frozen=True)
class TrialRejected:
    reason: TrialRejection

    @property
    def message(self) -> str:
        return _TRIAL_REJECTION_MESSAGES[self.reason]


TrialOutcome = Union[TrialGrant, TrialRejected]


def map_provider_status(raw: Optional[str]) -> Optional[SubscriptionStatus]:
    if not raw:
        return None
    return _PROVIDER_STATUS_MAP.get(str(raw).lower())


def is_period_elapsed(subscription: Subscription, now: datetime) -> bool:
    end = as_utc(subscription.current_period_end)
    return end is not None and end < as_utc(now)


def trial_rejection(subscription: Optional[Subscription], now: datetime) -> Optional[TrialRejection]:
    """Return why a trial cannot be granted, or ``None`` when it can."""
    if subscription is None:
        return None
    if subscription.status is SubscriptionStatus.ACTIVE:
        return TrialRejection.ALREADY_PAID
    trial_end = as_utc(subscription.trial_end)
    if subscription.status is SubscriptionStatus.TRIALING and trial_end is not None and trial_end >= as_utc(now):
        return TrialRejection.ALREADY_TRIALING
    if subscription.has_trial_history:
        return TrialRejection.TRIAL_ALREADY_USED
    return None


def derive_permissions(
    subscription: Optional[Subscription],
    plan: Optional[Plan],
    now: datetime,
) -> PermissionDecision:
    """Compute the feature permissions a user holds right now.

    Users without access still receive the free defaults; nobody is locked out
    of vocabulary drills or mistake review.
    """
    now = as_utc(now)
    trial_available = trial_rejection(subscription, now) is None
    free = FeatureFlags.free_defaults()

    if subscription is None:
        return PermissionDecision(free, False, AccessReason.NO_SUBSCRIPTION, trial_available)

    if subscription.status is SubscriptionStatus.TRIALING:
        trial_end = as_utc(subscription.trial_end)
        if trial_end is not None and trial_end >= now:
            return PermissionDecision(FeatureFlags.full_unlock(), True, None, False)
        return PermissionDecision(free, False, AccessReason.EXPIRED, trial_available)

    if is_period_elapsed(subscription, now):
        return PermissionDecision(free, False, AccessReason.EXPIRED, trial_available)

    if subscription.status in INACTIVE_STATUSES:
        return PermissionDecision(free, False, AccessReason.SUBSCRIPTION_INACTIVE, trial_available)

    features = plan.features if plan is not None else free
    return PermissionDecision(features, True, None, False)


def start_trial(
    subscription: Optional[Subscription],
    user_id: str,
    now: datetime,
    *,
    plan: Optional[Plan] = None,
) -> TrialOutcome:
    rejection = trial_rejection(subscription, now)
    if rejection is not None:
        return TrialRejected(rejection)

    now = as_utc(now)
    trial_end = now + TRIAL_DURATION
    base = subscription or Subscription(user_id=user_id, plan_id=TRIAL_PLAN_ID, status=SubscriptionStatus.NONE)
    granted = replace(
        base,
        plan_id=plan.id if plan is not None else TRIAL_PLAN_ID,
        status=SubscriptionStatus.TRIALING,
        trial_start=now,
        trial_end=trial_end,
        current_period_start=now,
        current_period_end=trial_end,
        cancel_at_period_end=False,
        canceled_at=None,
        plan_snapshot=plan.to_snapshot() if plan is not None else base.plan_snapshot,
    )
    return TrialGrant(granted)


def _latest(current: Optional[datetime], candidate: Optional[datetime]) -> Optional[datetime]:
    current, candidate = as_utc(current), as_utc(candidate)
    if current is None or candidate is None:
        return current or candidate
    return max(current, candidate)


def _activate_pending_plan(subscription: Subscription, pending_plan: Optional[Plan]) -> Subscription:
    if pending_plan is None or subscription.pending_plan_id != pending_plan.id:
        return subscription
    return replace(
        subscription,
        plan_id=pending_plan.id,
        plan_snapshot=pending_plan.to_snapshot(),
        pending_plan_id=None,
        canceled_at=None,
    )


def _with_provider_ids(subscription: Subscription, provider: ProviderSubscription) -> Subscription:
    return replace(
        subscription,
        stripe_subscription_id=provider.id or subscription.stripe_subscription_id,
        stripe_customer_id=provider.customer_id or subscription.stripe_customer_id,
    )


def apply_checkout_pending(
    subscription: Optional[Subscription],
    user_id: str,
    plan: Plan,
    *,
    session_id: Optional[str],
    customer_id: Optional[str],
) -> Subscription:
    """Record that a checkout was proposed for ``plan``.

    The proposed plan is kept in ``pending_plan_id`` until a payment event
    confirms it. A running subscription keeps its status and plan; rows
    without access move to pending on the proposed plan. Trial history is
    always preserved.
    """
    if subscription is None:
        return Subscription(
            user_id=user_id,
            plan_id=plan.id,
            status=SubscriptionStatus.PENDING,
            stripe_customer_id=customer_id,
            stripe_session_id=session_id,
            plan_snapshot=plan.to_snapshot(),
            pending_plan_id=plan.id,
        )
    pending = replace(
        subscription,
        stripe_customer_id=customer_id or subscription.stripe_customer_id,
        stripe_session_id=session_id,
        pending_plan_id=plan.id,
    )
    if subscription.status in (SubscriptionStatus.NONE, SubscriptionStatus.CANCELED, SubscriptionStatus.PENDING):
        pending = replace(
            pending,
            status=SubscriptionStatus.PENDING,
            plan_id=plan.id,
            plan_snapshot=plan.to_snapshot(),
        )
    return pending


def apply_checkout_completed(
    subscription: Optional[Subscription],
    target_plan: Plan,
    provider: ProviderSubscription,
    paid_at: datetime,
    *,
    session_id: Optional[str] = None,
    customer_id: Optional[str] = None,
) -> Optional[Subscription]:
    """Activate ``target_plan``. ``paid_at`` is the event time, so redelivery yields the same row."""
    if subscription is None:
        return None
    return replace(
        subscription,
        plan_id=target_plan.id,
        status=SubscriptionStatus.ACTIVE,
        stripe_subscription_id=provider.id or subscription.stripe_subscription_id,
        stripe_customer_id=customer_id or provider.customer_id or subscription.stripe_customer_id,
        stripe_session_id=session_id or subscription.stripe_session_id,
        current_period_start=provider.current_period_start or subscription.current_period_start or as_utc(paid_at),
        current_period_end=provider.current_period_end or subscription.current_period_end,
        cancel_at_period_end=provider.cancel_at_period_end,
        canceled_at=None,
        last_payment_at=_latest(subscription.last_payment_at, paid_at),
        plan_snapshot=target_plan.to_snapshot(),
        pending_plan_id=None,
    )


def apply_payment_succeeded(
    subscription: Optional[Subscription],
    provider: Optional[ProviderSubscription],
    paid_at: datetime,
    pending_plan: Optional[Plan] = None,
) -> Optional[Subscription]:
    if subscription is None:
        return None
    updated = replace(
        subscription,
        status=SubscriptionStatus.ACTIVE,
        last_payment_at=_latest(subscription.last_payment_at, paid_at),
    )
    if provider is not None:
        updated = replace(
            _with_provider_ids(updated, provider),
            current_period_start=provider.current_period_start or updated.current_period_start,
            current_period_end=provider.current_period_end or updated.current_period_end,
        )
    return _activate_pending_plan(updated, pending_plan)


def apply_payment_failed(subscription: Optional[Subscription]) -> Optional[Subscription]:
    if subscription is None:
        return None
    return replace(subscription, status=SubscriptionStatus.PAST_DUE)


def apply_subscription_updated(
    subscription: Optional[Subscription],
    provider: ProviderSubscription,
    pending_plan: Optional[Plan] = None,
) -> Optional[Subscription]:
    if subscription is None:
        return None
    status = map_provider_status(provider.status) or subscription.status
    updated = replace(
        _with_provider_ids(subscription, provider),
        status=status,
        current_period_start=provider.current_period_start or subscription.current_period_start,
        current_period_end=provider.current_period_end or subscription.current_period_end,
        cancel_at_period_end=provider.cancel_at_period_end,
    )
    if status is SubscriptionStatus.ACTIVE:
        return _activate_pending_plan(updated, pending_plan)
    return updated


def apply_subscription_deleted(subscription: Optional[Subscription], now: datetime) -> Optional[Subscription]:
    if subscription is None:
        return None
    return replace(
        subscription,
        status=SubscriptionStatus.CANCELED,
        canceled_at=subscription.canceled_at or as_utc(now),
        cancel_at_period_end=False,
        pending_plan_id=None,
    )


def apply_cancel_request(subscription: Subscription, now: datetime) -> Subscription:
    """User-initiated cancellation.

    Paid subscriptions stay active until the period ends; a trial is
    canceled immediately but its history is kept.
    """
    if subscription.status is SubscriptionStatus.TRIALING:
        return replace(subscription, status=SubscriptionStatus.CANCELED, canceled_at=as_utc(now))
    return replace(subscription, cancel_at_period_end=True, canceled_at=as_utc(now))


def apply_reactivate_request(subscription: Subscription) -> Subscription:
    return replace(subscription, cancel_at_period_end=False, canceled_at=None)


def apply_admin_override(
    subscription: Optional[Subscription],
    user_id: str,
    fields: Mapping[str, Any],
    *,
    plan: Optional[Plan],
    admin_id: str,
) -> Subscription:
    """Apply operator-supplied fields.

    Trial history can be set once but never cleared; rewriting an existing
    ``trial_start`` raises ``ConflictError``.
    """
    base = subscription or Subscription(user_id=user_id, plan_id=plan.id if plan else "", status=SubscriptionStatus.NONE)
    changes = dict(fields)
    for key in ("trial_start", "trial_end"):
        if key in changes and changes[key] is None and getattr(base, key) is not None:
            changes.pop(key)
    if "trial_start" in changes and base.trial_start is not None and as_utc(changes["trial_start"]) != as_utc(base.trial_start):
        raise ConflictError(
            code="TRIAL_HISTORY_IMMUTABLE",
            message="The trial start date is already recorded and cannot be changed.",
        )
    if plan is not None:
        changes["plan_id"] = plan.id
        changes["plan_snapshot"] = plan.to_snapshot()
    changes["updated_by"] = admin_id
    return replace(base, **changes)


def is_stale_transition(current: Subscription, proposed: Subscription) -> bool:
    """True when ``proposed`` would roll the row back to an older billing period.

    Cancellation is terminal and always applies.
    """
    if proposed.status is SubscriptionStatus.CANCELED:
        return False
    current_end = as_utc(current.current_period_end)
    proposed_end = as_utc(proposed.current_period_end)
    if current_end is None or proposed_end is None:
        return False
    if current.status is SubscriptionStatus.CANCELED:
        # A late update for the period that was just canceled must not revive it.
        return proposed_end <= current_end
    return proposed_end < current_end


__all__ = [
    "TRIAL_DURATION",
    "TrialGrant",
    "TrialOutcome",
    "TrialRejected",
    "apply_admin_override",
    "apply_cancel_request",
    "apply_checkout_completed",
    "apply_checkout_pending",
    "apply_payment_failed",
    "apply_payment_succeeded",
    "apply_reactivate_request",
    "apply_subscription_deleted",
    "apply_subscription_updated",
    "derive_permissions",
    "is_period_elapsed",
    "is_stale_transition",
    "map_provider_status",
    "start_trial",
    "trial_rejection",
]
