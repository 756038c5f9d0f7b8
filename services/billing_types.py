"""Value objects shared by the plan catalog, state machine, quota enforcer and stores."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional

from core.billing_constants import AccessReason, FeatureFlag, ResourceType, SubscriptionStatus

_FLAG_FIELDS: Dict[FeatureFlag, str] = {
    FeatureFlag.AI_PRACTICE: "ai_practice",
    FeatureFlag.AI_CHAT: "ai_chat",
    FeatureFlag.VOCABULARY: "vocabulary",
    FeatureFlag.EXPORT_DATA: "export_data",
    FeatureFlag.VIEW_MISTAKES: "view_mistakes",
}


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalise datetimes to aware UTC; naive values are assumed to already be UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def isoformat_utc(value: Optional[datetime]) -> Optional[str]:
    normalized = as_utc(value)
    return normalized.isoformat() if normalized else None


def parse_datetime(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return as_utc(value)
    if isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(float(value), timezone.utc)
        except (OSError, OverflowError, ValueError):
            return None
    if isinstance(value, str):
        try:
            return as_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))
        except ValueError:
            return None
    return None


@dataclass(frozen=True, slots=True)
class FeatureFlags:
    """Explicit feature permissions; every flag is always present and defaults to False."""

    ai_practice: bool = False
    ai_chat: bool = False
    vocabulary: bool = False
    export_data: bool = False
    view_mistakes: bool = False

    @classmethod
    def free_defaults(cls) -> "FeatureFlags":
        return cls(vocabulary=True, view_mistakes=True)

    @classmethod
    def full_unlock(cls) -> "FeatureFlags":
        return cls(ai_practice=True, ai_chat=True, vocabulary=True, export_data=True, view_mistakes=True)

    @classmethod
    def from_mapping(cls, raw: Optional[Mapping[str, Any]]) -> "FeatureFlags":
        if not raw:
            return cls()
        values: Dict[str, bool] = {}
        for flag, attr in _FLAG_FIELDS.items():
            candidate = raw.get(flag.value, raw.get(attr))
            values[attr] = candidate is True
        return cls(**values)

    def allows(self, flag: FeatureFlag | str) -> bool:
        attr = _FLAG_FIELDS[FeatureFlag(flag)]
        return bool(getattr(self, attr))

    def to_dict(self) -> Dict[str, bool]:
        return {flag.value: bool(getattr(self, attr)) for flag, attr in _FLAG_FIELDS.items()}


@dataclass(frozen=True, slots=True)
class Plan:
    id: str
    name: str
    price_cents: int
    currency: str
    interval: str
    features: FeatureFlags
    daily_practice_limit: Optional[int] = None
    daily_ai_chat_limit: Optional[int] = None
    max_vocabulary_words: Optional[int] = None
    name_jp: Optional[str] = None
    description: Optional[str] = None
    stripe_price_id: Optional[str] = None
    trial_days: Optional[int] = None
    is_active: bool = True
    is_popular: bool = False
    sort_order: int = 0

    def limit_for(self, resource_type: ResourceType | str) -> Optional[int]:
        resource = ResourceType(resource_type)
        if resource is ResourceType.DAILY_PRACTICE:
            return self.daily_practice_limit
        if resource is ResourceType.DAILY_AI_CHAT:
            return self.daily_ai_chat_limit
        return self.max_vocabulary_words

    def to_snapshot(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["features"] = self.features.to_dict()
        return payload

    @classmethod
    def from_snapshot(cls, raw: Mapping[str, Any]) -> "Plan":
        return cls(
            id=str(raw["id"]),
            name=str(raw.get("name") or raw["id"]),
            price_cents=int(raw.get("price_cents") or 0),
            currency=str(raw.get("currency") or "jpy"),
            interval=str(raw.get("interval") or "month"),
            features=FeatureFlags.from_mapping(raw.get("features")),
            daily_practice_limit=raw.get("daily_practice_limit"),
            daily_ai_chat_limit=raw.get("daily_ai_chat_limit"),
            max_vocabulary_words=raw.get("max_vocabulary_words"),
            name_jp=raw.get("name_jp"),
            description=raw.get("description"),
            stripe_price_id=raw.get("stripe_price_id"),
            trial_days=raw.get("trial_days"),
            is_active=bool(raw.get("is_active", True)),
            is_popular=bool(raw.get("is_popular", False)),
            sort_order=int(raw.get("sort_order") or 0),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "nameJp": self.name_jp,
            "priceCents": self.price_cents,
            "currency": self.currency,
            "interval": self.interval,
            "features": self.features.to_dict(),
            "limits": {
                "dailyPractice": self.daily_practice_limit,
                "dailyAiChat": self.daily_ai_chat_limit,
                "vocabularyWords": self.max_vocabulary_words,
            },
            "trialDays": self.trial_days,
            "isPopular": self.is_popular,
        }


@dataclass(slots=True)
class Subscription:
    user_id: str
    plan_id: str
    status: SubscriptionStatus = SubscriptionStatus.PENDING
    stripe_customer_id: Optional[str] = None
    stripe_subscription_id: Optional[str] = None
    stripe_session_id: Optional[str] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    trial_start: Optional[datetime] = None
    trial_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    canceled_at: Optional[datetime] = None
    last_payment_at: Optional[datetime] = None
    plan_snapshot: Optional[Dict[str, Any]] = None
    pending_plan_id: Optional[str] = None
    version: int = 0
    updated_by: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def has_trial_history(self) -> bool:
        return self.trial_start is not None or self.trial_end is not None

    def snapshot_plan(self) -> Optional[Plan]:
        if not self.plan_snapshot:
            return None
        try:
            return Plan.from_snapshot(self.plan_snapshot)
        except (KeyError, TypeError, ValueError):
            return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "userId": self.user_id,
            "planId": self.plan_id,
            "status": self.status.value,
            "stripeCustomerId": self.stripe_customer_id,
            "stripeSubscriptionId": self.stripe_subscription_id,
            "currentPeriodStart": isoformat_utc(self.current_period_start),
            "currentPeriodEnd": isoformat_utc(self.current_period_end),
            "trialStart": isoformat_utc(self.trial_start),
            "trialEnd": isoformat_utc(self.trial_end),
            "cancelAtPeriodEnd": self.cancel_at_period_end,
            "canceledAt": isoformat_utc(self.canceled_at),
            "lastPaymentAt": isoformat_utc(self.last_payment_at),
            "pendingPlanId": self.pending_plan_id,
        }


@dataclass(frozen=True, slots=True)
class ProviderSubscription:
    """Subset of the payment provider's subscription object the engine relies on."""

    id: Optional[str]
    status: Optional[str]
    current_period_start: Optional[datetime]
    current_period_end: Optional[datetime]
    cancel_at_period_end: bool = False
    customer_id: Optional[str] = None
    metadata: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def from_stripe(cls, raw: Mapping[str, Any]) -> "ProviderSubscription":
        start = raw.get("current_period_start")
        end = raw.get("current_period_end")
        if start is None or end is None:
            # Newer API versions carry the period on the subscription items.
            items = ((raw.get("items") or {}).get("data")) or []
            if items:
                start = start if start is not None else items[0].get("current_period_start")
                end = end if end is not None else items[0].get("current_period_end")
        metadata = raw.get("metadata") or {}
        return cls(
            id=raw.get("id"),
            status=raw.get("status"),
            current_period_start=parse_datetime(start),
            current_period_end=parse_datetime(end),
            cancel_at_period_end=bool(raw.get("cancel_at_period_end")),
            customer_id=raw.get("customer") if isinstance(raw.get("customer"), str) else None,
            metadata=dict(metadata) if isinstance(metadata, Mapping) else {},
        )


@dataclass(slots=True)
class QuotaRecord:
    user_id: str
    resource_type: str
    period_start: datetime
    period_end: datetime
    used_count: int = 0
    limit_count: Optional[int] = None


@dataclass(frozen=True, slots=True)
class QuotaPeriod:
    start: datetime
    end: datetime


@dataclass(frozen=True, slots=True)
class QuotaSnapshot:
    resource_type: str
    can_use: bool
    used: int
    limit: Optional[int]
    remaining: Optional[int]
    reset_at: Optional[datetime]
    backend_error: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "resourceType": self.resource_type,
            "canUse": self.can_use,
            "used": self.used,
            "limit": self.limit,
            "remaining": self.remaining,
            "resetAt": isoformat_utc(self.reset_at),
        }


@dataclass(frozen=True, slots=True)
class PermissionDecision:
    permissions: FeatureFlags
    has_access: bool
    reason: Optional[AccessReason] = None
    trial_available: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "permissions": self.permissions.to_dict(),
            "hasAccess": self.has_access,
            "reason": self.reason.value if self.reason else None,
            "trialAvailable": self.trial_available,
        }


__all__ = [
    "FeatureFlags",
    "PermissionDecision",
    "Plan",
    "ProviderSubscription",
    "QuotaPeriod",
    "QuotaRecord",
    "QuotaSnapshot",
    "Subscription",
    "as_utc",
    "isoformat_utc",
    "parse_datetime",
]
