"""Repository interfaces for billing state plus an in-memory implementation.

Every billing component talks to persistence through these protocols so the
same logic runs against PostgreSQL (``services.billing_store_sql``) or the
in-memory maps used in tests and local development.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Protocol, Tuple

from services.billing_types import Plan, QuotaRecord, Subscription, as_utc


@dataclass(slots=True)
class WebhookEventEntry:
    event_id: Optional[str]
    event_type: Optional[str]
    result: str
    user_id: Optional[str] = None
    message: Optional[str] = None
    payload: Optional[Mapping[str, Any]] = None
    processed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


@dataclass(slots=True)
class PaymentRecord:
    user_id: str
    stripe_session_id: str
    amount: int
    currency: str
    status: str = "succeeded"
    created_at: Optional[datetime] = None


class SubscriptionStore(Protocol):
    def get(self, user_id: str) -> Optional[Subscription]: ...

    def create(self, subscription: Subscription) -> bool: ...

    def compare_and_set(self, subscription: Subscription, expected_version: int) -> Optional[Subscription]: ...

    def upsert(self, user_id: str, fields: Mapping[str, Any]) -> Subscription: ...


class QuotaStore(Protocol):
    def find(self, user_id: str, resource_type: str, period_start: datetime) -> Optional[QuotaRecord]: ...

    def create(self, record: QuotaRecord) -> bool: ...

    def atomic_increment(
        self,
        user_id: str,
        resource_type: str,
        period_start: datetime,
        amount: int,
        *,
        period_end: datetime,
        limit_count: Optional[int],
    ) -> int: ...


class WebhookEventStore(Protocol):
    def record(self, entry: WebhookEventEntry) -> None: ...

    def get(self, event_id: str) -> Optional[WebhookEventEntry]: ...


class PaymentStore(Protocol):
    def record(self, payment: PaymentRecord) -> bool: ...

    def list_for_user(self, user_id: str, *, offset: int = 0, limit: int = 10) -> Tuple[List[PaymentRecord], int]: ...


class PlanStore(Protocol):
    def get(self, plan_id: str) -> Optional[Plan]: ...

    def list(self, *, active_only: bool = True) -> List[Plan]: ...

    def insert_if_absent(self, plan: Plan) -> bool: ...


class BillingStore(Protocol):
    subscriptions: SubscriptionStore
    quotas: QuotaStore
    webhook_events: WebhookEventStore
    payments: PaymentStore
    plans: PlanStore

    def ping(self) -> Tuple[bool, Optional[str]]: ...

    def verify_provisioned(self) -> None: ...


_SUBSCRIPTION_FIELDS = frozenset(Subscription.__dataclass_fields__)


def apply_fields(subscription: Subscription, fields: Mapping[str, Any]) -> Subscription:
    """Return ``subscription`` with the recognised ``fields`` overwritten."""
    unknown = set(fields) - _SUBSCRIPTION_FIELDS
    if unknown:
        raise ValueError(f"Unknown subscription fields: {', '.join(sorted(unknown))}")
    return replace(subscription, **dict(fields))


def _now() -> datetime:
    return datetime.now(timezone.utc)


class InMemorySubscriptionStore:
    def __init__(self) -> None:
        self._rows: Dict[str, Subscription] = {}
        self._lock = threading.Lock()

    def get(self, user_id: str) -> Optional[Subscription]:
        with self._lock:
            row = self._rows.get(user_id)
            return replace(row) if row else None

    def create(self, subscription: Subscription) -> bool:
        with self._lock:
            if subscription.user_id in self._rows:
                return False
            now = _now()
            self._rows[subscription.user_id] = replace(subscription, version=1, created_at=now, updated_at=now)
            return True

    def compare_and_set(self, subscription: Subscription, expected_version: int) -> Optional[Subscription]:
        with self._lock:
            current = self._rows.get(subscription.user_id)
            if current is None or current.version != expected_version:
                return None
            stored = replace(
                subscription,
                version=expected_version + 1,
                created_at=current.created_at,
                updated_at=_now(),
            )
            self._rows[subscription.user_id] = stored
            return replace(stored)

    def upsert(self, user_id: str, fields: Mapping[str, Any]) -> Subscription:
        with self._lock:
            current = self._rows.get(user_id)
            now = _now()
            if current is None:
                base = Subscription(user_id=user_id, plan_id=str(fields.get("plan_id") or ""))
                stored = replace(apply_fields(base, fields), version=1, created_at=now, updated_at=now)
            else:
                stored = replace(apply_fields(current, fields), version=current.version + 1, updated_at=now)
            self._rows[user_id] = stored
            return replace(stored)


class InMemoryQuotaStore:
    def __init__(self) -> None:
        self._rows: Dict[Tuple[str, str, datetime], QuotaRecord] = {}
        self._lock = threading.Lock()

    @staticmethod
    def _key(user_id: str, resource_type: str, period_start: datetime) -> Tuple[str, str, datetime]:
        return (user_id, resource_type, as_utc(period_start))

    def find(self, user_id: str, resource_type: str, period_start: datetime) -> Optional[QuotaRecord]:
        with self._lock:
            row = self._rows.get(self._key(user_id, resource_type, period_start))
            return replace(row) if row else None

    def create(self, record: QuotaRecord) -> bool:
        key = self._key(record.user_id, record.resource_type, record.period_start)
        with self._lock:
            if key in self._rows:
                return False
            self._rows[key] = replace(record)
            return True

    def atomic_increment(
        self,
        user_id: str,
        resource_type: str,
        period_start: datetime,
        amount: int,
        *,
        period_end: datetime,
        limit_count: Optional[int],
    ) -> int:
        key = self._key(user_id, resource_type, period_start)
        with self._lock:
            row = self._rows.get(key)
            if row is None:
                row = QuotaRecord(
                    user_id=user_id,
                    resource_type=resource_type,
                    period_start=as_utc(period_start),
                    period_end=as_utc(period_end),
                    used_count=0,
                    limit_count=limit_count,
                )
                self._rows[key] = row
            row.used_count += amount
            return row.used_count


class InMemoryWebhookEventStore:
    def __init__(self) -> None:
        self._entries: List[WebhookEventEntry] = []
        self._lock = threading.Lock()

    def record(self, entry: WebhookEventEntry) -> None:
        with self._lock:
            self._entries.append(replace(entry, created_at=entry.created_at or _now()))

    def get(self, event_id: str) -> Optional[WebhookEventEntry]:
        with self._lock:
            for entry in reversed(self._entries):
                if entry.event_id == event_id:
                    return replace(entry)
        return None

    def entries(self) -> List[WebhookEventEntry]:
        with self._lock:
            return [replace(entry) for entry in self._entries]


class InMemoryPaymentStore:
    def __init__(self) -> None:
        self._records: Dict[str, PaymentRecord] = {}
        self._lock = threading.Lock()

    def record(self, payment: PaymentRecord) -> bool:
        with self._lock:
            if payment.stripe_session_id in self._records:
                return False
            self._records[payment.stripe_session_id] = replace(payment, created_at=payment.created_at or _now())
            return True

    def list_for_user(self, user_id: str, *, offset: int = 0, limit: int = 10) -> Tuple[List[PaymentRecord], int]:
        with self._lock:
            matches = [record for record in self._records.values() if record.user_id == user_id]
        matches.sort(key=lambda record: record.created_at or _now(), reverse=True)
        return [replace(record) for record in matches[offset : offset + limit]], len(matches)


class InMemoryPlanStore:
    def __init__(self) -> None:
        self._plans: Dict[str, Plan] = {}
        self._lock = threading.Lock()

    def get(self, plan_id: str) -> Optional[Plan]:
        with self._lock:
            return self._plans.get(plan_id)

    def list(self, *, active_only: bool = True) -> List[Plan]:
        with self._lock:
            plans = list(self._plans.values())
        if active_only:
            plans = [plan for plan in plans if plan.is_active]
        return sorted(plans, key=lambda plan: (plan.sort_order, plan.id))

    def insert_if_absent(self, plan: Plan) -> bool:
        with self._lock:
            if plan.id in self._plans:
                return False
            self._plans[plan.id] = plan
            return True


@dataclass
class InMemoryBillingStore:
    subscriptions: InMemorySubscriptionStore = field(default_factory=InMemorySubscriptionStore)
    quotas: InMemoryQuotaStore = field(default_factory=InMemoryQuotaStore)
    webhook_events: InMemoryWebhookEventStore = field(default_factory=InMemoryWebhookEventStore)
    payments: InMemoryPaymentStore = field(default_factory=InMemoryPaymentStore)
    plans: InMemoryPlanStore = field(default_factory=InMemoryPlanStore)

    def ping(self) -> Tuple[bool, Optional[str]]:
        return True, None

    def verify_provisioned(self) -> None:
        return None


__all__ = [
    "BillingStore",
    "InMemoryBillingStore",
    "PaymentRecord",
    "PaymentStore",
    "PlanStore",
    "QuotaStore",
    "SubscriptionStore",
    "WebhookEventEntry",
    "WebhookEventStore",
    "apply_fields",
]
