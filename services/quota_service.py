"""Quota enforcer: admission checks, usage counting and quota initialisation.

Store calls are blocking and run in a worker thread under a short timeout.
When the store is unreachable the enforcer denies metered (AI) features and
keeps free features available.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from datetime import datetime, time as dt_time, timedelta, timezone, tzinfo
from typing import Any, Callable, Dict, List, Optional, Tuple, TypeVar

from core.billing_constants import FeatureFlag, ResourceType
from core.env import env_int, env_timezone
from core.errors import TransientStoreError
from core.logging import get_logger
from services import billing_metrics
from services.billing_store import BillingStore
from services.billing_types import (
    PermissionDecision,
    Plan,
    QuotaPeriod,
    QuotaRecord,
    QuotaSnapshot,
    Subscription,
    as_utc,
)
from services.plan_catalog_service import PlanCatalog
from services.plan_guard import subscription_required, usage_limit_exceeded
from services.subscription_state import derive_permissions

logger = get_logger(__name__)

T = TypeVar("T")

LIFETIME_PERIOD = QuotaPeriod(
    start=datetime(1970, 1, 1, tzinfo=timezone.utc),
    end=datetime(2099, 12, 31, tzinfo=timezone.utc),
)

# Resources whose quota guards an AI feature; these fail closed.
_METERED_RESOURCES = frozenset({ResourceType.DAILY_PRACTICE, ResourceType.DAILY_AI_CHAT})


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def quota_period(resource_type: ResourceType | str, now: datetime, tz: tzinfo) -> QuotaPeriod:
    """Return the reset window containing ``now`` for ``resource_type``."""
    resource = ResourceType(resource_type)
    if not resource.is_daily:
        return LIFETIME_PERIOD
    local_day = as_utc(now).astimezone(tz).date()
    start = datetime.combine(local_day, dt_time.min, tzinfo=tz)
    end = datetime.combine(local_day + timedelta(days=1), dt_time.min, tzinfo=tz)
    return QuotaPeriod(start=start.astimezone(timezone.utc), end=end.astimezone(timezone.utc))


@dataclass(frozen=True)
class AccessContext:
    subscription: Optional[Subscription]
    plan: Plan
    decision: PermissionDecision


@dataclass
class FeatureAccessGrant:
    """Admission for one gated call. ``commit`` records usage after the call succeeded."""

    service: "QuotaService"
    user_id: str
    resource_type: ResourceType
    snapshot: QuotaSnapshot
    committed: bool = False

    async def commit(self, amount: int = 1) -> Optional[int]:
        if self.committed:
            return None
        self.committed = True
        return await self.service.increment_usage(self.user_id, self.resource_type, amount)


class QuotaService:
    def __init__(
        self,
        store: BillingStore,
        catalog: PlanCatalog,
        *,
        tz: Optional[tzinfo] = None,
        timeout_seconds: Optional[float] = None,
        deadline_seconds: Optional[float] = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._catalog = catalog
        self._tz = tz or env_timezone("BILLING_TIMEZONE", "Asia/Tokyo")
        if timeout_seconds is None:
            timeout_seconds = env_int("QUOTA_STORE_TIMEOUT_MS", 800, minimum=1) / 1000.0
        self._timeout = timeout_seconds
        # Budget for one whole admission check, retries included.
        if deadline_seconds is None:
            deadline_seconds = env_int("QUOTA_CHECK_DEADLINE_MS", 800, minimum=1) / 1000.0
        self._deadline = deadline_seconds
        self._clock = clock

    async def _call(self, operation: str, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        started = time.perf_counter()
        try:
            return await asyncio.wait_for(asyncio.to_thread(func, *args, **kwargs), timeout=self._timeout)
        except asyncio.TimeoutError as exc:
            billing_metrics.record_store_failure(operation, "timeout")
            logger.warning("Billing store call timed out: %s (%.0f ms)", operation, self._timeout * 1000)
            raise TransientStoreError(f"Billing store timed out during {operation}.", operation=operation) from exc
        except TransientStoreError:
            billing_metrics.record_store_failure(operation, "error")
            raise
        finally:
            billing_metrics.observe_store_latency(operation, time.perf_counter() - started)

    async def _read(self, operation: str, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        try:
            return await self._call(operation, func, *args, **kwargs)
        except TransientStoreError:
            logger.info("Retrying billing store read once: %s", operation)
            return await self._call(operation, func, *args, **kwargs)

    def _load_context(self, user_id: str, now: datetime) -> AccessContext:
        subscription = self._store.subscriptions.get(user_id)
        plan: Optional[Plan] = None
        if subscription is not None:
            plan = subscription.snapshot_plan() or self._catalog.find_plan(subscription.plan_id)
        decision = derive_permissions(subscription, plan, now)
        if not decision.has_access or plan is None:
            plan = self._catalog.free_plan()
        return AccessContext(subscription=subscription, plan=plan, decision=decision)

    async def access_context(self, user_id: str, now: Optional[datetime] = None) -> AccessContext:
        return await self._read("subscription.get", self._load_context, user_id, now or self._clock())

    def _snapshot(self, resource: ResourceType, plan: Plan, record: Optional[QuotaRecord], period: QuotaPeriod) -> QuotaSnapshot:
        # The current plan's limit always applies; a stored limit_count only
        # reflects the plan at the time the row was created.
        limit = plan.limit_for(resource)
        used = record.used_count if record is not None else 0
        can_use = limit is None or used < limit
        remaining = None if limit is None else max(limit - used, 0)
        return QuotaSnapshot(
            resource_type=resource.value,
            can_use=can_use,
            used=used,
            limit=limit,
            remaining=remaining,
            reset_at=period.end if resource.is_daily else None,
        )

    def _failure_snapshot(self, resource: ResourceType, period: QuotaPeriod) -> QuotaSnapshot:
        return QuotaSnapshot(
            resource_type=resource.value,
            can_use=resource not in _METERED_RESOURCES,
            used=0,
            limit=None,
            remaining=None,
            reset_at=period.end if resource.is_daily else None,
            backend_error=True,
        )

    async def _snapshot_for(self, context: AccessContext, user_id: str, resource: ResourceType, now: datetime) -> QuotaSnapshot:
        period = quota_period(resource, now, self._tz)
        record = await self._read("quota.find", self._store.quotas.find, user_id, resource.value, period.start)
        return self._snapshot(resource, context.plan, record, period)

    async def _admission(self, user_id: str, resource: ResourceType, now: datetime) -> Tuple[AccessContext, QuotaSnapshot]:
        """Load the access context and quota snapshot under one overall deadline."""

        async def _load() -> Tuple[AccessContext, QuotaSnapshot]:
            context = await self.access_context(user_id, now)
            return context, await self._snapshot_for(context, user_id, resource, now)

        try:
            return await asyncio.wait_for(_load(), timeout=self._deadline)
        except asyncio.TimeoutError as exc:
            billing_metrics.record_store_failure("quota.admission", "deadline")
            logger.warning("Quota admission exceeded its deadline (%.0f ms)", self._deadline * 1000)
            raise TransientStoreError("Quota check exceeded its deadline.", operation="quota.admission") from exc

    async def check_quota(
        self,
        user_id: str,
        resource_type: ResourceType | str,
        now: Optional[datetime] = None,
    ) -> QuotaSnapshot:
        """Report current usage. A missing row reads as zero usage and is not persisted."""
        resource = ResourceType(resource_type)
        now = now or self._clock()
        try:
            _context, snapshot = await self._admission(user_id, resource, now)
            return snapshot
        except TransientStoreError:
            logger.warning(
                "quota.check_degraded",
                extra={"user_id": user_id, "resource": resource.value},
            )
            return self._failure_snapshot(resource, quota_period(resource, now, self._tz))

    async def usage_summary(self, user_id: str, now: Optional[datetime] = None) -> Dict[str, QuotaSnapshot]:
        now = now or self._clock()
        try:
            context = await self.access_context(user_id, now)
        except TransientStoreError:
            return {
                resource.value: self._failure_snapshot(resource, quota_period(resource, now, self._tz))
                for resource in ResourceType
            }
        summary: Dict[str, QuotaSnapshot] = {}
        for resource in ResourceType:
            try:
                summary[resource.value] = await self._snapshot_for(context, user_id, resource, now)
            except TransientStoreError:
                summary[resource.value] = self._failure_snapshot(resource, quota_period(resource, now, self._tz))
        return summary

    async def increment_usage(
        self,
        user_id: str,
        resource_type: ResourceType | str,
        amount: int = 1,
        now: Optional[datetime] = None,
    ) -> Optional[int]:
        """Add ``amount`` to the current period's counter.

        Failures are logged and swallowed; the gated operation has already
        happened by the time usage is recorded.
        """
        if amount <= 0:
            raise ValueError("Usage can only be incremented by a positive amount.")
        resource = ResourceType(resource_type)
        now = now or self._clock()
        period = quota_period(resource, now, self._tz)
        try:
            context = await self.access_context(user_id, now)
            limit = context.plan.limit_for(resource)
        except TransientStoreError:
            limit = None
        try:
            return await self._call(
                "quota.atomic_increment",
                self._store.quotas.atomic_increment,
                user_id,
                resource.value,
                period.start,
                amount,
                period_end=period.end,
                limit_count=limit,
            )
        except TransientStoreError:
            logger.error(
                "quota.increment_failed",
                extra={"user_id": user_id, "resource": resource.value, "amount": amount},
            )
            return None

    async def require_feature_access(
        self,
        user_id: str,
        resource_type: ResourceType | str,
        feature_flag: FeatureFlag | str,
        now: Optional[datetime] = None,
    ) -> FeatureAccessGrant:
        """Admit or deny one use of a gated feature.

        Raises ``FeatureAccessDenied`` for plan or quota denials and
        ``TransientStoreError`` when a metered feature cannot be checked.
        """
        resource = ResourceType(resource_type)
        feature = FeatureFlag(feature_flag)
        now = now or self._clock()
        metered = resource in _METERED_RESOURCES

        try:
            context, snapshot = await self._admission(user_id, resource, now)
        except TransientStoreError:
            if metered:
                billing_metrics.record_quota_decision(resource.value, "backend_error")
                raise
            billing_metrics.record_quota_decision(resource.value, "allowed_degraded")
            snapshot = self._failure_snapshot(resource, quota_period(resource, now, self._tz))
            return FeatureAccessGrant(self, user_id, resource, snapshot)

        decision = context.decision
        if not decision.permissions.allows(feature):
            billing_metrics.record_quota_decision(resource.value, "subscription_required")
            logger.info(
                "quota.blocked",
                extra={"user_id": user_id, "resource": resource.value, "reason": "subscription_required"},
            )
            raise subscription_required(
                feature.value,
                snapshot,
                reason=decision.reason,
                trial_available=decision.trial_available,
            )
        if not snapshot.can_use:
            billing_metrics.record_quota_decision(resource.value, "limit_exceeded")
            logger.info(
                "quota.blocked",
                extra={
                    "user_id": user_id,
                    "resource": resource.value,
                    "reason": "limit_exceeded",
                    "used": snapshot.used,
                    "limit": snapshot.limit,
                },
            )
            raise usage_limit_exceeded(feature.value, snapshot, trial_available=decision.trial_available)

        billing_metrics.record_quota_decision(resource.value, "allowed")
        return FeatureAccessGrant(self, user_id, resource, snapshot)

    async def initialize_quotas(self, user_id: str, plan: Plan, now: Optional[datetime] = None) -> List[str]:
        """Create current-period rows for each limited resource of ``plan``.

        Existing rows are never modified, so usage already counted today is kept.
        """
        now = now or self._clock()
        created: List[str] = []
        for resource in ResourceType:
            limit = plan.limit_for(resource)
            if limit is None:
                continue
            period = quota_period(resource, now, self._tz)
            record = QuotaRecord(
                user_id=user_id,
                resource_type=resource.value,
                period_start=period.start,
                period_end=period.end,
                used_count=0,
                limit_count=limit,
            )
            try:
                if await self._call("quota.create", self._store.quotas.create, record):
                    created.append(resource.value)
            except TransientStoreError:
                logger.warning(
                    "quota.initialize_failed",
                    extra={"user_id": user_id, "resource": resource.value, "plan_id": plan.id},
                )
        return created


__all__ = [
    "AccessContext",
    "FeatureAccessGrant",
    "LIFETIME_PERIOD",
    "QuotaService",
    "quota_period",
]
