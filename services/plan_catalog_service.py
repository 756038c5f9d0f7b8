"""Plan catalog: the single source of plan definitions, limits and feature flags."""

from __future__ import annotations

import threading
from typing import Dict, List, Optional, Sequence

from core.billing_constants import FREE_PLAN_ID, TRIAL_PLAN_ID
from core.env import env_str
from core.errors import PlanNotFoundError
from core.logging import get_logger
from services.billing_store import PlanStore
from services.billing_types import FeatureFlags, Plan

logger = get_logger(__name__)

DEFAULT_PLANS: Sequence[Plan] = (
    Plan(
        id=FREE_PLAN_ID,
        name="Free",
        name_jp="無料プラン",
        description="Vocabulary drills and mistake review.",
        price_cents=0,
        currency="jpy",
        interval="month",
        features=FeatureFlags.free_defaults(),
        daily_practice_limit=0,
        daily_ai_chat_limit=0,
        max_vocabulary_words=None,
        sort_order=0,
    ),
    Plan(
        id=TRIAL_PLAN_ID,
        name="Free Trial",
        name_jp="無料トライアル",
        description="Three days of full access, granted once per account.",
        price_cents=0,
        currency="jpy",
        interval="trial",
        features=FeatureFlags.full_unlock(),
        daily_practice_limit=None,
        daily_ai_chat_limit=20,
        max_vocabulary_words=None,
        trial_days=3,
        sort_order=1,
    ),
    Plan(
        id="premium_monthly",
        name="Premium Monthly",
        name_jp="プレミアム（月額）",
        description="Unlimited AI practice and chat, billed monthly.",
        price_cents=300000,
        currency="jpy",
        interval="month",
        stripe_price_id=env_str("STRIPE_PRICE_PREMIUM_MONTHLY"),
        features=FeatureFlags.full_unlock(),
        is_popular=True,
        sort_order=2,
    ),
    Plan(
        id="premium_yearly",
        name="Premium Yearly",
        name_jp="プレミアム（年額）",
        description="Unlimited AI practice and chat, billed yearly.",
        price_cents=3000000,
        currency="jpy",
        interval="year",
        stripe_price_id=env_str("STRIPE_PRICE_PREMIUM_YEARLY"),
        features=FeatureFlags.full_unlock(),
        sort_order=3,
    ),
)


class PlanCatalog:
    """Read-through cache over the plan store.

    Plans are immutable once referenced, so cached entries are only dropped
    when the catalog is re-seeded.
    """

    def __init__(self, store: PlanStore) -> None:
        self._store = store
        self._cache: Dict[str, Plan] = {}
        self._lock = threading.Lock()

    def get_plan(self, plan_id: str) -> Plan:
        with self._lock:
            cached = self._cache.get(plan_id)
        if cached is not None:
            return cached
        plan = self._store.get(plan_id)
        if plan is None:
            raise PlanNotFoundError(plan_id)
        with self._lock:
            self._cache[plan_id] = plan
        return plan

    def find_plan(self, plan_id: Optional[str]) -> Optional[Plan]:
        if not plan_id:
            return None
        try:
            return self.get_plan(plan_id)
        except PlanNotFoundError:
            return None

    def list_plans(self, *, active_only: bool = True) -> List[Plan]:
        return self._store.list(active_only=active_only)

    def free_plan(self) -> Plan:
        plan = self.find_plan(FREE_PLAN_ID)
        if plan is not None:
            return plan
        logger.warning("Free plan missing from catalog; using built-in defaults.")
        return DEFAULT_PLANS[0]

    def seed(self, plans: Sequence[Plan] = DEFAULT_PLANS) -> List[str]:
        """Insert any missing plans. Existing rows are left untouched."""
        inserted: List[str] = []
        for plan in plans:
            if self._store.insert_if_absent(plan):
                inserted.append(plan.id)
        self.invalidate()
        if inserted:
            logger.info("Seeded plan catalog: %s", ", ".join(inserted))
        return inserted

    def invalidate(self) -> None:
        with self._lock:
            self._cache.clear()


def seed_plan_catalog(catalog: PlanCatalog) -> List[str]:
    return catalog.seed(DEFAULT_PLANS)


__all__ = ["DEFAULT_PLANS", "PlanCatalog", "seed_plan_catalog"]
