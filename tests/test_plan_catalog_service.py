from __future__ import annotations

from dataclasses import replace

import pytest

from core.errors import PlanNotFoundError
from services.billing_store import InMemoryPlanStore
from services.billing_types import FeatureFlags
from services.plan_catalog_service import DEFAULT_PLANS, PlanCatalog, seed_plan_catalog


@pytest.fixture()
def catalog() -> PlanCatalog:
    return PlanCatalog(InMemoryPlanStore())


def test_seed_inserts_default_plans_once(catalog: PlanCatalog) -> None:
    assert seed_plan_catalog(catalog) == ["free", "trial", "premium_monthly", "premium_yearly"]
    assert seed_plan_catalog(catalog) == []

    plans = catalog.list_plans()
    assert [plan.id for plan in plans] == ["free", "trial", "premium_monthly", "premium_yearly"]


def test_seed_never_overwrites_existing_plan(catalog: PlanCatalog) -> None:
    custom_free = replace(DEFAULT_PLANS[0], name="Legacy Free", daily_ai_chat_limit=2)
    catalog.seed([custom_free])

    catalog.seed()

    assert catalog.get_plan("free").name == "Legacy Free"
    assert catalog.get_plan("free").daily_ai_chat_limit == 2


def test_default_plan_shapes() -> None:
    by_id = {plan.id: plan for plan in DEFAULT_PLANS}

    assert by_id["free"].features == FeatureFlags.free_defaults()
    assert by_id["free"].limit_for("daily_practice") == 0
    assert by_id["trial"].features == FeatureFlags.full_unlock()
    assert by_id["trial"].trial_days == 3
    assert by_id["trial"].limit_for("daily_ai_chat") == 20
    assert by_id["premium_monthly"].limit_for("daily_practice") is None
    assert by_id["premium_yearly"].interval == "year"


def test_unknown_plan(catalog: PlanCatalog) -> None:
    seed_plan_catalog(catalog)

    with pytest.raises(PlanNotFoundError) as excinfo:
        catalog.get_plan("platinum")

    assert excinfo.value.code == "PLAN_NOT_FOUND"
    assert catalog.find_plan("platinum") is None
    assert catalog.find_plan(None) is None


def test_inactive_plans_hidden_from_listing(catalog: PlanCatalog) -> None:
    catalog.seed([*DEFAULT_PLANS, replace(DEFAULT_PLANS[2], id="premium_legacy", is_active=False, sort_order=9)])

    assert "premium_legacy" not in [plan.id for plan in catalog.list_plans()]
    assert "premium_legacy" in [plan.id for plan in catalog.list_plans(active_only=False)]
    assert catalog.get_plan("premium_legacy").is_active is False


def test_free_plan_falls_back_to_builtin_defaults(catalog: PlanCatalog) -> None:
    assert catalog.free_plan() == DEFAULT_PLANS[0]


def test_snapshot_round_trip_keeps_limits() -> None:
    plan = DEFAULT_PLANS[1]

    restored = type(plan).from_snapshot(plan.to_snapshot())

    assert restored == plan


def test_lookups_are_cached_until_invalidated(monkeypatch: pytest.MonkeyPatch) -> None:
    store = InMemoryPlanStore()
    catalog = PlanCatalog(store)
    seed_plan_catalog(catalog)
    reads = []
    original_get = store.get

    def counting_get(plan_id):
        reads.append(plan_id)
        return original_get(plan_id)

    monkeypatch.setattr(store, "get", counting_get)
    catalog.get_plan("trial")
    catalog.get_plan("trial")
    assert reads == ["trial"]

    catalog.invalidate()
    catalog.get_plan("trial")
    assert reads == ["trial", "trial"]
