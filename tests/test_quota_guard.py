from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from fastapi import Depends, FastAPI
from fastapi.testclient import TestClient

from core.billing_constants import SubscriptionStatus
from core.errors import TransientStoreError
from services.billing_types import Subscription
from services.quota_service import FeatureAccessGrant
from web.deps import BillingServices
from web.quota_guard import require_feature_access

from tests.billing_helpers import FIXED_NOW, TEST_PLANS

HEADERS = {"X-User-Id": "u1"}


def _build_app(services: BillingServices) -> FastAPI:
    app = FastAPI()
    app.state.billing = services

    @app.post("/practice")
    async def generate_practice(grant: FeatureAccessGrant = Depends(require_feature_access("daily_practice", "aiPractice"))):
        used = await grant.commit()
        return {"used": used}

    @app.post("/chat/failing")
    async def failing_chat(grant: FeatureAccessGrant = Depends(require_feature_access("daily_ai_chat", "aiChat"))):
        return {"committed": grant.committed}

    @app.post("/vocabulary")
    async def save_word(grant: FeatureAccessGrant = Depends(require_feature_access("vocabulary_words", "vocabulary"))):
        return {"canUse": grant.snapshot.can_use}

    return app


def _subscribe_basic(services: BillingServices) -> None:
    basic = next(plan for plan in TEST_PLANS if plan.id == "basic_monthly")
    services.store.subscriptions.create(
        Subscription(
            user_id="u1",
            plan_id=basic.id,
            status=SubscriptionStatus.ACTIVE,
            current_period_start=FIXED_NOW - timedelta(days=1),
            current_period_end=FIXED_NOW + timedelta(days=29),
            plan_snapshot=basic.to_snapshot(),
        )
    )


def test_guard_requires_subscription(billing_services: BillingServices) -> None:
    client = TestClient(_build_app(billing_services))

    response = client.post("/practice", headers=HEADERS)

    assert response.status_code == 403
    detail = response.json()["detail"]
    assert detail["code"] == "SUBSCRIPTION_REQUIRED"
    assert detail["errorCode"] == "SUBSCRIPTION_REQUIRED"
    assert detail["trialAvailable"] is True
    assert detail["reason"] == "NO_SUBSCRIPTION"


def test_guard_counts_usage_until_limit(billing_services: BillingServices) -> None:
    _subscribe_basic(billing_services)
    client = TestClient(_build_app(billing_services))

    used = [client.post("/practice", headers=HEADERS).json()["used"] for _ in range(5)]
    blocked = client.post("/practice", headers=HEADERS)

    assert used == [1, 2, 3, 4, 5]
    assert blocked.status_code == 403
    detail = blocked.json()["detail"]
    assert detail["code"] == "USAGE_LIMIT_EXCEEDED"
    assert detail["used"] == 5
    assert detail["limit"] == 5
    assert detail["upgradeUrl"] == "/pricing"


def test_guard_does_not_count_uncommitted_calls(billing_services: BillingServices) -> None:
    _subscribe_basic(billing_services)
    client = TestClient(_build_app(billing_services))

    for _ in range(4):
        assert client.post("/chat/failing", headers=HEADERS).json() == {"committed": False}

    period_start = datetime(2025, 3, 9, 15, 0, tzinfo=timezone.utc)
    assert billing_services.store.quotas.find("u1", "daily_ai_chat", period_start) is None


def test_guard_returns_503_when_quota_store_is_down(
    billing_services: BillingServices, monkeypatch: pytest.MonkeyPatch
) -> None:
    def _boom(user_id):
        raise TransientStoreError("connection refused", operation="subscription.get")

    monkeypatch.setattr(billing_services.store.subscriptions, "get", _boom)
    client = TestClient(_build_app(billing_services))

    metered = client.post("/practice", headers=HEADERS)
    free = client.post("/vocabulary", headers=HEADERS)

    assert metered.status_code == 503
    assert metered.json()["detail"]["code"] == "billing.quota_unavailable"
    assert free.status_code == 200
    assert free.json() == {"canUse": True}


def test_guard_rejects_unknown_resource_at_definition() -> None:
    with pytest.raises(ValueError):
        require_feature_access("daily_essays", "aiPractice")
