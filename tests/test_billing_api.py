from __future__ import annotations

from datetime import timedelta
from typing import Generator

import pytest
from fastapi.testclient import TestClient

from core.billing_constants import SubscriptionStatus
from services.billing_types import ProviderSubscription, Subscription
from web.deps import BillingServices
from web.main import create_app

from tests.billing_helpers import FIXED_NOW, FakePaymentProvider

USER_HEADERS = {"X-User-Id": "u1"}


@pytest.fixture()
def client(billing_services: BillingServices) -> Generator[TestClient, None, None]:
    app = create_app(billing_services)
    with TestClient(app) as test_client:
        yield test_client


def test_list_plans(client: TestClient) -> None:
    response = client.get("/api/v1/billing/plans")

    assert response.status_code == 200
    plans = response.json()["plans"]
    assert [plan["id"] for plan in plans][:4] == ["free", "trial", "premium_monthly", "premium_yearly"]
    assert plans[2]["isPopular"] is True
    assert plans[1]["limits"]["dailyAiChat"] == 20


def test_subscription_requires_authenticated_user(client: TestClient) -> None:
    response = client.get("/api/v1/billing/user/subscription")

    assert response.status_code == 401
    assert response.json()["detail"]["code"] == "auth.required"


def test_subscription_info_for_new_user(client: TestClient) -> None:
    response = client.get("/api/v1/billing/user/subscription", headers=USER_HEADERS)

    assert response.status_code == 200
    payload = response.json()
    assert payload["subscription"] is None
    assert payload["plan"]["id"] == "free"
    assert payload["hasAccess"] is False
    assert payload["reason"] == "NO_SUBSCRIPTION"
    assert payload["trialAvailable"] is True
    assert payload["permissions"]["vocabulary"] is True
    assert payload["permissions"]["aiPractice"] is False


def test_start_trial_then_reject_second_attempt(client: TestClient) -> None:
    first = client.post("/api/v1/billing/user/subscription/start-trial", headers=USER_HEADERS)
    second = client.post("/api/v1/billing/user/subscription/start-trial", headers=USER_HEADERS, json={})

    assert first.status_code == 200
    assert first.json()["subscription"]["status"] == "trialing"
    assert second.status_code == 400
    assert second.json()["detail"]["code"] == "ALREADY_TRIALING"


def test_usage_check_rejects_unknown_resource(client: TestClient) -> None:
    response = client.get("/api/v1/billing/user/usage/check/daily_essays", headers=USER_HEADERS)

    assert response.status_code == 400
    assert response.json()["detail"]["code"] == "INVALID_RESOURCE_TYPE"


def test_usage_check_reports_snapshot(client: TestClient) -> None:
    client.post("/api/v1/billing/user/subscription/start-trial", headers=USER_HEADERS)

    response = client.get("/api/v1/billing/user/usage/check/daily_ai_chat", headers=USER_HEADERS)

    assert response.status_code == 200
    payload = response.json()
    assert payload["canUse"] is True
    assert payload["limit"] == 20
    assert payload["remaining"] == 20
    assert payload["resetAt"].startswith("2025-03-10T15:00:00")


def test_checkout_session_uses_configured_urls(
    client: TestClient, fake_provider: FakePaymentProvider, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setenv("CHECKOUT_SUCCESS_URL", "https://toeic.test/billing/success")

    response = client.post(
        "/api/v1/billing/create-checkout-session",
        headers=USER_HEADERS,
        json={"planId": "premium_monthly"},
    )

    assert response.status_code == 200
    assert response.json()["sessionId"] == "cs_test_1"
    assert fake_provider.sessions[0]["success_url"] == "https://toeic.test/billing/success"
    assert fake_provider.sessions[0]["cancel_url"] == "/pricing"


def test_checkout_session_for_unknown_plan(client: TestClient) -> None:
    response = client.post(
        "/api/v1/billing/create-checkout-session",
        headers=USER_HEADERS,
        json={"planId": "platinum"},
    )

    assert response.status_code == 400
    assert response.json()["detail"]["code"] == "PLAN_NOT_FOUND"


def test_checkout_provider_error_maps_to_bad_gateway(client: TestClient, fake_provider: FakePaymentProvider) -> None:
    fake_provider.fail_checkout = True

    response = client.post(
        "/api/v1/billing/create-checkout-session",
        headers=USER_HEADERS,
        json={"planId": "premium_monthly"},
    )

    assert response.status_code == 502
    assert response.json()["detail"]["code"] == "PAYMENT_PROVIDER_ERROR"


def test_webhook_rejects_bad_signature(client: TestClient) -> None:
    response = client.post("/api/v1/billing/webhooks", content=b"{}", headers={"stripe-signature": "forged"})

    assert response.status_code == 400
    assert response.json()["detail"]["code"] == "INVALID_SIGNATURE"


def test_checkout_webhook_round_trip(
    client: TestClient, billing_services: BillingServices, fake_provider: FakePaymentProvider
) -> None:
    fake_provider.subscriptions["sub_1"] = ProviderSubscription(
        id="sub_1",
        status="active",
        current_period_start=FIXED_NOW,
        current_period_end=FIXED_NOW + timedelta(days=30),
        metadata={"userId": "u1"},
    )
    checkout = client.post(
        "/api/v1/billing/create-checkout-session", headers=USER_HEADERS, json={"planId": "premium_monthly"}
    ).json()
    fake_provider.events["sig_ok"] = {
        "id": "evt_1",
        "type": "checkout.session.completed",
        "data": {
            "object": {
                "id": checkout["sessionId"],
                "metadata": {"userId": "u1", "planId": "premium_monthly"},
                "subscription": "sub_1",
                "customer": "cus_u1",
            }
        },
    }

    response = client.post("/api/v1/billing/webhooks", content=b"{}", headers={"stripe-signature": "sig_ok"})

    assert response.status_code == 200
    assert response.json() == {"received": True, "result": "applied", "eventId": "evt_1"}
    info = client.get("/api/v1/billing/user/subscription", headers=USER_HEADERS).json()
    assert info["subscription"]["status"] == "active"
    assert info["permissions"]["aiPractice"] is True
    history = client.get("/api/v1/billing/user/billing-history", headers=USER_HEADERS).json()
    assert history["total"] == 1
    assert history["transactions"][0]["amount"] == 300000


def test_cancel_without_subscription(client: TestClient) -> None:
    response = client.post("/api/v1/billing/user/subscription/cancel", headers=USER_HEADERS)

    assert response.status_code == 400
    assert response.json()["detail"]["code"] == "NO_ACTIVE_SUBSCRIPTION"


def test_admin_override_requires_token(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("ADMIN_API_TOKEN", "secret-token")

    forbidden = client.post(
        "/api/v1/billing/admin/subscriptions/u2",
        json={"status": "active"},
        headers={"Authorization": "Bearer wrong"},
    )
    allowed = client.post(
        "/api/v1/billing/admin/subscriptions/u2",
        json={"status": "active", "planId": "premium_yearly", "currentPeriodEnd": "2025-04-10T00:00:00Z"},
        headers={"Authorization": "Bearer secret-token", "X-Admin-Id": "ops-3"},
    )

    assert forbidden.status_code == 403
    assert allowed.status_code == 200
    assert allowed.json()["subscription"]["planId"] == "premium_yearly"
    assert allowed.json()["subscription"]["status"] == "active"


def test_admin_replay_of_early_checkout_event(
    client: TestClient,
    billing_services: BillingServices,
    fake_provider: FakePaymentProvider,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("ADMIN_API_TOKEN", "secret-token")
    fake_provider.events["sig_early"] = {
        "id": "evt_early",
        "type": "checkout.session.completed",
        "data": {
            "object": {
                "id": "cs_early",
                "metadata": {"userId": "u1", "planId": "premium_monthly"},
                "subscription": {
                    "id": "sub_9",
                    "status": "active",
                    "current_period_start": int(FIXED_NOW.timestamp()),
                    "current_period_end": int((FIXED_NOW + timedelta(days=30)).timestamp()),
                    "metadata": {"userId": "u1"},
                },
            }
        },
    }
    early = client.post("/api/v1/billing/webhooks", content=b"{}", headers={"stripe-signature": "sig_early"})
    assert early.json()["result"] == "missing_subscription"

    billing_services.store.subscriptions.create(
        Subscription(user_id="u1", plan_id="premium_monthly", status=SubscriptionStatus.PENDING)
    )
    replay = client.post(
        "/api/v1/billing/admin/webhooks/evt_early/replay",
        headers={"Authorization": "Bearer secret-token"},
    )

    assert replay.status_code == 200
    assert replay.json()["result"] == "applied"
    assert replay.json()["previousResult"] == "missing_subscription"
    assert billing_services.store.subscriptions.get("u1").status is SubscriptionStatus.ACTIVE
    assert billing_services.store.webhook_events.get("evt_early").result == "replay_applied"


def test_replay_of_unknown_event(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("ADMIN_API_TOKEN", "secret-token")

    response = client.post(
        "/api/v1/billing/admin/webhooks/evt_missing/replay",
        headers={"Authorization": "Bearer secret-token"},
    )

    assert response.status_code == 400
    assert response.json()["detail"]["code"] == "WEBHOOK_EVENT_NOT_FOUND"


def test_health_endpoints(client: TestClient) -> None:
    assert client.get("/healthz").json()["status"] == "ok"
    status = client.get("/api/v1/health/status").json()
    assert status["database"]["ok"] is True
    assert status["payments"]["configured"] is True
    metrics = client.get("/metrics")
    assert metrics.status_code == 200
    assert "billing_webhook_events_total" in metrics.text or "billing_quota_decisions_total" in metrics.text
