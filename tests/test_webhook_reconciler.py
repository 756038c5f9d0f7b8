from __future__ import annotations

import asyncio
import itertools
import threading
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

import pytest

from core.billing_constants import SubscriptionStatus
from core.errors import SubscriptionWriteError
from services.billing_types import ProviderSubscription, Subscription
from services.payments import webhook_reconciler as reconciler_module
from services.quota_service import LIFETIME_PERIOD
from web.deps import BillingServices

from tests.billing_helpers import FIXED_NOW, FakePaymentProvider

PERIOD_END = FIXED_NOW + timedelta(days=30)


def _event(event_id: str, event_type: str, obj: Dict[str, Any], *, created: datetime = FIXED_NOW) -> Dict[str, Any]:
    return {"id": event_id, "type": event_type, "created": int(created.timestamp()), "data": {"object": obj}}


def _checkout_event(
    session_id: str = "cs_test_1",
    *,
    user_id: Optional[str] = "u1",
    plan_id: Optional[str] = "basic_monthly",
    event_id: str = "evt_checkout",
    created: datetime = FIXED_NOW,
) -> Dict[str, Any]:
    metadata = {}
    if user_id:
        metadata["userId"] = user_id
    if plan_id:
        metadata["planId"] = plan_id
    return _event(
        event_id,
        reconciler_module.CHECKOUT_COMPLETED,
        {
            "id": session_id,
            "metadata": metadata,
            "customer": "cus_u1",
            "subscription": "sub_1",
            "amount_total": 98000,
            "currency": "jpy",
            "payment_status": "paid",
        },
        created=created,
    )


def _subscription_event(event_type: str, event_id: str, *, end, status: str = "active", **extra) -> Dict[str, Any]:
    obj = {
        "id": "sub_1",
        "status": status,
        "customer": "cus_u1",
        "current_period_start": int((end - timedelta(days=30)).timestamp()),
        "current_period_end": int(end.timestamp()),
        "cancel_at_period_end": False,
        "metadata": {"userId": "u1", "planId": "basic_monthly"},
    }
    obj.update(extra)
    return _event(event_id, event_type, obj)


def _invoice_event(
    event_type: str,
    event_id: str,
    *,
    end,
    subscription_id: str = "sub_unknown",
    paid_at: Optional[datetime] = None,
) -> Dict[str, Any]:
    transitions = {"paid_at": int(paid_at.timestamp())} if paid_at else {}
    return _event(
        event_id,
        event_type,
        {
            "id": f"in_{event_id}",
            "subscription": subscription_id,
            "subscription_details": {"metadata": {"userId": "u1"}},
            "status_transitions": transitions,
            "lines": {
                "data": [
                    {
                        "period": {
                            "start": int((end - timedelta(days=30)).timestamp()),
                            "end": int(end.timestamp()),
                        }
                    }
                ]
            },
        },
        created=paid_at or FIXED_NOW,
    )


def _start_checkout(services: BillingServices, provider: FakePaymentProvider, plan_id: str = "basic_monthly") -> str:
    provider.subscriptions["sub_1"] = ProviderSubscription(
        id="sub_1",
        status="active",
        current_period_start=FIXED_NOW,
        current_period_end=PERIOD_END,
        customer_id="cus_u1",
        metadata={"userId": "u1", "planId": plan_id},
    )
    result = asyncio.run(
        services.subscriptions.create_checkout_session(
            "u1", plan_id, success_url="https://app.test/ok", cancel_url="https://app.test/cancel"
        )
    )
    return result["sessionId"]


def _handle(services: BillingServices, event: Dict[str, Any]):
    return asyncio.run(services.reconciler.handle_event(event))


def _row(services: BillingServices) -> Subscription:
    return services.store.subscriptions.get("u1")


def test_checkout_completed_activates_pending_row(billing_services, fake_provider) -> None:
    session_id = _start_checkout(billing_services, fake_provider)
    assert _row(billing_services).status is SubscriptionStatus.PENDING

    outcome = _handle(billing_services, _checkout_event(session_id))

    assert outcome.result == reconciler_module.RESULT_APPLIED
    row = _row(billing_services)
    assert row.status is SubscriptionStatus.ACTIVE
    assert row.plan_id == "basic_monthly"
    assert row.current_period_end == PERIOD_END
    assert row.stripe_subscription_id == "sub_1"
    assert row.plan_snapshot["daily_practice_limit"] == 5

    records, total = billing_services.store.payments.list_for_user("u1")
    assert total == 1
    assert records[0].amount == 98000
    assert billing_services.checkout_contexts.get(session_id) is None
    vocab = billing_services.store.quotas.find("u1", "vocabulary_words", LIFETIME_PERIOD.start)
    assert vocab is not None and vocab.limit_count == 2000

    entries = billing_services.store.webhook_events.entries()
    assert [entry.result for entry in entries] == ["applied"]


def test_duplicate_delivery_is_idempotent(billing_services, fake_provider, clock) -> None:
    session_id = _start_checkout(billing_services, fake_provider)
    event = _checkout_event(session_id, created=FIXED_NOW + timedelta(minutes=1))

    _handle(billing_services, event)
    first = _row(billing_services)
    clock.advance(minutes=5)
    second_outcome = _handle(billing_services, event)
    second = _row(billing_services)

    assert second_outcome.result == reconciler_module.RESULT_APPLIED
    assert second.to_dict() == first.to_dict()
    assert second.plan_snapshot == first.plan_snapshot
    assert second.last_payment_at == FIXED_NOW + timedelta(minutes=1)
    assert billing_services.store.payments.list_for_user("u1")[1] == 1


def test_replayed_invoice_never_moves_last_payment_back(billing_services, fake_provider) -> None:
    session_id = _start_checkout(billing_services, fake_provider)
    _handle(billing_services, _checkout_event(session_id, created=FIXED_NOW + timedelta(hours=1)))

    outcome = _handle(
        billing_services,
        _invoice_event(reconciler_module.PAYMENT_SUCCEEDED, "evt_paid", end=PERIOD_END, subscription_id="sub_1", paid_at=FIXED_NOW),
    )

    assert outcome.result == reconciler_module.RESULT_APPLIED
    assert _row(billing_services).last_payment_at == FIXED_NOW + timedelta(hours=1)


def test_unsupported_event_type_is_logged_and_ignored(billing_services) -> None:
    outcome = _handle(billing_services, _event("evt_x", "customer.created", {"id": "cus_1"}))

    assert outcome.result == reconciler_module.RESULT_IGNORED
    entry = billing_services.store.webhook_events.get("evt_x")
    assert entry.result == "ignored_event_type"
    assert entry.payload["type"] == "customer.created"


@pytest.mark.parametrize(
    "event",
    [
        _checkout_event(user_id=None),
        _checkout_event(plan_id=None),
        _checkout_event(plan_id="enterprise"),
    ],
)
def test_malformed_checkout_events_change_nothing(billing_services, fake_provider, event) -> None:
    _start_checkout(billing_services, fake_provider)
    before = _row(billing_services)

    outcome = _handle(billing_services, event)

    assert outcome.result == reconciler_module.RESULT_MALFORMED
    assert _row(billing_services) == before


def test_checkout_plan_must_match_issued_session(billing_services, fake_provider) -> None:
    session_id = _start_checkout(billing_services, fake_provider, plan_id="basic_monthly")

    outcome = _handle(billing_services, _checkout_event(session_id, plan_id="premium_yearly"))

    assert outcome.result == reconciler_module.RESULT_MALFORMED
    assert _row(billing_services).status is SubscriptionStatus.PENDING
    assert billing_services.checkout_contexts.get(session_id) is not None


def test_event_for_user_without_row_is_dropped(billing_services) -> None:
    outcome = _handle(billing_services, _checkout_event("cs_unknown"))

    assert outcome.result == reconciler_module.RESULT_MISSING_SUBSCRIPTION
    assert billing_services.store.subscriptions.get("u1") is None
    assert billing_services.store.webhook_events.get("evt_checkout").result == "missing_subscription"


def test_out_of_order_invoice_does_not_roll_back_period(billing_services, fake_provider) -> None:
    session_id = _start_checkout(billing_services, fake_provider)
    _handle(billing_services, _checkout_event(session_id))

    renewed_end = PERIOD_END + timedelta(days=30)
    updated = _handle(
        billing_services,
        _subscription_event(reconciler_module.SUBSCRIPTION_UPDATED, "evt_renewed", end=renewed_end),
    )
    late = _handle(
        billing_services,
        _invoice_event(reconciler_module.PAYMENT_SUCCEEDED, "evt_late_invoice", end=PERIOD_END),
    )

    assert updated.result == reconciler_module.RESULT_APPLIED
    assert late.result == reconciler_module.RESULT_STALE
    assert _row(billing_services).current_period_end == renewed_end


def test_payment_failed_marks_past_due(billing_services, fake_provider) -> None:
    session_id = _start_checkout(billing_services, fake_provider)
    _handle(billing_services, _checkout_event(session_id))

    outcome = _handle(
        billing_services,
        _invoice_event(reconciler_module.PAYMENT_FAILED, "evt_failed", end=PERIOD_END, subscription_id="sub_1"),
    )

    assert outcome.result == reconciler_module.RESULT_APPLIED
    assert _row(billing_services).status is SubscriptionStatus.PAST_DUE


def test_late_update_cannot_revive_deleted_subscription(billing_services, fake_provider) -> None:
    session_id = _start_checkout(billing_services, fake_provider)
    _handle(billing_services, _checkout_event(session_id))

    deleted = _handle(
        billing_services,
        _subscription_event(reconciler_module.SUBSCRIPTION_DELETED, "evt_deleted", end=PERIOD_END, status="canceled"),
    )
    late = _handle(
        billing_services,
        _subscription_event(reconciler_module.SUBSCRIPTION_UPDATED, "evt_late_update", end=PERIOD_END),
    )

    assert deleted.result == reconciler_module.RESULT_APPLIED
    assert late.result == reconciler_module.RESULT_STALE
    assert _row(billing_services).status is SubscriptionStatus.CANCELED


def test_subscription_without_user_metadata_is_malformed(billing_services) -> None:
    event = _subscription_event(reconciler_module.SUBSCRIPTION_UPDATED, "evt_anon", end=PERIOD_END, metadata={})

    assert _handle(billing_services, event).result == reconciler_module.RESULT_MALFORMED


def test_write_failure_is_logged_and_raised(billing_services, fake_provider, monkeypatch) -> None:
    session_id = _start_checkout(billing_services, fake_provider)
    monkeypatch.setattr(
        billing_services.store.subscriptions,
        "compare_and_set",
        lambda subscription, expected_version: None,
    )

    with pytest.raises(SubscriptionWriteError) as excinfo:
        _handle(billing_services, _checkout_event(session_id))

    assert excinfo.value.context["eventId"] == "evt_checkout"
    assert billing_services.store.webhook_events.get("evt_checkout").result == "write_failed"
    assert _row(billing_services).status is SubscriptionStatus.PENDING


def test_invoice_before_checkout_activates_proposed_plan(billing_services, fake_provider) -> None:
    premium = billing_services.catalog.get_plan("premium_monthly")
    billing_services.store.subscriptions.create(
        Subscription(
            user_id="u1",
            plan_id=premium.id,
            status=SubscriptionStatus.CANCELED,
            stripe_customer_id="cus_u1",
            current_period_start=FIXED_NOW - timedelta(days=60),
            current_period_end=FIXED_NOW - timedelta(days=30),
            canceled_at=FIXED_NOW - timedelta(days=30),
            plan_snapshot=premium.to_snapshot(),
        )
    )
    session_id = _start_checkout(billing_services, fake_provider, plan_id="basic_monthly")
    assert _row(billing_services).pending_plan_id == "basic_monthly"

    paid = _handle(
        billing_services,
        _invoice_event(reconciler_module.PAYMENT_SUCCEEDED, "evt_paid", end=PERIOD_END, subscription_id="sub_1"),
    )
    mismatched = _handle(billing_services, _checkout_event(session_id, plan_id="premium_yearly"))

    assert paid.result == reconciler_module.RESULT_APPLIED
    assert mismatched.result == reconciler_module.RESULT_MALFORMED
    row = _row(billing_services)
    assert row.status is SubscriptionStatus.ACTIVE
    assert row.plan_id == "basic_monthly"
    assert row.pending_plan_id is None
    assert row.canceled_at is None
    snapshot = asyncio.run(billing_services.quotas.check_quota("u1", "daily_practice"))
    assert snapshot.limit == 5


@pytest.mark.parametrize("order", list(itertools.permutations(("checkout", "invoice", "updated"))))
def test_payment_events_converge_in_any_order(billing_services, fake_provider, order) -> None:
    session_id = _start_checkout(billing_services, fake_provider)
    paid_at = FIXED_NOW + timedelta(minutes=2)
    events = {
        "checkout": _checkout_event(session_id, created=FIXED_NOW + timedelta(minutes=1)),
        "invoice": _invoice_event(
            reconciler_module.PAYMENT_SUCCEEDED, "evt_paid", end=PERIOD_END, subscription_id="sub_1", paid_at=paid_at
        ),
        "updated": _subscription_event(reconciler_module.SUBSCRIPTION_UPDATED, "evt_updated", end=PERIOD_END),
    }

    # Every event once in the given order, then the first one redelivered.
    for name in order + order[:1]:
        assert _handle(billing_services, events[name]).result == reconciler_module.RESULT_APPLIED

    row = _row(billing_services)
    assert row.to_dict() == {
        "userId": "u1",
        "planId": "basic_monthly",
        "status": "active",
        "stripeCustomerId": "cus_u1",
        "stripeSubscriptionId": "sub_1",
        "currentPeriodStart": FIXED_NOW.isoformat(),
        "currentPeriodEnd": PERIOD_END.isoformat(),
        "trialStart": None,
        "trialEnd": None,
        "cancelAtPeriodEnd": False,
        "canceledAt": None,
        "lastPaymentAt": paid_at.isoformat(),
        "pendingPlanId": None,
    }
    assert row.plan_snapshot["daily_practice_limit"] == 5


def test_plan_and_checkout_lookups_run_off_the_event_loop(billing_services, fake_provider, monkeypatch) -> None:
    caller_thread = threading.get_ident()
    calls = []

    def _tracked(method):
        def wrapper(*args, **kwargs):
            calls.append((method.__name__, threading.get_ident()))
            return method(*args, **kwargs)

        return wrapper

    for name in ("record", "get", "pop"):
        monkeypatch.setattr(billing_services.checkout_contexts, name, _tracked(getattr(billing_services.checkout_contexts, name)))
    for name in ("get_plan", "find_plan"):
        monkeypatch.setattr(billing_services.catalog, name, _tracked(getattr(billing_services.catalog, name)))

    session_id = _start_checkout(billing_services, fake_provider)
    _handle(billing_services, _checkout_event(session_id))

    assert {"record", "get", "pop", "get_plan", "find_plan"} <= {name for name, _ in calls}
    assert all(thread != caller_thread for _, thread in calls)
