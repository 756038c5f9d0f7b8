"""Prometheus collectors for quota decisions, store failures and webhook results."""

from __future__ import annotations

from typing import Optional

from prometheus_client import REGISTRY, Counter, Histogram

from core.logging import get_logger

logger = get_logger(__name__)

_STORE_LATENCY_BUCKETS = (0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 0.8, 1.0, 2.0)


def _existing(name: str):
    collectors = getattr(REGISTRY, "_names_to_collectors", None)
    if isinstance(collectors, dict):
        return collectors.get(name) or collectors.get(f"{name}_total")
    return None


def _counter(name: str, documentation: str, labelnames: tuple[str, ...]) -> Optional[Counter]:
    try:
        return Counter(name, documentation, labelnames)
    except ValueError:  # duplicate registration on module reload
        logger.debug("Counter %s already registered; reusing collector.", name)
        return _existing(name)


def _histogram(name: str, documentation: str, labelnames: tuple[str, ...]) -> Optional[Histogram]:
    try:
        return Histogram(name, documentation, labelnames, buckets=_STORE_LATENCY_BUCKETS)
    except ValueError:
        logger.debug("Histogram %s already registered; reusing collector.", name)
        return _existing(name)


_QUOTA_DECISIONS = _counter(
    "billing_quota_decisions_total",
    "Feature access decisions made by the quota enforcer.",
    ("resource", "outcome"),
)
_STORE_FAILURES = _counter(
    "billing_store_failures_total",
    "Billing store operations that failed or timed out.",
    ("operation", "cause"),
)
_WEBHOOK_RESULTS = _counter(
    "billing_webhook_events_total",
    "Payment provider webhook deliveries by event type and result.",
    ("event_type", "result"),
)
_SUBSCRIPTION_WRITE_FAILURES = _counter(
    "billing_subscription_write_failures_total",
    "Webhook-driven subscription writes that could not be persisted.",
    ("event_type",),
)
_STORE_LATENCY = _histogram(
    "billing_store_latency_seconds",
    "Latency of billing store calls issued by the quota enforcer.",
    ("operation",),
)


def record_quota_decision(resource: str, outcome: str) -> None:
    if _QUOTA_DECISIONS is None:
        return
    _QUOTA_DECISIONS.labels(resource=resource or "unknown", outcome=outcome).inc()


def record_store_failure(operation: str, cause: str) -> None:
    if _STORE_FAILURES is None:
        return
    _STORE_FAILURES.labels(operation=operation, cause=cause).inc()


def record_webhook_result(event_type: Optional[str], result: str) -> None:
    if _WEBHOOK_RESULTS is None:
        return
    _WEBHOOK_RESULTS.labels(event_type=event_type or "unknown", result=result).inc()


def record_subscription_write_failure(event_type: Optional[str]) -> None:
    if _SUBSCRIPTION_WRITE_FAILURES is None:
        return
    _SUBSCRIPTION_WRITE_FAILURES.labels(event_type=event_type or "unknown").inc()


def observe_store_latency(operation: str, seconds: float) -> None:
    if _STORE_LATENCY is None or seconds < 0:
        return
    _STORE_LATENCY.labels(operation=operation).observe(seconds)


__all__ = [
    "observe_store_latency",
    "record_quota_decision",
    "record_store_failure",
    "record_subscription_write_failure",
    "record_webhook_result",
]
