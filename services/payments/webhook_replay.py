"""Manual replay of logged Stripe webhook deliveries."""

from __future__ import annotations

import asyncio
from typing import Any, Dict

from core.errors import ValidationError
from services.billing_store import BillingStore
from services.payments.webhook_reconciler import WebhookReconciler


async def replay_webhook_event(store: BillingStore, reconciler: WebhookReconciler, event_id: str) -> Dict[str, Any]:
    """Re-run the logged payload for ``event_id`` through the reconciler.

    Used by operators after fixing whatever made the first delivery a no-op,
    for example a checkout event that arrived before the pending row existed.
    """
    if not event_id:
        raise ValidationError(code="WEBHOOK_EVENT_ID_REQUIRED", message="An event id is required.")

    entry = await asyncio.to_thread(store.webhook_events.get, event_id)
    if entry is None or not entry.payload:
        raise ValidationError(
            code="WEBHOOK_EVENT_NOT_FOUND",
            message=f"No logged webhook delivery found for event '{event_id}'.",
            context={"eventId": event_id},
        )

    outcome = await reconciler.handle_event(dict(entry.payload), replay=True)
    payload = outcome.to_dict()
    payload["previousResult"] = entry.result
    return payload


__all__ = ["replay_webhook_event"]
