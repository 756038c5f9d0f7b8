"""Remembers which plan each checkout session was issued for."""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Optional

from services.ttl_store import TTLStore

logger = logging.getLogger(__name__)

_TTL_SECONDS = 72 * 3600
_KEY_PREFIX = "checkout_context:"


@dataclass(slots=True)
class CheckoutContext:
    session_id: str
    user_id: str
    plan_id: str
    created_at: str


def _normalize_optional(value: object) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


class CheckoutContextStore:
    def __init__(self, store: TTLStore, *, ttl_seconds: int = _TTL_SECONDS) -> None:
        self._store = store
        self._ttl_seconds = ttl_seconds

    def record(self, *, session_id: str, user_id: str, plan_id: str) -> None:
        """Persist the user/plan a checkout session was created for."""
        if not session_id:
            return
        context = CheckoutContext(
            session_id=session_id,
            user_id=user_id,
            plan_id=plan_id,
            created_at=datetime.now(timezone.utc).isoformat(),
        )
        self._store.set(_KEY_PREFIX + session_id, json.dumps(asdict(context)), self._ttl_seconds)

    def get(self, session_id: Optional[str]) -> Optional[CheckoutContext]:
        if not session_id:
            return None
        raw = self._store.get(_KEY_PREFIX + session_id)
        if not raw:
            return None
        try:
            item = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Discarding unreadable checkout context for session %s", session_id)
            return None
        user_id = _normalize_optional(item.get("user_id"))
        plan_id = _normalize_optional(item.get("plan_id"))
        if not user_id or not plan_id:
            return None
        return CheckoutContext(
            session_id=session_id,
            user_id=user_id,
            plan_id=plan_id,
            created_at=str(item.get("created_at") or ""),
        )

    def pop(self, session_id: Optional[str]) -> Optional[CheckoutContext]:
        context = self.get(session_id)
        if context is not None:
            self._store.delete(_KEY_PREFIX + context.session_id)
        return context


__all__ = ["CheckoutContext", "CheckoutContextStore"]
