"""Error taxonomy shared by the billing services and routers."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional


@dataclass(eq=False)
class BillingError(RuntimeError):
    """Base class for expected billing failures carrying a machine-readable code."""

    code: str
    message: str
    context: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        RuntimeError.__init__(self, self.message)

    def __str__(self) -> str:
        return self.message

    def to_detail(self) -> Dict[str, Any]:
        detail: Dict[str, Any] = {"code": self.code, "message": self.message}
        if self.context:
            detail.update(self.context)
        return detail


class ValidationError(BillingError):
    """Input that can never succeed (unknown plan, malformed webhook metadata)."""


class PlanNotFoundError(ValidationError):
    def __init__(self, plan_id: str) -> None:
        super().__init__(
            code="PLAN_NOT_FOUND",
            message=f"Plan '{plan_id}' does not exist.",
            context={"planId": plan_id},
        )


class ConflictError(BillingError):
    """Request conflicts with the current subscription state."""


class TransientStoreError(BillingError):
    """Store timeout or connectivity failure."""

    def __init__(self, message: str, *, operation: Optional[str] = None) -> None:
        context = {"operation": operation} if operation else {}
        super().__init__(code="STORE_UNAVAILABLE", message=message, context=context)


class SubscriptionWriteError(BillingError):
    """A webhook-driven subscription write could not be persisted."""

    def __init__(self, message: str, *, user_id: Optional[str] = None, event_id: Optional[str] = None) -> None:
        context: Dict[str, Any] = {}
        if user_id:
            context["userId"] = user_id
        if event_id:
            context["eventId"] = event_id
        super().__init__(code="SUBSCRIPTION_WRITE_FAILED", message=message, context=context)


class StoreNotProvisionedError(RuntimeError):
    """Raised at startup when billing tables are missing."""


__all__ = [
    "BillingError",
    "ConflictError",
    "PlanNotFoundError",
    "StoreNotProvisionedError",
    "SubscriptionWriteError",
    "TransientStoreError",
    "ValidationError",
]
