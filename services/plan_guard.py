"""Feature-access denial raised by the quota enforcer and rendered by the API."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from core.billing_constants import AccessReason, DenialCode, FeatureFlag
from core.env import env_str
from services.billing_types import QuotaSnapshot, isoformat_utc

DEFAULT_UPGRADE_URL = "/pricing"

_FEATURE_LABELS: Dict[str, str] = {
    FeatureFlag.AI_PRACTICE.value: "AI practice",
    FeatureFlag.AI_CHAT.value: "AI chat",
    FeatureFlag.VOCABULARY.value: "Vocabulary",
    FeatureFlag.EXPORT_DATA.value: "Data export",
    FeatureFlag.VIEW_MISTAKES.value: "Mistake review",
}


def upgrade_url() -> str:
    return env_str("BILLING_UPGRADE_URL", DEFAULT_UPGRADE_URL) or DEFAULT_UPGRADE_URL


@dataclass(eq=False)
class FeatureAccessDenied(RuntimeError):
    """Raised when a feature is not part of the user's plan or its quota is spent."""

    code: DenialCode
    message: str
    feature: Optional[str] = None
    resource_type: Optional[str] = None
    used: int = 0
    limit: Optional[int] = None
    reset_at: Optional[datetime] = None
    reason: Optional[AccessReason] = None
    trial_available: bool = False
    upgrade_url: str = DEFAULT_UPGRADE_URL

    def __post_init__(self) -> None:
        RuntimeError.__init__(self, self.message)

    def to_detail(self) -> Dict[str, Any]:
        detail: Dict[str, Any] = {
            "code": self.code.value,
            "errorCode": self.code.value,
            "message": self.message,
            "used": self.used,
            "limit": self.limit,
            "resetAt": isoformat_utc(self.reset_at),
            "upgradeUrl": self.upgrade_url,
            "trialAvailable": self.trial_available,
        }
        if self.feature:
            detail["feature"] = self.feature
        if self.resource_type:
            detail["resourceType"] = self.resource_type
        if self.reason:
            detail["reason"] = self.reason.value
        return detail


def _feature_label(feature: str) -> str:
    return _FEATURE_LABELS.get(feature, feature)


def subscription_required(
    feature: str,
    snapshot: QuotaSnapshot,
    *,
    reason: Optional[AccessReason],
    trial_available: bool,
) -> FeatureAccessDenied:
    label = _feature_label(feature)
    if trial_available:
        message = f"{label} requires a subscription. Start the free trial to unlock it."
    else:
        message = f"{label} requires an active subscription."
    return FeatureAccessDenied(
        code=DenialCode.SUBSCRIPTION_REQUIRED,
        message=message,
        feature=feature,
        resource_type=snapshot.resource_type,
        used=snapshot.used,
        limit=snapshot.limit,
        reset_at=snapshot.reset_at,
        reason=reason,
        trial_available=trial_available,
        upgrade_url=upgrade_url(),
    )


def usage_limit_exceeded(feature: str, snapshot: QuotaSnapshot, *, trial_available: bool) -> FeatureAccessDenied:
    label = _feature_label(feature)
    return FeatureAccessDenied(
        code=DenialCode.USAGE_LIMIT_EXCEEDED,
        message=f"{label} limit reached ({snapshot.used}/{snapshot.limit}). It resets at the next period.",
        feature=feature,
        resource_type=snapshot.resource_type,
        used=snapshot.used,
        limit=snapshot.limit,
        reset_at=snapshot.reset_at,
        trial_available=trial_available,
        upgrade_url=upgrade_url(),
    )


__all__ = ["FeatureAccessDenied", "subscription_required", "upgrade_url", "usage_limit_exceeded"]
