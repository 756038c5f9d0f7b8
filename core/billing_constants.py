"""Shared billing enums and reason codes used across services and routers."""

from __future__ import annotations

from enum import Enum
from typing import FrozenSet


class SubscriptionStatus(str, Enum):
    NONE = "none"
    PENDING = "pending"
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"

    def __str__(self) -> str:  # pragma: no cover - convenience
        return self.value


class ResourceType(str, Enum):
    DAILY_PRACTICE = "daily_practice"
    DAILY_AI_CHAT = "daily_ai_chat"
    VOCABULARY_WORDS = "vocabulary_words"

    def __str__(self) -> str:  # pragma: no cover - convenience
        return self.value

    @property
    def is_daily(self) -> bool:
        return self.value.startswith("daily_")


class FeatureFlag(str, Enum):
    AI_PRACTICE = "aiPractice"
    AI_CHAT = "aiChat"
    VOCABULARY = "vocabulary"
    EXPORT_DATA = "exportData"
    VIEW_MISTAKES = "viewMistakes"

    def __str__(self) -> str:  # pragma: no cover - convenience
        return self.value


class AccessReason(str, Enum):
    NO_SUBSCRIPTION = "NO_SUBSCRIPTION"
    SUBSCRIPTION_INACTIVE = "SUBSCRIPTION_INACTIVE"
    EXPIRED = "EXPIRED"


class DenialCode(str, Enum):
    SUBSCRIPTION_REQUIRED = "SUBSCRIPTION_REQUIRED"
    USAGE_LIMIT_EXCEEDED = "USAGE_LIMIT_EXCEEDED"


class TrialRejection(str, Enum):
    ALREADY_PAID = "ALREADY_PAID"
    ALREADY_TRIALING = "ALREADY_TRIALING"
    TRIAL_ALREADY_USED = "TRIAL_ALREADY_USED"


# Statuses that never grant paid access on their own.
INACTIVE_STATUSES: FrozenSet[SubscriptionStatus] = frozenset(
    {
        SubscriptionStatus.NONE,
        SubscriptionStatus.PENDING,
        SubscriptionStatus.PAST_DUE,
        SubscriptionStatus.CANCELED,
    }
)

FREE_PLAN_ID = "free"
TRIAL_PLAN_ID = "trial"

__all__ = [
    "AccessReason",
    "DenialCode",
    "FREE_PLAN_ID",
    "FeatureFlag",
    "INACTIVE_STATUSES",
    "ResourceType",
    "SubscriptionStatus",
    "TRIAL_PLAN_ID",
    "TrialRejection",
]
