"""Billing API schemas."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from core.billing_constants import SubscriptionStatus


class FeatureFlagsSchema(BaseModel):
    aiPractice: bool = False
    aiChat: bool = False
    vocabulary: bool = False
    exportData: bool = False
    viewMistakes: bool = False


class PlanLimitsSchema(BaseModel):
    dailyPractice: Optional[int] = Field(default=None, description="Daily AI practice generations; null means unlimited.")
    dailyAiChat: Optional[int] = Field(default=None, description="Daily AI chat messages; null means unlimited.")
    vocabularyWords: Optional[int] = Field(default=None, description="Saved vocabulary words; null means unlimited.")


class PlanSchema(BaseModel):
    id: str
    name: str
    nameJp: Optional[str] = None
    priceCents: int
    currency: str
    interval: str
    features: FeatureFlagsSchema
    limits: PlanLimitsSchema
    trialDays: Optional[int] = None
    isPopular: bool = False


class PlanListResponse(BaseModel):
    plans: List[PlanSchema]


class SubscriptionSchema(BaseModel):
    userId: str
    planId: str
    status: SubscriptionStatus
    stripeCustomerId: Optional[str] = None
    stripeSubscriptionId: Optional[str] = None
    currentPeriodStart: Optional[str] = None
    currentPeriodEnd: Optional[str] = None
    trialStart: Optional[str] = None
    trialEnd: Optional[str] = None
    cancelAtPeriodEnd: bool = False
    canceledAt: Optional[str] = None
    lastPaymentAt: Optional[str] = None
    pendingPlanId: Optional[str] = None


class QuotaSnapshotSchema(BaseModel):
    resourceType: str
    canUse: bool
    used: int
    limit: Optional[int] = None
    remaining: Optional[int] = None
    resetAt: Optional[str] = None


class SubscriptionInfoResponse(BaseModel):
    subscription: Optional[SubscriptionSchema] = None
    plan: PlanSchema
    permissions: FeatureFlagsSchema
    hasAccess: bool
    reason: Optional[str] = None
    trialAvailable: bool
    usage: Dict[str, QuotaSnapshotSchema]


class StartTrialRequest(BaseModel):
    planId: Optional[str] = Field(default=None, description="Trial plan id; defaults to the standard trial plan.")


class SubscriptionResponse(BaseModel):
    subscription: SubscriptionSchema


class CheckoutSessionRequest(BaseModel):
    planId: str = Field(..., description="Plan to purchase.")
    successUrl: Optional[str] = Field(default=None, description="Redirect after a successful checkout.")
    cancelUrl: Optional[str] = Field(default=None, description="Redirect when the checkout is abandoned.")
    customerEmail: Optional[str] = Field(default=None, description="Email used when creating the provider customer.")


class CheckoutSessionResponse(BaseModel):
    sessionId: str
    url: str
    planId: str


class PaymentTransactionSchema(BaseModel):
    sessionId: str
    amount: int
    currency: str
    status: str
    createdAt: Optional[str] = None


class BillingHistoryResponse(BaseModel):
    transactions: List[PaymentTransactionSchema]
    total: int
    page: int
    limit: int


class WebhookAckResponse(BaseModel):
    received: bool = True
    result: str
    eventId: Optional[str] = None


_OVERRIDE_FIELD_MAP = {
    "status": "status",
    "currentPeriodStart": "current_period_start",
    "currentPeriodEnd": "current_period_end",
    "trialStart": "trial_start",
    "trialEnd": "trial_end",
    "cancelAtPeriodEnd": "cancel_at_period_end",
}


class AdminSubscriptionOverrideRequest(BaseModel):
    planId: Optional[str] = Field(default=None, description="Plan to assign; its snapshot is stored with the row.")
    status: Optional[SubscriptionStatus] = None
    currentPeriodStart: Optional[datetime] = None
    currentPeriodEnd: Optional[datetime] = None
    trialStart: Optional[datetime] = None
    trialEnd: Optional[datetime] = None
    cancelAtPeriodEnd: Optional[bool] = None
    note: Optional[str] = Field(default=None, max_length=500)

    def to_fields(self) -> Dict[str, Any]:
        provided = self.model_dump(exclude_unset=True)
        return {column: provided[key] for key, column in _OVERRIDE_FIELD_MAP.items() if key in provided}


class WebhookReplayResponse(BaseModel):
    eventId: Optional[str] = None
    eventType: Optional[str] = None
    result: str
    userId: Optional[str] = None
    message: Optional[str] = None
    previousResult: Optional[str] = None


__all__ = [
    "AdminSubscriptionOverrideRequest",
    "BillingHistoryResponse",
    "CheckoutSessionRequest",
    "CheckoutSessionResponse",
    "FeatureFlagsSchema",
    "PaymentTransactionSchema",
    "PlanListResponse",
    "PlanSchema",
    "QuotaSnapshotSchema",
    "StartTrialRequest",
    "SubscriptionInfoResponse",
    "SubscriptionResponse",
    "SubscriptionSchema",
    "WebhookAckResponse",
    "WebhookReplayResponse",
]
