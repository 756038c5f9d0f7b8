"""SQLAlchemy models for plans, subscriptions, usage quotas and billing provenance."""

from __future__ import annotations

import uuid

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    func,
)

from database import Base


class SubscriptionPlan(Base):
    """Seeded plan catalog; rows are inserted once and never overwritten."""

    __tablename__ = "subscription_plans"
    __table_args__ = {"extend_existing": True}

    id = Column(String(64), primary_key=True)
    name = Column(String(120), nullable=False)
    name_jp = Column(String(120), nullable=True)
    description = Column(Text, nullable=True)
    price_cents = Column(Integer, nullable=False, default=0)
    currency = Column(String(8), nullable=False, default="jpy")
    interval = Column(String(16), nullable=False, default="month")
    stripe_price_id = Column(String(120), nullable=True)
    features = Column(JSON, nullable=False, default=dict)
    daily_practice_limit = Column(Integer, nullable=True)
    daily_ai_chat_limit = Column(Integer, nullable=True)
    max_vocabulary_words = Column(Integer, nullable=True)
    trial_days = Column(Integer, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    is_popular = Column(Boolean, nullable=False, default=False)
    sort_order = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)


class UserSubscription(Base):
    """Single per-user billing/trial record. Never hard-deleted."""

    __tablename__ = "user_subscriptions"
    __table_args__ = {"extend_existing": True}

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(String(64), nullable=False, unique=True, index=True)
    plan_id = Column(String(64), ForeignKey("subscription_plans.id", onupdate="CASCADE"), nullable=False)
    stripe_customer_id = Column(String(120), nullable=True, index=True)
    stripe_subscription_id = Column(String(120), nullable=True, index=True)
    stripe_session_id = Column(String(120), nullable=True)
    status = Column(String(16), nullable=False, default="pending")
    current_period_start = Column(DateTime(timezone=True), nullable=True)
    current_period_end = Column(DateTime(timezone=True), nullable=True)
    trial_start = Column(DateTime(timezone=True), nullable=True)
    trial_end = Column(DateTime(timezone=True), nullable=True)
    cancel_at_period_end = Column(Boolean, nullable=False, default=False)
    canceled_at = Column(DateTime(timezone=True), nullable=True)
    last_payment_at = Column(DateTime(timezone=True), nullable=True)
    plan_snapshot = Column(JSON, nullable=True)
    # Plan proposed by the latest checkout, activated once payment is confirmed.
    pending_plan_id = Column(String(64), nullable=True)
    version = Column(Integer, nullable=False, default=0)
    updated_by = Column(String(64), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)


class UsageQuota(Base):
    """Per-user, per-resource usage counter for one reset period."""

    __tablename__ = "usage_quotas"
    __table_args__ = (
        UniqueConstraint("user_id", "resource_type", "period_start", name="uq_usage_quota_period"),
        CheckConstraint("used_count >= 0", name="ck_usage_quota_used_non_negative"),
        {"extend_existing": True},
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(64), nullable=False, index=True)
    resource_type = Column(String(32), nullable=False)
    period_start = Column(DateTime(timezone=True), nullable=False)
    period_end = Column(DateTime(timezone=True), nullable=False)
    used_count = Column(Integer, nullable=False, default=0)
    limit_count = Column(Integer, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)


class BillingWebhookEvent(Base):
    """Provenance log of every payment-provider delivery and its outcome."""

    __tablename__ = "billing_webhook_events"
    __table_args__ = {"extend_existing": True}

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    event_id = Column(String(120), nullable=True, index=True)
    event_type = Column(String(80), nullable=True, index=True)
    user_id = Column(String(64), nullable=True, index=True)
    result = Column(String(64), nullable=False, index=True)
    message = Column(Text, nullable=True)
    payload = Column(JSON, nullable=True)
    processed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), index=True)


class PaymentTransaction(Base):
    """Completed checkout payments, used for billing history."""

    __tablename__ = "payment_transactions"
    __table_args__ = {"extend_existing": True}

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(String(64), nullable=False, index=True)
    stripe_session_id = Column(String(120), nullable=False, unique=True)
    amount = Column(Integer, nullable=False, default=0)
    currency = Column(String(8), nullable=False, default="jpy")
    status = Column(String(32), nullable=False, default="succeeded")
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), index=True)


__all__ = [
    "BillingWebhookEvent",
    "PaymentTransaction",
    "SubscriptionPlan",
    "UsageQuota",
    "UserSubscription",
]
