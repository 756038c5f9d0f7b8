"""SQLAlchemy implementation of the billing repositories."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Callable, Iterator, List, Mapping, Optional, Tuple

from sqlalchemy import func, inspect, select, text, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from core.billing_constants import SubscriptionStatus
from core.errors import StoreNotProvisionedError, TransientStoreError
from models.billing import (
    BillingWebhookEvent,
    PaymentTransaction,
    SubscriptionPlan,
    UsageQuota,
    UserSubscription,
)
from services.billing_store import PaymentRecord, WebhookEventEntry, apply_fields
from services.billing_types import FeatureFlags, Plan, QuotaRecord, Subscription, as_utc

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], Session]

REQUIRED_TABLES = (
    SubscriptionPlan.__tablename__,
    UserSubscription.__tablename__,
    UsageQuota.__tablename__,
    BillingWebhookEvent.__tablename__,
    PaymentTransaction.__tablename__,
)

_WRITABLE_SUBSCRIPTION_COLUMNS = (
    "plan_id",
    "stripe_customer_id",
    "stripe_subscription_id",
    "stripe_session_id",
    "status",
    "current_period_start",
    "current_period_end",
    "trial_start",
    "trial_end",
    "cancel_at_period_end",
    "canceled_at",
    "last_payment_at",
    "plan_snapshot",
    "pending_plan_id",
    "updated_by",
)


def _default_session_factory() -> SessionFactory:
    import database

    return database.SessionLocal


class _SqlRepository:
    def __init__(self, session_factory: Optional[SessionFactory] = None) -> None:
        self._session_factory = session_factory or _default_session_factory()

    @contextmanager
    def _session(self, operation: str) -> Iterator[Session]:
        session = self._session_factory()
        try:
            yield session
        except IntegrityError:
            session.rollback()
            raise
        except SQLAlchemyError as exc:
            session.rollback()
            logger.exception("Billing store operation failed: %s", operation)
            raise TransientStoreError(f"Billing store unavailable during {operation}.", operation=operation) from exc
        finally:
            session.close()


def _row_to_subscription(row: UserSubscription) -> Subscription:
    try:
        status = SubscriptionStatus(row.status)
    except ValueError:
        logger.warning("Unknown subscription status '%s' for user=%s; treating as pending.", row.status, row.user_id)
        status = SubscriptionStatus.PENDING
    return Subscription(
        user_id=row.user_id,
        plan_id=row.plan_id,
        status=status,
        stripe_customer_id=row.stripe_customer_id,
        stripe_subscription_id=row.stripe_subscription_id,
        stripe_session_id=row.stripe_session_id,
        current_period_start=as_utc(row.current_period_start),
        current_period_end=as_utc(row.current_period_end),
        trial_start=as_utc(row.trial_start),
        trial_end=as_utc(row.trial_end),
        cancel_at_period_end=bool(row.cancel_at_period_end),
        canceled_at=as_utc(row.canceled_at),
        last_payment_at=as_utc(row.last_payment_at),
        plan_snapshot=dict(row.plan_snapshot) if row.plan_snapshot else None,
        pending_plan_id=row.pending_plan_id,
        version=int(row.version or 0),
        updated_by=row.updated_by,
        created_at=as_utc(row.created_at),
        updated_at=as_utc(row.updated_at),
    )


def _subscription_values(subscription: Subscription) -> dict[str, Any]:
    values: dict[str, Any] = {}
    for column in _WRITABLE_SUBSCRIPTION_COLUMNS:
        value = getattr(subscription, column)
        if isinstance(value, SubscriptionStatus):
            value = value.value
        elif isinstance(value, datetime):
            value = as_utc(value)
        values[column] = value
    return values


def _row_to_plan(row: SubscriptionPlan) -> Plan:
    return Plan(
        id=row.id,
        name=row.name,
        price_cents=int(row.price_cents or 0),
        currency=row.currency,
        interval=row.interval,
        features=FeatureFlags.from_mapping(row.features),
        daily_practice_limit=row.daily_practice_limit,
        daily_ai_chat_limit=row.daily_ai_chat_limit,
        max_vocabulary_words=row.max_vocabulary_words,
        name_jp=row.name_jp,
        description=row.description,
        stripe_price_id=row.stripe_price_id,
        trial_days=row.trial_days,
        is_active=bool(row.is_active),
        is_popular=bool(row.is_popular),
        sort_order=int(row.sort_order or 0),
    )


def _row_to_quota(row: UsageQuota) -> QuotaRecord:
    return QuotaRecord(
        user_id=row.user_id,
        resource_type=row.resource_type,
        period_start=as_utc(row.period_start),
        period_end=as_utc(row.period_end),
        used_count=int(row.used_count or 0),
        limit_count=row.limit_count,
    )


class SqlSubscriptionStore(_SqlRepository):
    def _load(self, session: Session, user_id: str) -> Optional[UserSubscription]:
        return session.execute(select(UserSubscription).where(UserSubscription.user_id == user_id)).scalar_one_or_none()

    def get(self, user_id: str) -> Optional[Subscription]:
        with self._session("subscription.get") as session:
            row = self._load(session, user_id)
            return _row_to_subscription(row) if row else None

    def create(self, subscription: Subscription) -> bool:
        try:
            with self._session("subscription.create") as session:
                session.add(UserSubscription(user_id=subscription.user_id, version=1, **_subscription_values(subscription)))
                session.commit()
                return True
        except IntegrityError:
            logger.info("Subscription row for user=%s already exists; create skipped.", subscription.user_id)
            return False

    def compare_and_set(self, subscription: Subscription, expected_version: int) -> Optional[Subscription]:
        with self._session("subscription.compare_and_set") as session:
            result = session.execute(
                update(UserSubscription)
                .where(
                    UserSubscription.user_id == subscription.user_id,
                    UserSubscription.version == expected_version,
                )
                .values(
                    version=UserSubscription.version + 1,
                    updated_at=func.now(),
                    **_subscription_values(subscription),
                )
            )
            if result.rowcount != 1:
                session.rollback()
                return None
            session.commit()
            row = self._load(session, subscription.user_id)
            return _row_to_subscription(row) if row else None

    def upsert(self, user_id: str, fields: Mapping[str, Any]) -> Subscription:
        with self._session("subscription.upsert") as session:
            row = self._load(session, user_id)
            if row is None:
                base = apply_fields(Subscription(user_id=user_id, plan_id=str(fields.get("plan_id") or "")), fields)
                row = UserSubscription(user_id=user_id, version=1, **_subscription_values(base))
                session.add(row)
            else:
                merged = apply_fields(_row_to_subscription(row), fields)
                for column, value in _subscription_values(merged).items():
                    setattr(row, column, value)
                row.version = int(row.version or 0) + 1
            session.commit()
            session.refresh(row)
            return _row_to_subscription(row)


class SqlQuotaStore(_SqlRepository):
    @staticmethod
    def _match(user_id: str, resource_type: str, period_start: datetime):
        return (
            UsageQuota.user_id == user_id,
            UsageQuota.resource_type == resource_type,
            UsageQuota.period_start == as_utc(period_start),
        )

    def find(self, user_id: str, resource_type: str, period_start: datetime) -> Optional[QuotaRecord]:
        with self._session("quota.find") as session:
            row = session.execute(
                select(UsageQuota).where(*self._match(user_id, resource_type, period_start))
            ).scalar_one_or_none()
            return _row_to_quota(row) if row else None

    def create(self, record: QuotaRecord) -> bool:
        try:
            with self._session("quota.create") as session:
                session.add(
                    UsageQuota(
                        user_id=record.user_id,
                        resource_type=record.resource_type,
                        period_start=as_utc(record.period_start),
                        period_end=as_utc(record.period_end),
                        used_count=record.used_count,
                        limit_count=record.limit_count,
                    )
                )
                session.commit()
                return True
        except IntegrityError:
            return False

    def atomic_increment(
        self,
        user_id: str,
        resource_type: str,
        period_start: datetime,
        amount: int,
        *,
        period_end: datetime,
        limit_count: Optional[int],
    ) -> int:
        # UPDATE first; a unique-violation on the fallback INSERT means another
        # request created the row concurrently, so the UPDATE is retried.
        for _attempt in range(3):
            try:
                with self._session("quota.atomic_increment") as session:
                    result = session.execute(
                        update(UsageQuota)
                        .where(*self._match(user_id, resource_type, period_start))
                        .values(used_count=UsageQuota.used_count + amount, updated_at=func.now())
                        .returning(UsageQuota.used_count)
                    )
                    value = result.scalar_one_or_none()
                    if value is None:
                        session.add(
                            UsageQuota(
                                user_id=user_id,
                                resource_type=resource_type,
                                period_start=as_utc(period_start),
                                period_end=as_utc(period_end),
                                used_count=amount,
                                limit_count=limit_count,
                            )
                        )
                        session.flush()
                        value = amount
                    session.commit()
                    return int(value)
            except IntegrityError:
                logger.debug("Concurrent quota row creation for user=%s resource=%s; retrying.", user_id, resource_type)
                continue
        raise TransientStoreError("Quota increment did not converge.", operation="quota.atomic_increment")


class SqlWebhookEventStore(_SqlRepository):
    def record(self, entry: WebhookEventEntry) -> None:
        with self._session("webhook_event.record") as session:
            session.add(
                BillingWebhookEvent(
                    event_id=entry.event_id,
                    event_type=entry.event_type,
                    user_id=entry.user_id,
                    result=entry.result,
                    message=entry.message,
                    payload=dict(entry.payload) if entry.payload is not None else None,
                    processed_at=as_utc(entry.processed_at),
                )
            )
            session.commit()

    def get(self, event_id: str) -> Optional[WebhookEventEntry]:
        with self._session("webhook_event.get") as session:
            row = session.execute(
                select(BillingWebhookEvent)
                .where(BillingWebhookEvent.event_id == event_id)
                .order_by(BillingWebhookEvent.created_at.desc())
                .limit(1)
            ).scalar_one_or_none()
            if row is None:
                return None
            return WebhookEventEntry(
                event_id=row.event_id,
                event_type=row.event_type,
                result=row.result,
                user_id=row.user_id,
                message=row.message,
                payload=row.payload,
                processed_at=as_utc(row.processed_at),
                created_at=as_utc(row.created_at),
            )


class SqlPaymentStore(_SqlRepository):
    def record(self, payment: PaymentRecord) -> bool:
        try:
            with self._session("payment.record") as session:
                session.add(
                    PaymentTransaction(
                        user_id=payment.user_id,
                        stripe_session_id=payment.stripe_session_id,
                        amount=payment.amount,
                        currency=payment.currency,
                        status=payment.status,
                    )
                )
                session.commit()
                return True
        except IntegrityError:
            return False

    def list_for_user(self, user_id: str, *, offset: int = 0, limit: int = 10) -> Tuple[List[PaymentRecord], int]:
        with self._session("payment.list") as session:
            total = session.execute(
                select(func.count()).select_from(PaymentTransaction).where(PaymentTransaction.user_id == user_id)
            ).scalar_one()
            rows = (
                session.execute(
                    select(PaymentTransaction)
                    .where(PaymentTransaction.user_id == user_id)
                    .order_by(PaymentTransaction.created_at.desc())
                    .offset(offset)
                    .limit(limit)
                )
                .scalars()
                .all()
            )
            records = [
                PaymentRecord(
                    user_id=row.user_id,
                    stripe_session_id=row.stripe_session_id,
                    amount=int(row.amount or 0),
                    currency=row.currency,
                    status=row.status,
                    created_at=as_utc(row.created_at),
                )
                for row in rows
            ]
            return records, int(total or 0)


class SqlPlanStore(_SqlRepository):
    def get(self, plan_id: str) -> Optional[Plan]:
        with self._session("plan.get") as session:
            row = session.get(SubscriptionPlan, plan_id)
            return _row_to_plan(row) if row else None

    def list(self, *, active_only: bool = True) -> List[Plan]:
        with self._session("plan.list") as session:
            query = select(SubscriptionPlan).order_by(SubscriptionPlan.sort_order, SubscriptionPlan.id)
            if active_only:
                query = query.where(SubscriptionPlan.is_active.is_(True))
            return [_row_to_plan(row) for row in session.execute(query).scalars().all()]

    def insert_if_absent(self, plan: Plan) -> bool:
        try:
            with self._session("plan.insert_if_absent") as session:
                if session.get(SubscriptionPlan, plan.id) is not None:
                    return False
                session.add(
                    SubscriptionPlan(
                        id=plan.id,
                        name=plan.name,
                        name_jp=plan.name_jp,
                        description=plan.description,
                        price_cents=plan.price_cents,
                        currency=plan.currency,
                        interval=plan.interval,
                        stripe_price_id=plan.stripe_price_id,
                        features=plan.features.to_dict(),
                        daily_practice_limit=plan.daily_practice_limit,
                        daily_ai_chat_limit=plan.daily_ai_chat_limit,
                        max_vocabulary_words=plan.max_vocabulary_words,
                        trial_days=plan.trial_days,
                        is_active=plan.is_active,
                        is_popular=plan.is_popular,
                        sort_order=plan.sort_order,
                    )
                )
                session.commit()
                return True
        except IntegrityError:
            return False


class SqlBillingStore:
    """Aggregate of the SQL repositories sharing one session factory."""

    def __init__(self, session_factory: Optional[SessionFactory] = None) -> None:
        factory = session_factory or _default_session_factory()
        self._session_factory = factory
        self.subscriptions = SqlSubscriptionStore(factory)
        self.quotas = SqlQuotaStore(factory)
        self.webhook_events = SqlWebhookEventStore(factory)
        self.payments = SqlPaymentStore(factory)
        self.plans = SqlPlanStore(factory)

    def ping(self) -> Tuple[bool, Optional[str]]:
        session = self._session_factory()
        try:
            session.execute(text("SELECT 1"))
            return True, None
        except SQLAlchemyError as exc:
            return False, str(exc)
        finally:
            session.close()

    def verify_provisioned(self) -> None:
        session = self._session_factory()
        try:
            inspector = inspect(session.get_bind())
            missing = [name for name in REQUIRED_TABLES if not inspector.has_table(name)]
        except SQLAlchemyError as exc:
            raise StoreNotProvisionedError(f"Unable to inspect billing schema: {exc}") from exc
        finally:
            session.close()
        if missing:
            raise StoreNotProvisionedError(
                f"Billing tables are not provisioned: {', '.join(missing)}. Run the schema migration first."
            )


__all__ = [
    "REQUIRED_TABLES",
    "SqlBillingStore",
    "SqlPaymentStore",
    "SqlPlanStore",
    "SqlQuotaStore",
    "SqlSubscriptionStore",
    "SqlWebhookEventStore",
]
