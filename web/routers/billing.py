"""Billing routes: plans, subscription lifecycle, usage checks and Stripe webhooks."""

from __future__ import annotations

import asyncio
import logging

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status

from core.billing_constants import ResourceType
from core.env import env_str
from schemas.api.billing import (
    AdminSubscriptionOverrideRequest,
    BillingHistoryResponse,
    CheckoutSessionRequest,
    CheckoutSessionResponse,
    PlanListResponse,
    QuotaSnapshotSchema,
    StartTrialRequest,
    SubscriptionInfoResponse,
    SubscriptionResponse,
    WebhookAckResponse,
    WebhookReplayResponse,
)
from services.payments.webhook_replay import replay_webhook_event
from services.quota_service import QuotaService
from services.subscription_service import SubscriptionService
from web.deps import (
    BillingServices,
    get_billing_services,
    get_current_user_id,
    get_quota_service,
    get_subscription_service,
    require_admin,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/billing", tags=["Billing"])

DEFAULT_SUCCESS_URL = "/billing/success?session_id={CHECKOUT_SESSION_ID}"
DEFAULT_CANCEL_URL = "/pricing"


@router.get("/plans", response_model=PlanListResponse, summary="List purchasable and trial plans.")
async def read_plans(services: BillingServices = Depends(get_billing_services)) -> PlanListResponse:
    plans = await asyncio.to_thread(services.catalog.list_plans)
    return PlanListResponse(plans=[plan.to_dict() for plan in plans])


@router.get(
    "/user/subscription",
    response_model=SubscriptionInfoResponse,
    summary="Current subscription, permissions and usage for the signed-in user.",
)
async def read_user_subscription(
    user_id: str = Depends(get_current_user_id),
    subscriptions: SubscriptionService = Depends(get_subscription_service),
) -> SubscriptionInfoResponse:
    return SubscriptionInfoResponse(**await subscriptions.get_subscription_info(user_id))


@router.post(
    "/user/subscription/start-trial",
    response_model=SubscriptionResponse,
    summary="Start the one-time free trial.",
)
async def start_user_trial(
    payload: StartTrialRequest | None = None,
    user_id: str = Depends(get_current_user_id),
    subscriptions: SubscriptionService = Depends(get_subscription_service),
) -> SubscriptionResponse:
    plan_id = payload.planId if payload else None
    subscription = await subscriptions.start_trial(user_id, plan_id)
    return SubscriptionResponse(subscription=subscription.to_dict())


@router.get(
    "/user/usage/check/{resource_type}",
    response_model=QuotaSnapshotSchema,
    summary="Report whether a metered resource can be used right now.",
)
async def check_user_usage(
    resource_type: str,
    user_id: str = Depends(get_current_user_id),
    quotas: QuotaService = Depends(get_quota_service),
) -> QuotaSnapshotSchema:
    try:
        resource = ResourceType(resource_type)
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={
                "code": "INVALID_RESOURCE_TYPE",
                "message": f"Unknown resource type '{resource_type}'.",
                "allowed": [item.value for item in ResourceType],
            },
        ) from exc
    snapshot = await quotas.check_quota(user_id, resource)
    return QuotaSnapshotSchema(**snapshot.to_dict())


@router.post(
    "/create-checkout-session",
    response_model=CheckoutSessionResponse,
    summary="Create a Stripe checkout session for a paid plan.",
)
async def create_checkout_session(
    payload: CheckoutSessionRequest,
    user_id: str = Depends(get_current_user_id),
    subscriptions: SubscriptionService = Depends(get_subscription_service),
) -> CheckoutSessionResponse:
    result = await subscriptions.create_checkout_session(
        user_id,
        payload.planId,
        success_url=payload.successUrl or env_str("CHECKOUT_SUCCESS_URL", DEFAULT_SUCCESS_URL) or DEFAULT_SUCCESS_URL,
        cancel_url=payload.cancelUrl or env_str("CHECKOUT_CANCEL_URL", DEFAULT_CANCEL_URL) or DEFAULT_CANCEL_URL,
        email=payload.customerEmail,
    )
    return CheckoutSessionResponse(**result)


@router.post(
    "/user/subscription/cancel",
    response_model=SubscriptionResponse,
    summary="Cancel at the end of the current period (trials end immediately).",
)
async def cancel_user_subscription(
    user_id: str = Depends(get_current_user_id),
    subscriptions: SubscriptionService = Depends(get_subscription_service),
) -> SubscriptionResponse:
    subscription = await subscriptions.cancel(user_id)
    return SubscriptionResponse(subscription=subscription.to_dict())


@router.post(
    "/user/subscription/reactivate",
    response_model=SubscriptionResponse,
    summary="Undo a scheduled cancellation.",
)
async def reactivate_user_subscription(
    user_id: str = Depends(get_current_user_id),
    subscriptions: SubscriptionService = Depends(get_subscription_service),
) -> SubscriptionResponse:
    subscription = await subscriptions.reactivate(user_id)
    return SubscriptionResponse(subscription=subscription.to_dict())


@router.get(
    "/user/billing-history",
    response_model=BillingHistoryResponse,
    summary="Completed checkout payments for the signed-in user.",
)
async def read_billing_history(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1, le=100),
    user_id: str = Depends(get_current_user_id),
    subscriptions: SubscriptionService = Depends(get_subscription_service),
) -> BillingHistoryResponse:
    return BillingHistoryResponse(**await subscriptions.billing_history(user_id, page=page, limit=limit))


@router.post(
    "/webhooks",
    response_model=WebhookAckResponse,
    summary="Receive Stripe webhook events.",
    include_in_schema=False,
)
async def handle_stripe_webhook(
    request: Request,
    services: BillingServices = Depends(get_billing_services),
) -> WebhookAckResponse:
    if services.provider is None:
        logger.error("Stripe webhook received but payments are not configured.")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"code": "billing.webhook_unavailable", "message": "Payments are not configured."},
        )
    payload = await request.body()
    signature = request.headers.get("stripe-signature") or ""
    event = services.provider.construct_event(payload, signature)
    outcome = await services.reconciler.handle_event(event)
    return WebhookAckResponse(result=outcome.result, eventId=outcome.event_id)


@router.post(
    "/admin/subscriptions/{user_id}",
    response_model=SubscriptionResponse,
    summary="Operator override of a user's subscription row.",
)
async def override_user_subscription(
    user_id: str,
    payload: AdminSubscriptionOverrideRequest,
    admin_id: str = Depends(require_admin),
    subscriptions: SubscriptionService = Depends(get_subscription_service),
) -> SubscriptionResponse:
    subscription = await subscriptions.admin_override(
        user_id,
        payload.to_fields(),
        plan_id=payload.planId,
        admin_id=admin_id,
    )
    return SubscriptionResponse(subscription=subscription.to_dict())


@router.post(
    "/admin/webhooks/{event_id}/replay",
    response_model=WebhookReplayResponse,
    summary="Re-run a logged Stripe webhook delivery.",
)
async def replay_stripe_webhook(
    event_id: str,
    _admin_id: str = Depends(require_admin),
    services: BillingServices = Depends(get_billing_services),
) -> WebhookReplayResponse:
    result = await replay_webhook_event(services.store, services.reconciler, event_id)
    return WebhookReplayResponse(**result)


__all__ = ["router"]
