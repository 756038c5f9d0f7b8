"""FastAPI application for the subscription and usage-quota service."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from core.env import env_bool
from core.env_utils import load_dotenv_if_available
from core.errors import (
    BillingError,
    ConflictError,
    SubscriptionWriteError,
    TransientStoreError,
    ValidationError,
)
from core.logging import get_logger, setup_logging
from services.payments.stripe_provider import PaymentProviderError
from services.plan_catalog_service import seed_plan_catalog
from services.plan_guard import FeatureAccessDenied
from web import routers
from web.deps import BillingServices, build_billing_services

load_dotenv_if_available()
setup_logging()
logger = get_logger(__name__)


def status_for_error(exc: BillingError) -> int:
    # Conflicts are reported as 400 with a reason code for client compatibility.
    if isinstance(exc, (ValidationError, ConflictError)):
        return status.HTTP_400_BAD_REQUEST
    if isinstance(exc, TransientStoreError):
        return status.HTTP_503_SERVICE_UNAVAILABLE
    if isinstance(exc, SubscriptionWriteError):
        return status.HTTP_500_INTERNAL_SERVER_ERROR
    if isinstance(exc, PaymentProviderError):
        return status.HTTP_502_BAD_GATEWAY
    return status.HTTP_400_BAD_REQUEST


def initialise_billing(services: BillingServices) -> None:
    """Fail fast when the schema is missing, then seed the plan catalog."""
    if env_bool("BILLING_SKIP_PROVISIONING_CHECK", False):
        logger.warning("Skipping billing schema provisioning check.")
    else:
        services.store.verify_provisioned()
    seed_plan_catalog(services.catalog)


def create_app(services: Optional[BillingServices] = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if getattr(app.state, "billing", None) is None:
            app.state.billing = build_billing_services()
        initialise_billing(app.state.billing)
        yield

    app = FastAPI(
        title="TOEIC Billing API",
        description="Subscription lifecycle and usage-quota enforcement.",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.billing = services

    @app.exception_handler(BillingError)
    async def handle_billing_error(request: Request, exc: BillingError) -> JSONResponse:
        status_code = status_for_error(exc)
        if status_code >= 500:
            logger.error("Billing request failed: %s", exc, extra={"code": exc.code, "path": request.url.path})
        return JSONResponse(status_code=status_code, content={"detail": exc.to_detail()})

    @app.exception_handler(FeatureAccessDenied)
    async def handle_access_denied(request: Request, exc: FeatureAccessDenied) -> JSONResponse:
        return JSONResponse(status_code=status.HTTP_403_FORBIDDEN, content={"detail": exc.to_detail()})

    @app.get("/", summary="Health Check", tags=["Default"])
    def health_check():
        return {"status": "ok", "message": "TOEIC billing API is running."}

    @app.get("/healthz", include_in_schema=False)
    def liveness_probe(request: Request):
        """Lightweight health probe."""
        billing = getattr(request.app.state, "billing", None)
        db_ok, db_error = billing.store.ping() if billing else (False, "billing services not initialised")
        payload = {"status": "ok" if db_ok else "unhealthy", "database": {"ok": db_ok}}
        if db_error:
            payload["database"]["error"] = db_error
        status_code = status.HTTP_200_OK if db_ok else status.HTTP_503_SERVICE_UNAVAILABLE
        return JSONResponse(status_code=status_code, content=payload)

    @app.get("/metrics", include_in_schema=False)
    def prometheus_metrics():
        """Expose Prometheus metrics."""
        return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)

    app.include_router(routers.billing.router, prefix="/api/v1")
    app.include_router(routers.health.router, prefix="/api/v1")
    return app


app = create_app()
