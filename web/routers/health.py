"""Health-related API endpoints."""

from __future__ import annotations

from typing import Optional, Tuple

from fastapi import APIRouter, Depends

from web.deps import BillingServices, get_billing_services

router = APIRouter(prefix="/health", tags=["Health"])


def ping_store(services: BillingServices) -> Tuple[bool, Optional[str]]:
    """Return billing store connectivity status and optional error message."""
    return services.store.ping()


@router.get(
    "/status",
    summary="Service runtime status",
    description="Aggregated service health information used by monitoring probes.",
)
def read_service_status(services: BillingServices = Depends(get_billing_services)):
    db_ok, db_error = ping_store(services)
    payload = {
        "status": "ok" if db_ok else "degraded",
        "database": {"ok": db_ok},
        "payments": {"configured": services.provider is not None},
    }
    if db_error:
        payload["database"]["error"] = db_error
    return payload


__all__ = ["router", "ping_store"]
