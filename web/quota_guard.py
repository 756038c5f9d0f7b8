"""FastAPI dependency gating AI features on plan permissions and daily quotas."""

from __future__ import annotations

import logging

from fastapi import Depends, HTTPException, status

from core.billing_constants import FeatureFlag, ResourceType
from core.errors import TransientStoreError
from services.plan_guard import FeatureAccessDenied
from services.quota_service import FeatureAccessGrant, QuotaService
from web.deps import get_current_user_id, get_quota_service

logger = logging.getLogger(__name__)


async def enforce_feature_access(
    quotas: QuotaService,
    user_id: str,
    resource_type: ResourceType | str,
    feature_flag: FeatureFlag | str,
) -> FeatureAccessGrant:
    """Admit the request or raise the HTTP error the client should see."""
    try:
        return await quotas.require_feature_access(user_id, resource_type, feature_flag)
    except FeatureAccessDenied as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=exc.to_detail()) from exc
    except TransientStoreError as exc:
        logger.warning("Quota backend unavailable for resource=%s; denying request.", resource_type)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={
                "code": "billing.quota_unavailable",
                "message": "Usage limits cannot be verified right now. Please try again shortly.",
            },
        ) from exc


def require_feature_access(resource_type: ResourceType | str, feature_flag: FeatureFlag | str):
    """Dependency factory returning a ``FeatureAccessGrant``.

    The route must call ``await grant.commit()`` once the gated work succeeded;
    failed calls are not counted.
    """
    resource = ResourceType(resource_type)
    feature = FeatureFlag(feature_flag)

    async def _dependency(
        user_id: str = Depends(get_current_user_id),
        quotas: QuotaService = Depends(get_quota_service),
    ) -> FeatureAccessGrant:
        return await enforce_feature_access(quotas, user_id, resource, feature)

    return _dependency


__all__ = ["enforce_feature_access", "require_feature_access"]
