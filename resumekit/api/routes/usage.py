"""
Entitlement endpoints.

Shows what the authenticated user's plan grants, next to how much of each
limit is used in the current reset window.
"""
import logging
from datetime import datetime

from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from resumekit.core.auth_dependency import get_db, get_current_user_obj
from resumekit.core.billing_dependency import get_subscription_service
from resumekit.core.errors import NotFoundError
from resumekit.db.models.user import User
from resumekit.schemas.subscription import EntitlementsResponse
from resumekit.services.feature_entitlements import FeatureEntitlementResolver
from resumekit.services.subscription_service import SubscriptionService
from resumekit.services.usage_service import DbUsageTracker

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/me", tags=["Usage"])


@router.get("/entitlements", response_model=EntitlementsResponse, status_code=status.HTTP_200_OK)
def get_entitlements(
    user: User = Depends(get_current_user_obj),
    db: Session = Depends(get_db),
    service: SubscriptionService = Depends(get_subscription_service),
):
    """
    Feature limits of the current plan merged with usage.

    Returns:
    - subscription_id, plan_id
    - features: limit_type, limit_value, reset_frequency, used, remaining, unlimited

    Requires authentication via Bearer token.
    """
    subscription = service.get_current_subscription(user.id)
    if subscription is None:
        raise NotFoundError("No active subscription", {"user_id": user.id})

    resolver = FeatureEntitlementResolver(db, service.catalog)
    features = resolver.get_entitlements_with_usage(subscription.id, DbUsageTracker(db), datetime.utcnow())

    logger.debug(f"Entitlements requested: user_id={user.id}, plan_id={subscription.plan_id}")

    return {"subscription_id": subscription.id, "plan_id": subscription.plan_id, "features": features}
