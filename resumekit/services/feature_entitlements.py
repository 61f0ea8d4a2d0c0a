"""
Feature entitlements for a subscription.

The sole source of feature limits for both display and enforcement. Limits
come from the catalog for the subscription's current plan; usage is owned by
the usage tracker and only merged in for reporting, never changed here.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy.orm import Session

from resumekit.core.errors import NotFoundError
from resumekit.core.plan_tables import LimitType
from resumekit.db.models.subscription import UserSubscription
from resumekit.services.plan_catalog import PlanCatalog

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Entitlement:
    feature_code: str
    feature_name: str
    limit_type: str
    limit_value: Optional[int]
    reset_frequency: str

    @property
    def unlimited(self) -> bool:
        return self.limit_type == LimitType.UNLIMITED.value

    def as_dict(self) -> Dict:
        return {
            "feature_code": self.feature_code,
            "feature_name": self.feature_name,
            "limit_type": self.limit_type,
            "limit_value": self.limit_value,
            "reset_frequency": self.reset_frequency,
        }


class FeatureEntitlementResolver:
    """Stateless resolver; holds only the session and catalog it reads from."""

    def __init__(self, db: Session, catalog: Optional[PlanCatalog] = None):
        self.db = db
        self.catalog = catalog or PlanCatalog(db)

    def for_plan(self, plan_id: int) -> List[Entitlement]:
        entitlements = []
        for plan_feature in self.catalog.get_features(plan_id):
            if not plan_feature.is_enabled:
                continue
            limit_type = LimitType(plan_feature.limit_type)
            entitlements.append(Entitlement(
                feature_code=plan_feature.feature.code,
                feature_name=plan_feature.feature.name,
                limit_type=limit_type.value,
                limit_value=None if limit_type == LimitType.UNLIMITED else plan_feature.limit_value,
                reset_frequency=plan_feature.reset_frequency or "NEVER",
            ))
        return entitlements

    def get_entitlements(self, subscription_id: int) -> List[Entitlement]:
        subscription = self.db.get(UserSubscription, subscription_id)
        if subscription is None:
            raise NotFoundError(f"Subscription {subscription_id} not found", {"subscription_id": subscription_id})
        return self.for_plan(subscription.plan_id)

    def get_entitlements_with_usage(self, subscription_id: int, usage_tracker, now: datetime) -> List[Dict]:
        """
        Entitlements merged with usage in each feature's current reset window.

        ``remaining`` is None when the feature is unlimited or a plain on/off
        switch.
        """
        subscription = self.db.get(UserSubscription, subscription_id)
        if subscription is None:
            raise NotFoundError(f"Subscription {subscription_id} not found", {"subscription_id": subscription_id})

        merged = []
        for entitlement in self.for_plan(subscription.plan_id):
            used = usage_tracker.usage_for(
                subscription.user_id, entitlement.feature_code, entitlement.reset_frequency, now
            )
            if entitlement.limit_type == LimitType.COUNT.value:
                remaining = max(0, (entitlement.limit_value or 0) - used)
            else:
                remaining = None
            row = entitlement.as_dict()
            row.update({"used": used, "remaining": remaining, "unlimited": entitlement.unlimited})
            merged.append(row)

        logger.debug(f"Entitlements resolved: subscription_id={subscription_id}, features={len(merged)}")
        return merged
