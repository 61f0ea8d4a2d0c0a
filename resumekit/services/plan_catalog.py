"""
Read-only access to plan definitions, regional pricing and feature grants.

Catalog editing lives in the admin console; nothing here writes.
"""
import logging
from decimal import Decimal
from typing import Dict, List, NamedTuple, Optional, Tuple

from sqlalchemy.orm import Session

from resumekit.core.errors import ValidationError, StaleCatalogError
from resumekit.core.plan_tables import BillingCycle, Currency, Region, REGION_CURRENCY
from resumekit.db.models.plan import SubscriptionPlan, PlanFeature

logger = logging.getLogger(__name__)


class ResolvedPrice(NamedTuple):
    plan_id: int
    amount: Decimal
    currency: str
    region: str


class PlanCatalog:
    """Catalog reader bound to one database session."""

    def __init__(self, db: Session):
        self.db = db

    def get_active_plans(self) -> List[SubscriptionPlan]:
        return (
            self.db.query(SubscriptionPlan)
            .filter(SubscriptionPlan.active.is_(True))
            .order_by(SubscriptionPlan.price, SubscriptionPlan.id)
            .all()
        )

    def find_plan(self, plan_id: int) -> Optional[SubscriptionPlan]:
        """Plan by id, active or not."""
        return self.db.query(SubscriptionPlan).filter(SubscriptionPlan.id == plan_id).first()

    def get_plan(self, plan_id: int) -> SubscriptionPlan:
        """
        Plan a user may switch to.

        Raises:
            ValidationError: unknown or inactive plan id
        """
        plan = self.find_plan(plan_id)
        if plan is None:
            raise ValidationError(f"Plan {plan_id} does not exist", {"plan_id": plan_id})
        if not plan.active:
            raise ValidationError(f"Plan {plan_id} is no longer offered", {"plan_id": plan_id})
        return plan

    def get_subscribed_plan(self, plan_id: int) -> SubscriptionPlan:
        """
        Plan an existing subscription points at. Retired plans still resolve.

        Raises:
            StaleCatalogError: the plan row is gone
        """
        plan = self.find_plan(plan_id)
        if plan is None:
            raise StaleCatalogError(f"Plan {plan_id} vanished from the catalog", {"plan_id": plan_id})
        return plan

    def price_for(self, plan: SubscriptionPlan, region: str) -> ResolvedPrice:
        """
        Price of ``plan`` in ``region``.

        Falls back to the plan's GLOBAL row, then to its base USD price, when
        the region has no row of its own. Freemium plans cost nothing anywhere.
        """
        region = Region(region)
        if plan.is_freemium:
            return ResolvedPrice(plan.id, Decimal("0"), REGION_CURRENCY[region].value, region.value)

        rows = {row.target_region: row for row in plan.pricing}
        row = rows.get(region.value)
        if row is None and region != Region.GLOBAL:
            logger.debug(f"No {region.value} pricing for plan_id={plan.id}, falling back to GLOBAL")
            row = rows.get(Region.GLOBAL.value)
        if row is not None:
            return ResolvedPrice(plan.id, Decimal(row.price), row.currency, row.target_region)

        return ResolvedPrice(plan.id, Decimal(plan.price or 0), Currency.USD.value, Region.GLOBAL.value)

    def get_pricing(self, plan_id: int, region: str) -> ResolvedPrice:
        return self.price_for(self.get_plan(plan_id), region)

    def get_features(self, plan_id: int) -> List[PlanFeature]:
        return (
            self.db.query(PlanFeature)
            .filter(PlanFeature.plan_id == plan_id)
            .order_by(PlanFeature.id)
            .all()
        )

    def build_price_table(
        self, plans: Optional[List[SubscriptionPlan]] = None
    ) -> Dict[Tuple[BillingCycle, Region], Dict[int, ResolvedPrice]]:
        """
        Every (billing cycle, region) cell filled with the plans priced in it.

        Cells with no plans are present and empty, so callers can index any
        combination without branching.
        """
        if plans is None:
            plans = self.get_active_plans()
        table: Dict[Tuple[BillingCycle, Region], Dict[int, ResolvedPrice]] = {
            (cycle, region): {} for cycle in BillingCycle for region in Region
        }
        for plan in plans:
            cycle = BillingCycle(plan.billing_cycle)
            for region in Region:
                table[(cycle, region)][plan.id] = self.price_for(plan, region.value)
        return table
