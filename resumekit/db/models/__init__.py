"""
Database models module.

This module imports all database models to ensure they are registered with SQLAlchemy's Base.metadata
before table creation.

All models must be imported here to be included in database migrations and table creation.
"""
from resumekit.db.models.user import User
from resumekit.db.models.billing_details import UserBillingDetails
from resumekit.db.models.plan import SubscriptionPlan, PlanPricing, Feature, PlanFeature
from resumekit.db.models.subscription import UserSubscription
from resumekit.db.models.checkout import CheckoutSession, CreditNote
from resumekit.db.models.usage import UsageEvent

# Explicitly export all models for clarity
__all__ = [
    "User",
    "UserBillingDetails",
    "SubscriptionPlan",
    "PlanPricing",
    "Feature",
    "PlanFeature",
    "UserSubscription",
    "CheckoutSession",
    "CreditNote",
    "UsageEvent",
]
