"""
Plan catalog models.

Owned by catalog management; the subscription lifecycle only reads them.
"""
from sqlalchemy import Column, Integer, String, Text, Boolean, Numeric, DateTime, ForeignKey, UniqueConstraint
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship
from resumekit.db.base import Base


class SubscriptionPlan(Base):
    __tablename__ = "subscription_plans"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=False, default="")
    price = Column(Numeric(10, 2), nullable=False, default=0)  # base price, GLOBAL/USD
    billing_cycle = Column(String, nullable=False)  # MONTHLY | YEARLY
    is_featured = Column(Boolean, nullable=False, default=False)
    is_freemium = Column(Boolean, nullable=False, default=False)
    active = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    pricing = relationship("PlanPricing", back_populates="plan", lazy="selectin")
    features = relationship("PlanFeature", back_populates="plan", lazy="selectin")

    def __repr__(self):
        return f"<SubscriptionPlan(id={self.id}, name='{self.name}', cycle='{self.billing_cycle}')>"


class PlanPricing(Base):
    """Region-specific price row for a plan."""
    __tablename__ = "plan_pricing"

    id = Column(Integer, primary_key=True, index=True)
    plan_id = Column(Integer, ForeignKey("subscription_plans.id"), nullable=False, index=True)
    target_region = Column(String, nullable=False)  # GLOBAL | INDIA
    currency = Column(String, nullable=False)  # USD | INR
    price = Column(Numeric(10, 2), nullable=False)

    plan = relationship("SubscriptionPlan", back_populates="pricing")

    __table_args__ = (
        UniqueConstraint("plan_id", "target_region", name="uq_plan_pricing_plan_region"),
    )


class Feature(Base):
    __tablename__ = "features"

    id = Column(Integer, primary_key=True, index=True)
    code = Column(String, nullable=False, unique=True)  # "resume_download", "ai_cover_letter", ...
    name = Column(String, nullable=False)
    description = Column(Text, nullable=False, default="")


class PlanFeature(Base):
    """Entitlement a plan grants for one feature. Usage is tracked elsewhere."""
    __tablename__ = "plan_features"

    id = Column(Integer, primary_key=True, index=True)
    plan_id = Column(Integer, ForeignKey("subscription_plans.id"), nullable=False, index=True)
    feature_id = Column(Integer, ForeignKey("features.id"), nullable=False)
    limit_type = Column(String, nullable=False)  # UNLIMITED | COUNT | BOOLEAN
    limit_value = Column(Integer, nullable=True)
    is_enabled = Column(Boolean, nullable=False, default=True)
    reset_frequency = Column(String, nullable=False, default="NEVER")  # DAILY | WEEKLY | MONTHLY | YEARLY | NEVER

    plan = relationship("SubscriptionPlan", back_populates="features")
    feature = relationship("Feature", lazy="joined")

    __table_args__ = (
        UniqueConstraint("plan_id", "feature_id", name="uq_plan_features_plan_feature"),
    )
