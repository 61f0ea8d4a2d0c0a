"""
Pydantic schemas for subscription endpoints.
"""
from datetime import datetime
from decimal import Decimal
from typing import Optional, List
from pydantic import BaseModel, Field


class SubscriptionResponse(BaseModel):
    """Current state of a user subscription."""
    id: int
    user_id: int
    plan_id: int
    status: str = Field(..., description="ACTIVE, GRACE_PERIOD, EXPIRED or CANCELLED")
    start_date: datetime
    end_date: datetime
    auto_renew: bool
    region: str
    currency: str
    grace_period_end: Optional[datetime] = None
    cancel_date: Optional[datetime] = None
    pending_plan_change_to: Optional[int] = None
    pending_plan_change_date: Optional[datetime] = None
    pending_plan_change_type: Optional[str] = None
    version: int = Field(..., description="Send back as expected_version to guard against concurrent changes")

    class Config:
        from_attributes = True
        json_schema_extra = {
            "example": {
                "id": 12,
                "user_id": 7,
                "plan_id": 2,
                "status": "ACTIVE",
                "start_date": "2026-01-01T00:00:00",
                "end_date": "2026-02-01T00:00:00",
                "auto_renew": True,
                "region": "GLOBAL",
                "currency": "USD",
                "grace_period_end": None,
                "cancel_date": None,
                "pending_plan_change_to": None,
                "pending_plan_change_date": None,
                "pending_plan_change_type": None,
                "version": 3
            }
        }


class PendingChangeResponse(BaseModel):
    subscription_id: int
    plan_id: int = Field(..., description="Plan the subscription switches to")
    effective_date: datetime
    change_type: str
    version: int


class RegionResponse(BaseModel):
    region: str = Field(..., description="GLOBAL or INDIA")
    currency: str = Field(..., description="USD or INR")
    source: str = Field(..., description="billing_address, ip_geolocation or default")


class PlanPriceResponse(BaseModel):
    """A plan priced for one region."""
    id: int
    name: str
    description: str
    billing_cycle: str
    is_freemium: bool
    is_featured: bool
    price: Decimal
    currency: str
    region: str


class PlanListResponse(BaseModel):
    region: RegionResponse
    plans: List[PlanPriceResponse]


class EntitlementResponse(BaseModel):
    feature_code: str
    feature_name: str
    limit_type: str = Field(..., description="UNLIMITED, COUNT or BOOLEAN")
    limit_value: Optional[int] = None
    reset_frequency: str = Field(..., description="DAILY, WEEKLY, MONTHLY, YEARLY or NEVER")


class EntitlementUsageResponse(EntitlementResponse):
    used: int
    remaining: Optional[int] = Field(None, description="None for unlimited and on/off features")
    unlimited: bool

    class Config:
        json_schema_extra = {
            "example": {
                "feature_code": "resume_download",
                "feature_name": "Resume downloads",
                "limit_type": "COUNT",
                "limit_value": 10,
                "reset_frequency": "MONTHLY",
                "used": 3,
                "remaining": 7,
                "unlimited": False
            }
        }


class EntitlementsResponse(BaseModel):
    subscription_id: int
    plan_id: int
    features: List[EntitlementUsageResponse]


class PlanChangeRequest(BaseModel):
    plan_id: int = Field(..., description="Target plan id")
    expected_version: Optional[int] = Field(None, description="Subscription version the client last saw")

    class Config:
        json_schema_extra = {
            "example": {
                "plan_id": 3,
                "expected_version": 4
            }
        }


class VersionedRequest(BaseModel):
    expected_version: Optional[int] = Field(None, description="Subscription version the client last saw")


class PlanSelectionRequest(BaseModel):
    plan_id: int


class ProrationResponse(BaseModel):
    proration_amount: Decimal
    remaining_value: Decimal
    new_plan_price: Decimal
    currency: str
    days_remaining: Decimal
    total_days: Decimal


class PlanChangePreviewResponse(BaseModel):
    change_type: str = Field(..., description="UPGRADE or DOWNGRADE")
    current_price: Decimal
    new_price: Decimal
    currency: str
    effective_date: datetime
    immediate: bool
    proration: Optional[ProrationResponse] = None
    credit_note_amount: Optional[Decimal] = None


class PlanChangeResponse(BaseModel):
    """
    Result of a mutating request.

    ``outcome`` is "committed", "scheduled" or "payment_required"; for the
    last one the client redirects to ``redirect_url``.
    """
    outcome: str
    change_type: Optional[str] = None
    subscription: Optional[SubscriptionResponse] = None
    redirect_url: Optional[str] = None
    session_id: Optional[str] = None
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    proration: Optional[ProrationResponse] = None
    credit_applied: Decimal = Decimal(0)
    credit_issued: Optional[Decimal] = None

    class Config:
        json_schema_extra = {
            "example": {
                "outcome": "payment_required",
                "change_type": "UPGRADE",
                "subscription": None,
                "redirect_url": "https://checkout.stripe.com/c/pay/cs_test_...",
                "session_id": "cs_test_...",
                "amount": "20.00",
                "currency": "USD",
                "proration": None,
                "credit_applied": "0.00",
                "credit_issued": None
            }
        }
