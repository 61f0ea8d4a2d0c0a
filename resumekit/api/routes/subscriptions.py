"""
Subscription endpoints.

Every mutating call answers with a committed state, a scheduled change, or a
redirect to payment. Lifecycle errors are raised as BillingError subclasses
and turned into responses by the app-level handler.
"""
import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Request, status

from resumekit.core.auth_dependency import get_current_user_obj
from resumekit.core.billing_dependency import get_client_ip, get_region_resolver, get_subscription_service
from resumekit.core.errors import NotFoundError
from resumekit.db.models.subscription import UserSubscription
from resumekit.db.models.user import User
from resumekit.schemas.subscription import (
    EntitlementResponse,
    PendingChangeResponse,
    PlanChangePreviewResponse,
    PlanChangeRequest,
    PlanChangeResponse,
    PlanListResponse,
    PlanPriceResponse,
    PlanSelectionRequest,
    ProrationResponse,
    RegionResponse,
    SubscriptionResponse,
    VersionedRequest,
)
from resumekit.services.feature_entitlements import FeatureEntitlementResolver
from resumekit.services.region_resolver import RegionResolver, ResolvedRegion
from resumekit.services.subscription_service import PlanChangeOutcome, SubscriptionService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/subscriptions", tags=["Subscriptions"])


def resolve_request_region(
    request: Request,
    user: User = Depends(get_current_user_obj),
    resolver: RegionResolver = Depends(get_region_resolver),
) -> ResolvedRegion:
    return resolver.resolve(user.id, get_client_ip(request))


def _require_active(service: SubscriptionService, user: User) -> UserSubscription:
    subscription = service.get_active_subscription(user.id)
    if subscription is None:
        raise NotFoundError("No active subscription", {"user_id": user.id})
    return subscription


def _change_response(outcome: PlanChangeOutcome) -> PlanChangeResponse:
    return PlanChangeResponse(
        outcome=outcome.outcome,
        change_type=outcome.change_type,
        subscription=SubscriptionResponse.model_validate(outcome.subscription) if outcome.subscription else None,
        redirect_url=outcome.redirect_url,
        session_id=outcome.session_id,
        amount=outcome.amount,
        currency=outcome.currency,
        proration=ProrationResponse(**outcome.proration.as_dict()) if outcome.proration else None,
        credit_applied=outcome.credit_applied,
        credit_issued=outcome.credit_issued,
    )


# ✅ READS

@router.get("/current", response_model=SubscriptionResponse)
def get_current_subscription(
    user: User = Depends(get_current_user_obj),
    service: SubscriptionService = Depends(get_subscription_service),
):
    subscription = service.get_current_subscription(user.id)
    if subscription is None:
        raise NotFoundError("No active subscription", {"user_id": user.id})
    return subscription


@router.get("/pending-change", response_model=PendingChangeResponse)
def get_pending_change(
    user: User = Depends(get_current_user_obj),
    service: SubscriptionService = Depends(get_subscription_service),
):
    subscription = service.get_pending_change(user.id)
    if subscription is None:
        raise NotFoundError("No pending plan change", {"user_id": user.id})
    return PendingChangeResponse(
        subscription_id=subscription.id,
        plan_id=subscription.pending_plan_change_to,
        effective_date=subscription.pending_plan_change_date,
        change_type=subscription.pending_plan_change_type,
        version=subscription.version,
    )


@router.get("/region", response_model=RegionResponse)
def get_region(region: ResolvedRegion = Depends(resolve_request_region)):
    return RegionResponse(**region.as_dict())


@router.get("/plans", response_model=PlanListResponse)
def list_plans(
    region: ResolvedRegion = Depends(resolve_request_region),
    service: SubscriptionService = Depends(get_subscription_service),
):
    plans = [
        PlanPriceResponse(
            id=plan.id,
            name=plan.name,
            description=plan.description or "",
            billing_cycle=plan.billing_cycle,
            is_freemium=plan.is_freemium,
            is_featured=plan.is_featured,
            price=price.amount,
            currency=price.currency,
            region=price.region,
        )
        for plan, price in service.list_plans_with_pricing(region.region)
    ]
    return PlanListResponse(region=RegionResponse(**region.as_dict()), plans=plans)


@router.get("/plans/{plan_id}/features", response_model=List[EntitlementResponse])
def list_plan_features(
    plan_id: int,
    _: User = Depends(get_current_user_obj),
    service: SubscriptionService = Depends(get_subscription_service),
):
    service.catalog.get_plan(plan_id)
    resolver = FeatureEntitlementResolver(service.db, service.catalog)
    return [EntitlementResponse(**entitlement.as_dict()) for entitlement in resolver.for_plan(plan_id)]


@router.get("/proration-preview", response_model=PlanChangePreviewResponse)
def preview_plan_change(
    plan_id: int,
    user: User = Depends(get_current_user_obj),
    region: ResolvedRegion = Depends(resolve_request_region),
    service: SubscriptionService = Depends(get_subscription_service),
):
    subscription = _require_active(service, user)
    preview = service.preview_plan_change(subscription.id, plan_id, region.region)
    return PlanChangePreviewResponse(
        change_type=preview.change_type,
        current_price=preview.current_price.amount,
        new_price=preview.new_price.amount,
        currency=preview.new_price.currency,
        effective_date=preview.effective_date,
        immediate=preview.immediate,
        proration=ProrationResponse(**preview.proration.as_dict()) if preview.proration else None,
        credit_note_amount=preview.credit_note_amount,
    )


# ✅ PLAN CHANGES

@router.post("/upgrade", response_model=PlanChangeResponse)
def upgrade(
    payload: PlanChangeRequest,
    user: User = Depends(get_current_user_obj),
    region: ResolvedRegion = Depends(resolve_request_region),
    service: SubscriptionService = Depends(get_subscription_service),
):
    subscription = _require_active(service, user)
    logger.info(f"Upgrade requested: user_id={user.id}, subscription_id={subscription.id}, plan_id={payload.plan_id}")
    outcome = service.upgrade(subscription.id, payload.plan_id, region.region, payload.expected_version)
    return _change_response(outcome)


@router.post("/downgrade", response_model=PlanChangeResponse)
def downgrade(
    payload: PlanChangeRequest,
    user: User = Depends(get_current_user_obj),
    region: ResolvedRegion = Depends(resolve_request_region),
    service: SubscriptionService = Depends(get_subscription_service),
):
    subscription = _require_active(service, user)
    logger.info(f"Downgrade requested: user_id={user.id}, subscription_id={subscription.id}, plan_id={payload.plan_id}")
    outcome = service.downgrade(subscription.id, payload.plan_id, region.region, payload.expected_version)
    return _change_response(outcome)


@router.post("/cancel", response_model=PlanChangeResponse)
def cancel(
    payload: Optional[VersionedRequest] = None,
    user: User = Depends(get_current_user_obj),
    service: SubscriptionService = Depends(get_subscription_service),
):
    subscription = _require_active(service, user)
    expected_version = payload.expected_version if payload else None
    return _change_response(service.cancel(subscription.id, expected_version))


@router.post("/pending-change/cancel", response_model=PlanChangeResponse)
def cancel_pending_change(
    payload: Optional[VersionedRequest] = None,
    user: User = Depends(get_current_user_obj),
    service: SubscriptionService = Depends(get_subscription_service),
):
    subscription = _require_active(service, user)
    expected_version = payload.expected_version if payload else None
    return _change_response(service.cancel_pending_change(subscription.id, expected_version))


# ✅ STARTING / RESTORING A SUBSCRIPTION

@router.post("/free-plan", response_model=SubscriptionResponse, status_code=status.HTTP_201_CREATED)
def activate_free_plan(
    payload: PlanSelectionRequest,
    user: User = Depends(get_current_user_obj),
    region: ResolvedRegion = Depends(resolve_request_region),
    service: SubscriptionService = Depends(get_subscription_service),
):
    return service.activate_free_plan(user.id, payload.plan_id, region.region)


@router.post("/checkout", response_model=PlanChangeResponse)
def start_checkout(
    payload: PlanSelectionRequest,
    user: User = Depends(get_current_user_obj),
    region: ResolvedRegion = Depends(resolve_request_region),
    service: SubscriptionService = Depends(get_subscription_service),
):
    return _change_response(service.start_checkout(user.id, payload.plan_id, region.region))


@router.post("/retry-renewal", response_model=PlanChangeResponse)
def retry_renewal(
    user: User = Depends(get_current_user_obj),
    region: ResolvedRegion = Depends(resolve_request_region),
    service: SubscriptionService = Depends(get_subscription_service),
):
    subscription = service.get_current_subscription(user.id)
    if subscription is None:
        raise NotFoundError("No subscription to renew", {"user_id": user.id})
    return _change_response(service.retry_renewal(subscription.id, region.region))
