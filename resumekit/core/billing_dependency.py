from typing import Optional

from fastapi import Depends, Request
from sqlalchemy.orm import Session

from resumekit.core.auth_dependency import get_db
from resumekit.services.payment_gateway import PaymentGatewayAdapter, StripePaymentGateway
from resumekit.services.region_resolver import RegionResolver
from resumekit.services.subscription_service import SubscriptionService


def get_payment_gateway() -> PaymentGatewayAdapter:
    """Payment gateway dependency; tests override it with a fake."""
    return StripePaymentGateway()


def get_region_resolver(db: Session = Depends(get_db)) -> RegionResolver:
    return RegionResolver(db)


def get_subscription_service(
    db: Session = Depends(get_db),
    gateway: PaymentGatewayAdapter = Depends(get_payment_gateway),
) -> SubscriptionService:
    return SubscriptionService(db, gateway)


def get_client_ip(request: Request) -> Optional[str]:
    """Client IP, honouring the first X-Forwarded-For hop set by the proxy."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None
