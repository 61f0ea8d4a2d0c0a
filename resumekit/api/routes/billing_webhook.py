import logging
from dataclasses import asdict

from fastapi import APIRouter, Depends, Header, HTTPException, Request

from resumekit.core.billing_dependency import get_payment_gateway, get_subscription_service
from resumekit.core.errors import NotFoundError, PaymentError
from resumekit.core.logging_config import sanitize_log_data
from resumekit.services.payment_gateway import (
    EVENT_PAYMENT_CONFIRMED,
    EVENT_PAYMENT_FAILED,
    EVENT_SESSION_EXPIRED,
    PaymentGatewayAdapter,
)
from resumekit.services.subscription_service import SubscriptionService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/billing", tags=["Billing Webhook"])


@router.post("/webhook")
async def payment_webhook(
    request: Request,
    stripe_signature: str = Header(None),
    gateway: PaymentGatewayAdapter = Depends(get_payment_gateway),
    service: SubscriptionService = Depends(get_subscription_service),
):
    """
    Inbound payment events.

    Deliveries are at-least-once; confirming the same session twice applies
    the plan once. A 409 (concurrent change) makes the gateway redeliver.
    """
    payload = await request.body()

    try:
        event = gateway.parse_webhook(payload, stripe_signature)
    except PaymentError as e:
        logger.warning(f"Rejected webhook: {e.message}")
        raise HTTPException(status_code=400, detail=e.message)

    if event is None:
        return {"status": "ignored"}

    logger.info(f"Payment event received: {sanitize_log_data(asdict(event))}")

    # ✅ PAYMENT CONFIRMED
    if event.kind == EVENT_PAYMENT_CONFIRMED:
        try:
            result = service.confirm_payment(event.session_id, event.idempotency_key, event.customer_ref)
        except NotFoundError:
            logger.warning(f"Confirmation for unknown checkout session ignored: session_id={event.session_id}")
            return {"status": "ignored"}
        return {"status": "applied" if result.applied else "duplicate"}

    # ✅ ABANDONED / FAILED CHECKOUT (nothing to roll back)
    if event.kind == EVENT_SESSION_EXPIRED:
        service.mark_session_expired(event.session_id)
    elif event.kind == EVENT_PAYMENT_FAILED:
        service.mark_session_failed(event.session_id)

    return {"status": "success"}
