"""
Payment gateway boundary.

The lifecycle core talks to payments only through ``PaymentGatewayAdapter``:
create a checkout session, charge a renewal off-session, and turn a signed
webhook into a ``PaymentEvent``. ``StripePaymentGateway`` is the production
implementation.
"""
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, Optional

import stripe

from resumekit.core.config import STRIPE_SECRET_KEY, STRIPE_WEBHOOK_SECRET, FRONTEND_URL
from resumekit.core.errors import PaymentError

logger = logging.getLogger(__name__)

# Initialize Stripe client
if STRIPE_SECRET_KEY:
    stripe.api_key = STRIPE_SECRET_KEY
else:
    logger.warning("STRIPE_SECRET_KEY not configured - Stripe features disabled")

EVENT_PAYMENT_CONFIRMED = "payment_confirmed"
EVENT_SESSION_EXPIRED = "session_expired"
EVENT_PAYMENT_FAILED = "payment_failed"

# Stripe charges both USD and INR in hundredths (cents, paise)
STRIPE_MINOR_UNIT_FACTOR = {"USD": 100, "INR": 100}


@dataclass(frozen=True)
class CheckoutSessionInfo:
    session_id: str
    redirect_url: str


@dataclass(frozen=True)
class PaymentEvent:
    kind: str
    session_id: str
    idempotency_key: Optional[str]
    customer_ref: Optional[str] = None
    event_id: Optional[str] = None


class PaymentGatewayAdapter(ABC):

    @abstractmethod
    def create_checkout_session(
        self,
        amount: Decimal,
        currency: str,
        idempotency_key: str,
        description: str,
        expires_at: datetime,
        customer_email: Optional[str] = None,
        customer_ref: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None,
    ) -> CheckoutSessionInfo:
        """Create a hosted checkout and return where to send the user."""

    @abstractmethod
    def charge_renewal(
        self,
        amount: Decimal,
        currency: str,
        idempotency_key: str,
        customer_ref: Optional[str],
        description: str,
    ) -> str:
        """Charge a saved payment method; returns the payment reference or raises PaymentError."""

    @abstractmethod
    def parse_webhook(self, payload: bytes, signature: Optional[str]) -> Optional[PaymentEvent]:
        """Verify a webhook and extract the event we care about (None for others)."""


def to_minor_units(amount: Decimal, currency: str) -> int:
    factor = STRIPE_MINOR_UNIT_FACTOR[currency.upper()]
    return int((Decimal(amount) * factor).to_integral_value())


class StripePaymentGateway(PaymentGatewayAdapter):
    """Stripe Checkout for redirects, PaymentIntents for renewals."""

    def __init__(self, webhook_secret: Optional[str] = None):
        self.webhook_secret = webhook_secret or STRIPE_WEBHOOK_SECRET

    def _require_configured(self):
        if not STRIPE_SECRET_KEY:
            raise PaymentError("Payments are not configured - STRIPE_SECRET_KEY required")

    def create_checkout_session(
        self,
        amount: Decimal,
        currency: str,
        idempotency_key: str,
        description: str,
        expires_at: datetime,
        customer_email: Optional[str] = None,
        customer_ref: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None,
    ) -> CheckoutSessionInfo:
        self._require_configured()
        session_metadata = dict(metadata or {})
        session_metadata["idempotency_key"] = idempotency_key

        params = {
            "mode": "payment",
            "line_items": [{
                "price_data": {
                    "currency": currency.lower(),
                    "unit_amount": to_minor_units(amount, currency),
                    "product_data": {"name": description},
                },
                "quantity": 1,
            }],
            # Card is kept for off-session renewals
            "payment_intent_data": {"setup_future_usage": "off_session", "metadata": session_metadata},
            "success_url": f"{FRONTEND_URL}/account/billing?checkout=success",
            "cancel_url": f"{FRONTEND_URL}/pricing?checkout=cancelled",
            "expires_at": int(expires_at.replace(tzinfo=timezone.utc).timestamp()),
            "metadata": session_metadata,
        }
        if customer_ref:
            params["customer"] = customer_ref
        else:
            params["customer_creation"] = "always"
            if customer_email:
                params["customer_email"] = customer_email

        try:
            session = stripe.checkout.Session.create(idempotency_key=idempotency_key, **params)
        except stripe.StripeError as e:
            logger.error(f"Stripe error creating checkout session: key={idempotency_key}, error={e}")
            raise PaymentError(f"Failed to create checkout session: {e.user_message or 'gateway error'}")

        logger.info(f"Created checkout session: session_id={session.id}, key={idempotency_key}")
        return CheckoutSessionInfo(session_id=session.id, redirect_url=session.url)

    def charge_renewal(
        self,
        amount: Decimal,
        currency: str,
        idempotency_key: str,
        customer_ref: Optional[str],
        description: str,
    ) -> str:
        self._require_configured()
        if not customer_ref:
            raise PaymentError("No saved customer to charge for renewal")

        try:
            methods = stripe.PaymentMethod.list(customer=customer_ref, type="card", limit=1)
            if not methods.data:
                raise PaymentError("No saved card to charge for renewal", {"customer": customer_ref})
            intent = stripe.PaymentIntent.create(
                amount=to_minor_units(amount, currency),
                currency=currency.lower(),
                customer=customer_ref,
                payment_method=methods.data[0].id,
                off_session=True,
                confirm=True,
                description=description,
                metadata={"idempotency_key": idempotency_key},
                idempotency_key=idempotency_key,
            )
        except stripe.StripeError as e:
            logger.warning(f"Renewal charge failed: key={idempotency_key}, error={e}")
            raise PaymentError(f"Renewal charge failed: {e.user_message or 'gateway error'}")

        if intent.status != "succeeded":
            raise PaymentError(f"Renewal charge not completed (status={intent.status})")

        logger.info(f"Renewal charged: payment_intent={intent.id}, key={idempotency_key}")
        return intent.id

    def parse_webhook(self, payload: bytes, signature: Optional[str]) -> Optional[PaymentEvent]:
        if not self.webhook_secret:
            raise PaymentError("STRIPE_WEBHOOK_SECRET not configured")
        if not signature:
            raise PaymentError("Missing webhook signature")

        try:
            stripe.Webhook.construct_event(payload, signature, self.webhook_secret)
        except ValueError as e:
            logger.error(f"Invalid webhook payload: {e}")
            raise PaymentError("Invalid webhook payload")
        except stripe.SignatureVerificationError as e:
            logger.error(f"Webhook signature verification failed: {e}")
            raise PaymentError("Invalid webhook signature")

        event = json.loads(payload)
        event_type = event.get("type")
        session = event.get("data", {}).get("object", {})
        logger.info(f"Verified webhook event: {event_type}, id={event.get('id')}")

        if event_type == "checkout.session.completed":
            # Delayed payment methods complete unpaid; they confirm via async_payment_succeeded
            kind = EVENT_PAYMENT_CONFIRMED if session.get("payment_status") == "paid" else None
        elif event_type == "checkout.session.async_payment_succeeded":
            kind = EVENT_PAYMENT_CONFIRMED
        elif event_type == "checkout.session.expired":
            kind = EVENT_SESSION_EXPIRED
        elif event_type == "checkout.session.async_payment_failed":
            kind = EVENT_PAYMENT_FAILED
        else:
            kind = None

        if kind is None:
            return None

        return PaymentEvent(
            kind=kind,
            session_id=session.get("id"),
            idempotency_key=(session.get("metadata") or {}).get("idempotency_key"),
            customer_ref=session.get("customer"),
            event_id=event.get("id"),
        )
