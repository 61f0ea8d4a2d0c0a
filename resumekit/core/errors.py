"""
Subscription billing errors.

Every error carries a machine-readable code and the HTTP status the API layer
answers with, so routes never translate errors by hand.
"""
from typing import Any, Dict, Optional


class BillingError(Exception):
    """
    Base error for the subscription lifecycle.

    Attributes:
        message: Human-readable, actionable message
        error_code: Machine-readable code for API responses
        status_code: HTTP status code for this error type
        context: Extra identifiers (subscription id, plan id, ...)
    """

    error_code = "billing_error"
    status_code = 400

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        self.message = message
        self.context = context or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for API responses."""
        return {
            "error": self.error_code,
            "message": self.message,
            "context": self.context,
        }


class ValidationError(BillingError):
    """Unknown or inactive plan, or a request that makes no sense for the plan."""

    error_code = "validation_error"
    status_code = 400


class WrongDirectionError(BillingError):
    """Upgrade requested for a cheaper plan, or downgrade for a pricier one."""

    error_code = "wrong_direction"
    status_code = 409

    def __init__(self, message: str, expected: str, context: Optional[Dict[str, Any]] = None):
        context = dict(context or {})
        context["use"] = expected
        super().__init__(message, context)
        self.expected = expected


class ConflictError(BillingError):
    """Version mismatch, or another mutation is already in flight."""

    error_code = "conflict"
    status_code = 409


class NotFoundError(BillingError):
    """No active subscription, no pending change, or unknown checkout session."""

    error_code = "not_found"
    status_code = 404


class PaymentError(BillingError):
    """Checkout creation failed, a charge was declined, or a webhook failed verification."""

    error_code = "payment_error"
    status_code = 402


class StaleCatalogError(BillingError):
    """A subscription references a plan that is gone from the catalog."""

    error_code = "stale_catalog"
    status_code = 500


class CycleInvariantError(ValueError):
    """A start/end pair does not span exactly one billing cycle."""
