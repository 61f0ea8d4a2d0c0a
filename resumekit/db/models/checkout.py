"""
Checkout sessions and courtesy credit notes.

A checkout session records a payment the user was redirected to. It is not
subscription state: the subscription only changes when the session is
confirmed, so an abandoned session needs no rollback.
"""
from sqlalchemy import Column, Integer, String, Boolean, Numeric, DateTime, ForeignKey, Index
from sqlalchemy.sql import func
from resumekit.db.base import Base


class CheckoutSession(Base):
    __tablename__ = "checkout_sessions"

    id = Column(Integer, primary_key=True, index=True)
    session_id = Column(String, nullable=False, unique=True)  # gateway session id
    idempotency_key = Column(String, nullable=False, unique=True)
    kind = Column(String, nullable=False)  # NEW | UPGRADE | RENEWAL

    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    subscription_id = Column(Integer, ForeignKey("user_subscriptions.id"), nullable=True, index=True)
    target_plan_id = Column(Integer, ForeignKey("subscription_plans.id"), nullable=False)
    base_version = Column(Integer, nullable=True)  # subscription version the amount was computed from

    amount = Column(Numeric(10, 2), nullable=False)
    credit_applied = Column(Numeric(10, 2), nullable=False, default=0)
    currency = Column(String, nullable=False)
    region = Column(String, nullable=False)
    redirect_url = Column(String, nullable=False)

    status = Column(String, nullable=False, default="PENDING")  # PENDING | COMPLETED | EXPIRED | FAILED
    expires_at = Column(DateTime, nullable=False)
    processed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (
        Index("idx_checkout_sessions_subscription_status", "subscription_id", "status"),
    )


class CreditNote(Base):
    """
    Courtesy credit for unused paid time, applied to the next paid checkout.

    Never refunded in cash.
    """
    __tablename__ = "credit_notes"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    source_subscription_id = Column(Integer, ForeignKey("user_subscriptions.id"), nullable=True)
    amount = Column(Numeric(10, 2), nullable=False)
    currency = Column(String, nullable=False)
    reason = Column(String, nullable=False)
    applied = Column(Boolean, nullable=False, default=False)
    applied_session_id = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
