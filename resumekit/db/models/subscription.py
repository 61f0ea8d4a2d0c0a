"""
User subscription model.

One row per subscription period chain. Rows are never deleted: EXPIRED and
CANCELLED rows stay for audit and a resubscription creates a new row.
"""
from sqlalchemy import Column, Integer, String, Boolean, DateTime, ForeignKey, Index, text
from sqlalchemy.sql import func
from resumekit.db.base import Base


class UserSubscription(Base):
    __tablename__ = "user_subscriptions"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    plan_id = Column(Integer, ForeignKey("subscription_plans.id"), nullable=False)

    status = Column(String, nullable=False, default="ACTIVE")  # ACTIVE | GRACE_PERIOD | EXPIRED | CANCELLED
    start_date = Column(DateTime, nullable=False)
    end_date = Column(DateTime, nullable=False)
    auto_renew = Column(Boolean, nullable=False, default=True)

    # Pricing context the current period was bought in; renewals charge the same
    region = Column(String, nullable=False, default="GLOBAL")
    currency = Column(String, nullable=False, default="USD")

    grace_period_end = Column(DateTime, nullable=True)
    cancel_date = Column(DateTime, nullable=True)
    upgrade_date = Column(DateTime, nullable=True)
    previous_plan_id = Column(Integer, nullable=True)
    payment_reference = Column(String, nullable=True)  # checkout session id, or free_* for freemium

    pending_plan_change_to = Column(Integer, ForeignKey("subscription_plans.id"), nullable=True)
    pending_plan_change_date = Column(DateTime, nullable=True)
    pending_plan_change_type = Column(String, nullable=True)  # UPGRADE | DOWNGRADE

    # Optimistic concurrency: every write is conditional on this value
    version = Column(Integer, nullable=False, default=1)

    # Idempotency key of a sweep charge in progress; request mutations wait until it clears
    billing_claim = Column(String, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    __table_args__ = (
        # At most one ACTIVE subscription per user
        Index(
            "uq_user_subscriptions_one_active",
            "user_id",
            unique=True,
            postgresql_where=text("status = 'ACTIVE'"),
            sqlite_where=text("status = 'ACTIVE'"),
        ),
        Index("idx_user_subscriptions_status_end", "status", "end_date"),
    )

    @property
    def has_pending_change(self) -> bool:
        return self.pending_plan_change_to is not None

    def __repr__(self):
        return (
            f"<UserSubscription(id={self.id}, user_id={self.user_id}, plan_id={self.plan_id}, "
            f"status='{self.status}', version={self.version})>"
        )
