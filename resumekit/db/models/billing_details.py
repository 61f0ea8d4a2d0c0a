from sqlalchemy import Column, Integer, String, DateTime, ForeignKey
from sqlalchemy.sql import func
from resumekit.db.base import Base


class UserBillingDetails(Base):
    """
    Billing address a user entered at checkout.

    The country here outranks IP geolocation when pricing is resolved.
    """
    __tablename__ = "user_billing_details"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), unique=True, nullable=False)

    full_name = Column(String, nullable=True)
    address_line1 = Column(String, nullable=True)
    city = Column(String, nullable=True)
    postal_code = Column(String, nullable=True)
    country = Column(String(2), nullable=True)  # ISO-3166 alpha-2, e.g. "IN", "US"

    gateway_customer_id = Column(String, nullable=True, index=True)  # Stripe customer id

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
