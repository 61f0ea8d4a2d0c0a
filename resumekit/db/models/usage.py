from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Index
from sqlalchemy.sql import func
from resumekit.db.base import Base


class UsageEvent(Base):
    """
    Feature usage recorded by the document builders and AI features.

    The billing core only reads these to report consumption next to entitlements.
    """
    __tablename__ = "usage_events"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    feature_code = Column(String, nullable=False, index=True)  # "resume_download", "ai_cover_letter", ...
    amount = Column(Integer, default=1, nullable=False)
    created_at = Column(DateTime, server_default=func.now(), nullable=False, index=True)

    __table_args__ = (
        Index('idx_usage_user_feature_created', 'user_id', 'feature_code', 'created_at'),
    )
