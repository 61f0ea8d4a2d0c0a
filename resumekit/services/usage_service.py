"""
Read side of feature usage tracking.

Usage events are written by the document builders and AI features; this
module only totals them over a feature's reset window so entitlements can be
shown next to consumption.
"""
import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import func, and_
from sqlalchemy.orm import Session

from resumekit.core.plan_tables import ResetFrequency
from resumekit.db.models.usage import UsageEvent

logger = logging.getLogger(__name__)


def window_start(reset_frequency: str, now: datetime) -> Optional[datetime]:
    """
    Start of the usage window containing ``now``.

    Windows are calendar aligned: the day, the ISO week (Monday), the month
    or the year. NEVER counts all usage ever recorded (returns None).
    """
    frequency = ResetFrequency(reset_frequency or ResetFrequency.NEVER.value)
    midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
    if frequency == ResetFrequency.DAILY:
        return midnight
    if frequency == ResetFrequency.WEEKLY:
        return midnight - timedelta(days=midnight.weekday())
    if frequency == ResetFrequency.MONTHLY:
        return midnight.replace(day=1)
    if frequency == ResetFrequency.YEARLY:
        return midnight.replace(month=1, day=1)
    return None


def get_usage(db: Session, user_id: int, feature_code: str, since: Optional[datetime] = None) -> int:
    """
    Total usage of one feature by one user.

    Args:
        db: Database session
        user_id: User ID
        feature_code: Feature code, e.g. "resume_download"
        since: Only count events at or after this moment (None for all time)

    Returns:
        Sum of recorded usage amounts
    """
    conditions = [UsageEvent.user_id == user_id, UsageEvent.feature_code == feature_code]
    if since is not None:
        conditions.append(UsageEvent.created_at >= since)
    total = db.query(func.sum(UsageEvent.amount)).filter(and_(*conditions)).scalar()
    return int(total or 0)


class DbUsageTracker:
    """Usage tracker backed by the usage_events table."""

    def __init__(self, db: Session):
        self.db = db

    def usage_for(self, user_id: int, feature_code: str, reset_frequency: str, now: datetime) -> int:
        return get_usage(self.db, user_id, feature_code, window_start(reset_frequency, now))
