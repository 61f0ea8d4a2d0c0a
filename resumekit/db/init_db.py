import logging

from resumekit.db.session import engine
from resumekit.db.base import Base
import resumekit.db.models  # noqa: F401  registers every table on Base.metadata

logger = logging.getLogger(__name__)


def init_db(bind=None):
    """Create any missing tables. Local development only; deployments run migrations."""
    Base.metadata.create_all(bind=bind or engine)
    logger.info("Database tables created")


if __name__ == "__main__":
    init_db()
