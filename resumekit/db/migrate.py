"""
Database migration runner for Alembic migrations.
"""
import logging
import os
from alembic.config import Config
from alembic import command
from sqlalchemy import create_engine, text

logger = logging.getLogger(__name__)

# Shared by every API replica so only one of them migrates at startup
ADVISORY_LOCK_ID = 734219001

ALEMBIC_INI_PATH = os.path.join(os.path.dirname(os.path.dirname(os.path.dirname(__file__))), "alembic.ini")


def run_migrations(database_url: str = None):
    """
    Run Alembic migrations to head revision.

    On PostgreSQL a session advisory lock serializes concurrent runs.
    """
    from resumekit.core import config as app_config

    database_url = database_url or app_config.DATABASE_URL
    if not database_url:
        raise ValueError("DATABASE_URL is not set")

    logger.info("Running alembic upgrade head")

    alembic_cfg = Config(ALEMBIC_INI_PATH)
    alembic_cfg.attributes["database_url"] = database_url
    # The app configured logging already
    alembic_cfg.attributes["skip_logging_config"] = True

    is_postgres = database_url.startswith("postgresql")
    engine = create_engine(database_url, pool_pre_ping=True)
    lock_conn = None

    try:
        if is_postgres:
            # Keep the connection open to hold the lock
            lock_conn = engine.connect()
            lock_conn.execute(text(f"SELECT pg_advisory_lock({ADVISORY_LOCK_ID})"))
            lock_conn.commit()
            logger.info("Migration lock acquired")

        command.upgrade(alembic_cfg, "head")
        logger.info("Migrations complete")

    except Exception:
        logger.exception("Migration failed")
        raise
    finally:
        if lock_conn is not None:
            try:
                lock_conn.execute(text(f"SELECT pg_advisory_unlock({ADVISORY_LOCK_ID})"))
                lock_conn.commit()
            except Exception as unlock_error:
                logger.warning(f"Could not release migration lock: {unlock_error}")
            lock_conn.close()
        engine.dispose()
