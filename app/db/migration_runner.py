"""
Migration Runner - Runs Alembic migrations at application startup.

Only applies migrations when RUN_MIGRATIONS_ON_STARTUP is set; otherwise the
schema is managed with ``alembic upgrade head``.
"""

import logging
from pathlib import Path
from typing import Any

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine

from alembic import command
from alembic.config import Config
from alembic.runtime.migration import MigrationContext
from alembic.script import ScriptDirectory
from app.config import settings

logger = logging.getLogger(__name__)

# Path to alembic.ini relative to project root
ALEMBIC_INI_PATH = Path(__file__).parent.parent.parent / "alembic.ini"


def _get_sync_database_url() -> str:
    """Alembic's command API is synchronous, so swap asyncpg for psycopg2."""
    return settings.database_url.replace("asyncpg", "psycopg2")


def _alembic_config() -> Config:
    alembic_cfg = Config(str(ALEMBIC_INI_PATH))
    alembic_cfg.set_main_option("sqlalchemy.url", _get_sync_database_url().replace("%", "%%"))
    return alembic_cfg


def _get_current_revision(engine: Engine) -> str | None:
    with engine.connect() as conn:
        context = MigrationContext.configure(conn)
        return context.get_current_revision()


def _get_head_revision(alembic_cfg: Config) -> str | None:
    script = ScriptDirectory.from_config(alembic_cfg)
    return script.get_current_head()


def run_migrations() -> None:
    """Upgrade to head when the database is behind."""
    if not ALEMBIC_INI_PATH.exists():
        logger.warning(f"Alembic config not found at {ALEMBIC_INI_PATH}, skipping migrations")
        return

    try:
        alembic_cfg = _alembic_config()
        engine = create_engine(_get_sync_database_url())

        try:
            current = _get_current_revision(engine)
            head = _get_head_revision(alembic_cfg)

            if current == head:
                logger.info(f"Database schema is up to date (revision: {current})")
                return

            logger.info(f"Running migrations from {current} to {head}")
            command.upgrade(alembic_cfg, "head")
            logger.info(f"Migrations complete. Database now at revision: {_get_current_revision(engine)}")

        finally:
            engine.dispose()

    except Exception as e:
        logger.error(f"Migration failed: {e}")
        raise RuntimeError(f"Database migration failed: {e}") from e


def check_migrations_status() -> dict[str, Any]:
    """
    Check migration status without applying them.

    Returns:
        Dict with current revision, head revision, and whether migrations are pending.
    """
    if not ALEMBIC_INI_PATH.exists():
        return {"error": "Alembic config not found"}

    try:
        alembic_cfg = _alembic_config()
        engine = create_engine(_get_sync_database_url())
        try:
            current = _get_current_revision(engine)
            head = _get_head_revision(alembic_cfg)
            return {
                "current_revision": current,
                "head_revision": head,
                "pending": current != head,
            }
        finally:
            engine.dispose()

    except Exception as e:
        return {"error": str(e)}
