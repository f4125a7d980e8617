import logging
import os

from flask import current_app
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from extensions import db

logger = logging.getLogger(__name__)
STARTUP_ADVISORY_LOCK_ID = 51803127


def run_startup_migrations() -> None:
    """Apply Alembic migrations at startup in a safe, non-blocking manner."""
    migrations_env = os.path.join(current_app.root_path, "migrations", "env.py")
    if not os.path.exists(migrations_env):
        current_app.logger.info(
            "Skipping DB migration auto-upgrade; migrations/env.py not found."
        )
        return

    from flask_migrate import upgrade

    try:
        upgrade()
        current_app.logger.info("DB migrations applied at startup")
    except Exception as exc:
        current_app.logger.exception(
            "DB migration auto-upgrade failed at startup",
            exc_info=exc,
        )


def _table_exists(table: str) -> bool:
    return bool(
        db.session.execute(
            text(
                """
                SELECT 1
                FROM information_schema.tables
                WHERE table_schema = ANY(current_schemas(false))
                  AND table_name = :table
                LIMIT 1
                """
            ),
            {"table": table},
        ).scalar()
    )


def ensure_ledger_day_index() -> None:
    """Ensure the (location_id, day) index used by day views and autofill exists."""
    if db.engine.dialect.name != "postgresql":
        current_app.logger.info(
            "Skipping ledger day index; unsupported dialect '%s'.",
            db.engine.dialect.name,
        )
        return

    try:
        if not _table_exists("ledger_entries"):
            current_app.logger.error("ledger_entries table missing; schema incompatible.")
            return

        db.session.execute(
            text(
                """
                CREATE INDEX IF NOT EXISTS ix_ledger_entries_location_day
                ON ledger_entries (location_id, day)
                """
            )
        )
        db.session.commit()
        current_app.logger.info("Ensured ledger_entries (location_id, day) index exists.")
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.exception(
            "Failed to ensure ledger_entries (location_id, day) index.",
            exc_info=exc,
        )


def run_startup_tasks() -> None:
    if os.getenv("RUN_STARTUP_MIGRATIONS") != "1":
        current_app.logger.info(
            "Skipping startup tasks; RUN_STARTUP_MIGRATIONS is not set to '1'."
        )
        return

    if db.engine.dialect.name != "postgresql":
        current_app.logger.info(
            "Skipping advisory lock; unsupported dialect '%s'.",
            db.engine.dialect.name,
        )
        run_startup_migrations()
        return

    current_app.logger.info("Acquiring startup advisory lock.")
    db.session.execute(
        text("SELECT pg_advisory_lock(:lock_id)"),
        {"lock_id": STARTUP_ADVISORY_LOCK_ID},
    )
    try:
        run_startup_migrations()
        ensure_ledger_day_index()
    finally:
        db.session.execute(
            text("SELECT pg_advisory_unlock(:lock_id)"),
            {"lock_id": STARTUP_ADVISORY_LOCK_ID},
        )
        current_app.logger.info("Released startup advisory lock.")
