from __future__ import annotations

import logging

from sqlalchemy import inspect, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

logger = logging.getLogger(__name__)


def _ensure_notification_email_column(engine: Engine) -> None:
    """Databases created before bank-email forwarding lack users.notification_email."""
    inspector = inspect(engine)
    try:
        columns = {column["name"] for column in inspector.get_columns("users")}
    except SQLAlchemyError as exc:
        logger.error("Failed to inspect users table: %s", exc)
        return

    if "notification_email" in columns:
        return

    logger.info("Adding notification_email column to users table.")
    try:
        with engine.begin() as connection:
            connection.execute(text("ALTER TABLE users ADD COLUMN notification_email VARCHAR(255)"))
    except SQLAlchemyError as exc:
        logger.error("Failed to add notification_email column: %s", exc)


def run_migrations(engine: Engine) -> None:
    """Execute lightweight, idempotent migrations on application start."""
    _ensure_notification_email_column(engine)
