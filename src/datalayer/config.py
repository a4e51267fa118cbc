"""Configuration settings for the data access layer."""

import logging
import os
from typing import Optional

_TRUTHY = {"1", "true", "yes", "on"}


def get_database_uri(name: Optional[str] = None) -> str:
    """
    Get the database URI for a logical database.

    Lookup order: ``<NAME>_DATABASE_URI`` (when a name is given), then
    ``DATABASE_URI``, then a PostgreSQL URI assembled from the ``DB_*``
    variables.
    """
    if name:
        named = os.environ.get(f"{name.upper()}_DATABASE_URI")
        if named:
            return named

    uri = os.environ.get("DATABASE_URI")
    if uri:
        return uri

    host = os.environ.get("DB_HOST", "localhost")
    port = os.environ.get("DB_PORT", "5432")
    user = os.environ.get("DB_USER", "datalayer")
    password = os.environ.get("DB_PASSWORD", "datalayer")
    db_name = os.environ.get("DB_NAME", name or "datalayer")
    return f"postgresql://{user}:{password}@{host}:{port}/{db_name}"


def get_isolation_level() -> Optional[str]:
    """Get the transaction isolation level, empty string disables it."""
    level = os.environ.get("DB_ISOLATION_LEVEL", "REPEATABLE READ")
    return level or None


def get_sql_echo() -> bool:
    """Whether SQLAlchemy should log emitted SQL."""
    return os.environ.get("DB_ECHO", "false").lower() in _TRUTHY


def get_log_level() -> str:
    return os.environ.get("LOG_LEVEL", "INFO").upper()


def configure_logging() -> None:
    logging.basicConfig(
        level=getattr(logging, get_log_level(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
