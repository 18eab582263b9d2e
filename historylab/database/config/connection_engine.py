"""
Connection Engine (SQLAlchemy)

Purpose
-------
Centralizes database initialization:
- Builds the SQLAlchemy connection URL from environment-backed settings.
- Creates the Engine (connection pool + SQL execution entry point).
- Defines shared MetaData and the Declarative Base for ORM models.
- Creates missing tables on startup (`create_tables`).

Notes
-----
- SQLite databases share one connection across threads (`StaticPool`), which
  keeps an in-memory database alive for the lifetime of the process.
- All ORM models must inherit from `declarativeBase`.
"""

from sqlalchemy import create_engine
from sqlalchemy.engine import URL
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import StaticPool
from sqlalchemy.schema import MetaData
from historylab.database.config.config import settings

connection_url = URL.create(
    drivername=settings.DB_DRIVER_NAME,
    username=settings.DB_USERNAME,
    password=settings.DB_PASSWORD,
    host=settings.DB_HOST,
    database=settings.DB_DATABASE_NAME,
)
"""SQLAlchemy connection URL built from Settings."""

if settings.DB_DRIVER_NAME.startswith("sqlite"):
    connection_engine = create_engine(
        connection_url,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
else:
    connection_engine = create_engine(connection_url, pool_pre_ping=True)
"""Engine object: core interface to the database."""

metadata = MetaData()
"""Schema-level information shared across all models."""

declarativeBase = declarative_base(metadata=metadata)
"""Root class for ORM models."""


def create_tables() -> None:
    """
    Create every table registered on `metadata` that does not exist yet.

    Notes
    -----
    Entity modules are imported here so that their tables are registered
    before `create_all` runs.
    """
    from historylab.database.entities import chat_message, conversation_log, feedback_report  # noqa: F401

    metadata.create_all(connection_engine)
