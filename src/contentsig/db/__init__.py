"""Database module.

Database models and migrations:
- SQLAlchemy 2.x ORM models
- Alembic migration configuration
- Connection pooling via psycopg
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

if TYPE_CHECKING:
    from sqlalchemy import Engine

    from contentsig.core.config import DatabaseSettings


def get_database_url(settings: DatabaseSettings) -> str:
    """Get the database URL for the psycopg driver.

    Args:
        settings: Database settings with a configured URL.

    Returns:
        PostgreSQL connection URL using the psycopg driver.

    Raises:
        RuntimeError: If no database URL is configured.
    """
    if settings.url is None:
        msg = "Database URL is not configured"
        raise RuntimeError(msg)

    url = str(settings.url)
    if url.startswith("postgresql://"):
        url = url.replace("postgresql://", "postgresql+psycopg://", 1)
    elif url.startswith("postgres://"):
        url = url.replace("postgres://", "postgresql+psycopg://", 1)
    return url


def create_db_engine(settings: DatabaseSettings) -> Engine:
    """Create a pooled engine from database settings."""
    return create_engine(
        get_database_url(settings),
        pool_size=settings.pool_size,
        max_overflow=settings.max_overflow,
        pool_timeout=settings.pool_timeout,
        echo=settings.echo,
    )


def create_session_factory(engine: Engine) -> sessionmaker[Session]:
    """Create a session factory bound to an engine.

    Sessions keep loaded attributes after commit so records returned from
    a committed transaction stay readable.
    """
    return sessionmaker(bind=engine, class_=Session, expire_on_commit=False)
