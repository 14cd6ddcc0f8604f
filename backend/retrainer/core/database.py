"""
Database configuration and session management.

Provides SQLAlchemy engine, session factory, and base class for models.
"""

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, DeclarativeBase
from sqlalchemy.pool import StaticPool

from retrainer.core.config import settings


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""
    pass


# Using check_same_thread=False for SQLite to work with worker threads
engine = create_engine(
    settings.database_url,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
    echo=settings.debug,
)


# Session factory
SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine,
)


def init_db() -> None:
    """
    Initialize the database by creating all tables.

    This should be called on application startup.
    """
    # Import models so they register on Base.metadata
    import retrainer.models  # noqa: F401

    Base.metadata.create_all(bind=engine)
