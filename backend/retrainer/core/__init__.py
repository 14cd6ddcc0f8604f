"""
Core module containing configuration and database setup.
"""

from retrainer.core.config import settings
from retrainer.core.database import SessionLocal, engine, Base

__all__ = ["settings", "SessionLocal", "engine", "Base"]
