"""
Synchronous Database Access for the Render Worker

The worker uses synchronous database operations since RQ tasks are sync.
This module provides the declarative base, the sync engine and session
factory, and table creation.
"""

from typing import Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, sessionmaker

from .core.config import get_settings


def get_database_url() -> str:
    """
    Get database URL from settings.
    Converts async driver URLs to their sync equivalents if needed.
    """
    url = get_settings().database_url

    if url.startswith("sqlite+aiosqlite://"):
        url = url.replace("sqlite+aiosqlite://", "sqlite://")
    elif url.startswith("postgresql+asyncpg://"):
        url = url.replace("postgresql+asyncpg://", "postgresql://")

    return url


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""
    pass


_engine: Optional[Engine] = None


def get_engine() -> Engine:
    """Get or create the sync database engine."""
    global _engine
    if _engine is None:
        _engine = create_engine(
            get_database_url(),
            echo=get_settings().sql_echo,
            pool_pre_ping=True,
        )
    return _engine


_SessionLocal: Optional[sessionmaker] = None


def get_session_factory() -> sessionmaker:
    """Get or create the session factory."""
    global _SessionLocal
    if _SessionLocal is None:
        _SessionLocal = sessionmaker(
            bind=get_engine(),
            autocommit=False,
            autoflush=False,
            expire_on_commit=False,
        )
    return _SessionLocal


def create_all_tables(engine: Optional[Engine] = None) -> None:
    """Create all tables in the database (for development/testing)."""
    from . import models  # noqa: F401  registers the mappers on Base

    Base.metadata.create_all(engine or get_engine())
