"""
Database session management for the local buffering queue.

Usage:
    from kb_ingest.database.session import get_session_factory

    session = get_session_factory("sqlite:///kb_ingest_buffer.db")()
"""

import logging
from typing import Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from kb_ingest.database.base import Base

logger = logging.getLogger(__name__)

# Engine singletons keyed by normalized URL
_engines: dict[str, Engine] = {}
_session_factories: dict[str, sessionmaker] = {}


def normalize_database_url(database_url: str) -> str:
    """
    Normalize a database URL.

    Handles the postgres:// URL format by converting to postgresql://.
    """
    if not database_url:
        raise ValueError("database_url is required")

    if database_url.startswith("postgres://"):
        database_url = database_url.replace("postgres://", "postgresql://", 1)

    return database_url


def get_engine(database_url: str) -> Engine:
    """
    Get or create the engine for a database URL.

    SQLite engines allow cross-thread use; other engines verify connections
    before use and recycle them after 30 minutes.
    """
    url = normalize_database_url(database_url)
    engine = _engines.get(url)
    if engine is None:
        if url.startswith("sqlite"):
            engine = create_engine(url, connect_args={"check_same_thread": False})
        else:
            engine = create_engine(url, pool_pre_ping=True, pool_recycle=1800)
        _engines[url] = engine
        logger.info("Database engine created", extra={"dialect": engine.dialect.name})
    return engine


def create_tables(engine: Engine) -> None:
    """Create the buffering queue tables if they do not exist."""
    # Register models on Base.metadata
    from kb_ingest.ingestion.buffering import models  # noqa: F401

    Base.metadata.create_all(bind=engine)


def get_session_factory(database_url: str, create: bool = True) -> sessionmaker:
    """
    Get or create the session factory for a database URL.

    Args:
        database_url: Database URL
        create: Create missing tables on first use
    """
    url = normalize_database_url(database_url)
    factory: Optional[sessionmaker] = _session_factories.get(url)
    if factory is None:
        engine = get_engine(url)
        if create:
            create_tables(engine)
        factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
        _session_factories[url] = factory
    return factory
