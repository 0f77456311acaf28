"""Database session and base configuration.

WHAT:
    Provides the SQLAlchemy engine and session factory.
    Exposes a FastAPI dependency and a context manager for database access.

WHY:
    - API endpoints use the request-scoped `get_db()` dependency.
    - Background sync tasks and arq jobs run outside a request and open their
      own session through `SessionLocal` / `get_sync_session()`, so a sync
      never shares a session with the request that triggered it.

REFERENCES:
    - https://docs.sqlalchemy.org/en/20/orm/session_basics.html
    - app/services/store_sync_service.py (background session usage)
"""

import os
from contextlib import contextmanager
from typing import Generator

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker


# =============================================================================
# ENVIRONMENT CONFIGURATION
# =============================================================================

def _get_database_url() -> str:
    """Get DATABASE_URL from environment, loading .env if needed.

    Returns:
        PostgreSQL connection string

    Raises:
        RuntimeError: If DATABASE_URL is not configured
    """
    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        # Attempt to load from local .env for developer convenience
        from app.utils.env import load_env_file
        load_env_file()
        database_url = os.getenv("DATABASE_URL")

    if not database_url:
        raise RuntimeError(
            "DATABASE_URL is not set. "
            "Ensure backend/.env is loaded or env var is exported."
        )

    return database_url


DATABASE_URL = _get_database_url()


# =============================================================================
# ENGINE
# =============================================================================

# Connection pool configuration:
# - pool_size / max_overflow: concurrent API requests plus one session per running sync
# - pool_recycle: Recreate connections after 1 hour to prevent stale connections
# - pool_pre_ping: Check connection health before use
#
# NOTE: SQLite engines (used in tests/dev) do not support pool_size/max_overflow.
if DATABASE_URL.startswith("sqlite"):
    engine = create_engine(
        DATABASE_URL,
        connect_args={"check_same_thread": False},
    )
else:
    engine = create_engine(
        DATABASE_URL,
        pool_size=10,
        max_overflow=20,
        pool_recycle=3600,
        pool_pre_ping=True,
    )

SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)


# =============================================================================
# BASE MODEL (imported from models for single registry)
# =============================================================================

# Base is defined in app.models to ensure a single registry across the app
from .models import Base  # noqa: E402,F401


# =============================================================================
# FASTAPI DEPENDENCIES
# =============================================================================

def get_db() -> Generator[Session, None, None]:
    """Yield a database session for FastAPI dependency injection.

    Yields:
        SQLAlchemy Session instance

    Example:
        @router.get("/stores")
        def list_stores(db: Session = Depends(get_db)):
            return db.query(Store).all()
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


# =============================================================================
# CONTEXT MANAGERS (for non-FastAPI usage)
# =============================================================================

@contextmanager
def get_sync_session() -> Generator[Session, None, None]:
    """Context manager for sessions outside FastAPI.

    WHAT:
        Creates a session with automatic cleanup.

    WHY:
        For use in background syncs, arq jobs and scripts where FastAPI
        dependency injection isn't available.

    Example:
        with get_sync_session() as db:
            stores = db.query(Store).all()
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
