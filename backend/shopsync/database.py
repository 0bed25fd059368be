"""Database session and base configuration.

WHAT:
    Provides the SQLAlchemy engine, session factory and FastAPI dependency
    for the persistent mirror.

WHY:
    - Routers, the ARQ worker and the scheduled sweep all share one engine.
    - The sweep opens one session per shop (see SessionLocal) so concurrent
      shop syncs never share a unit of work.

USAGE:
    from shopsync.database import SessionLocal, get_db

    @router.get("/items")
    def get_items(db: Session = Depends(get_db)):
        ...

REFERENCES:
    - shopsync/services/sync_orchestrator.py (run_scheduled_sync session_factory)
    - shopsync/workers/arq_worker.py
"""

import os
from typing import Generator

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker


# =============================================================================
# ENVIRONMENT CONFIGURATION
# =============================================================================

def _get_database_url() -> str:
    """Get DATABASE_URL from environment, loading .env if needed.

    Raises:
        RuntimeError: If DATABASE_URL is not configured
    """
    database_url = os.getenv("DATABASE_URL")
    if database_url:
        return database_url

    # Attempt to load from local .env for developer convenience
    from shopsync.utils.env import load_env_file, require_env
    load_env_file()
    return require_env("DATABASE_URL")


DATABASE_URL = _get_database_url()


# =============================================================================
# ENGINE
# =============================================================================

# NOTE: SQLite engines (used in tests/dev) do not support pool_size/max_overflow.
if DATABASE_URL.startswith("sqlite"):
    engine = create_engine(
        DATABASE_URL,
        connect_args={"check_same_thread": False},
    )
else:
    engine = create_engine(
        DATABASE_URL,
        pool_size=10,           # Base pool size
        max_overflow=20,        # Allow up to 30 total connections under load
        pool_recycle=3600,      # Recycle connections every hour
        pool_pre_ping=True,     # Validate connections before use
    )

SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)


# Base is defined in shopsync.models to ensure a single registry across the app
from .models import Base  # noqa: E402


# =============================================================================
# FASTAPI DEPENDENCIES
# =============================================================================

def get_db() -> Generator[Session, None, None]:
    """Yield a database session for FastAPI dependency injection."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
