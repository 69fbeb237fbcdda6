"""Database engine and session configuration.

WHAT:
    Provides the SQLAlchemy engine, the session factory and the FastAPI
    dependency used by webhook and operator endpoints.

WHY:
    The subscriber table is the only synchronization point between workers.
    Every process (API, arq worker, scripts) must build sessions the same way
    so conditional updates behave identically everywhere.

USAGE:
    # FastAPI
    from winback.database import get_db

    @router.post("/orders/paid")
    async def handle(db: Session = Depends(get_db)):
        ...

    # Workers and scripts
    from winback.database import get_sync_session

    with get_sync_session() as db:
        await RecoveryPipeline.from_settings(db).run_cycle()

REFERENCES:
    - https://docs.sqlalchemy.org/en/20/orm/session_basics.html
    - winback/services/subscriber_store.py (consumer of these sessions)
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
        Database connection string

    Raises:
        RuntimeError: If DATABASE_URL is not configured
    """
    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        # Attempt to load from local .env for developer convenience
        from winback.utils.env import load_env_file
        load_env_file()
        database_url = os.getenv("DATABASE_URL")

    if not database_url:
        raise RuntimeError(
            "DATABASE_URL is not set. "
            "Ensure backend/.env is loaded or env var is exported."
        )

    # Heroku-style URL
    if database_url.startswith("postgres://"):
        database_url = database_url.replace("postgres://", "postgresql://", 1)

    return database_url


DATABASE_URL = _get_database_url()


# =============================================================================
# ENGINE
# =============================================================================

# Connection pool configuration:
# - pool_size / max_overflow: cron worker + webhook handlers share the database
# - pool_recycle: recreate connections after 1 hour to prevent stale connections
# - pool_pre_ping: check connection health before use
#
# NOTE: SQLite engines (tests/dev) do not support pool_size/max_overflow.
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
# FASTAPI DEPENDENCY
# =============================================================================

def get_db() -> Generator[Session, None, None]:
    """Yield a database session for FastAPI dependency injection.

    Yields:
        SQLAlchemy Session instance

    Example:
        @router.get("/recovery/stats")
        def stats(db: Session = Depends(get_db)):
            return RecoveryAnalytics(SubscriberStore(db)).conversion_breakdown()
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


# =============================================================================
# CONTEXT MANAGER (for non-FastAPI usage)
# =============================================================================

@contextmanager
def get_sync_session() -> Generator[Session, None, None]:
    """Context manager for sessions outside FastAPI.

    WHAT:
        Creates a session with automatic cleanup.

    WHY:
        For use in the arq worker and scripts where FastAPI
        dependency injection isn't available.

    Yields:
        SQLAlchemy Session instance
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
