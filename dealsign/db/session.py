"""
Database session management for the signature service.
"""

from sqlalchemy import create_engine, text
from sqlalchemy.orm import sessionmaker, scoped_session
from sqlalchemy.pool import StaticPool
from dealsign.log_utils.logging_config import configure_logging

logger = configure_logging(
    name="dealsign.db",
    logfile="dealsign.log",
    level=None  # Will use environment-based level
)

SessionLocal = scoped_session(sessionmaker(autoflush=False, expire_on_commit=False))

_engine = None


def configure_engine(database_url: str):
    """Create the engine for `database_url` and bind the session factory to it."""
    global _engine
    logger.debug("Using DATABASE_URL: %s", database_url.split("@")[-1])

    kwargs = {}
    if database_url.startswith("sqlite"):
        # In-memory SQLite must share one connection across threads
        kwargs = {"connect_args": {"check_same_thread": False}, "poolclass": StaticPool}

    try:
        _engine = create_engine(database_url, **kwargs)
    except Exception as e:
        logger.error("Failed to create database engine: %s", str(e), exc_info=True)
        raise

    SessionLocal.remove()
    SessionLocal.configure(bind=_engine)
    return _engine


def get_engine():
    """Get the SQLAlchemy engine instance."""
    if _engine is None:
        raise RuntimeError("Database engine is not configured; call configure_engine() first")
    return _engine


def get_session():
    """Get the session bound to the current thread/app context."""
    return SessionLocal()


def remove_session(exc=None):
    SessionLocal.remove()


def check_connection() -> bool:
    try:
        with get_engine().connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.error("Database health check failed: %s", str(e), exc_info=True)
        return False
