"""
Database configuration and session management for Apricot
"""
import os
import sys
import time
from contextlib import contextmanager

from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool
from dotenv import load_dotenv

# Load environment variables
load_dotenv()

# Create declarative base for all models
Base = declarative_base()

DEFAULT_DATABASE_URL = "sqlite:///apricot.db"


def _log_db(msg: str):
    """Log database progress with immediate flush."""
    full_msg = f"DATABASE: {msg}"
    print(full_msg, file=sys.stdout, flush=True)


def _sanitize_url(database_url: str) -> str:
    """Hide the password part of a database URL for logging."""
    if '@' in database_url:
        parts = database_url.split('@')
        return parts[0].split(':')[0] + ':***@' + parts[1]
    return database_url[:30] + ("..." if len(database_url) > 30 else "")


def create_db_engine(database_url=None):
    """
    Create SQLAlchemy engine

    SQLite databases get a connection setup that is safe to share between the
    fetch worker threads; in-memory SQLite uses a single static connection so
    every session sees the same database. Server databases get pooling.

    Args:
        database_url: Optional database URL override

    Returns:
        SQLAlchemy engine instance
    """
    if database_url is None:
        database_url = os.getenv("DATABASE_URL") or DEFAULT_DATABASE_URL

    _log_db(f"Connecting to: {_sanitize_url(database_url)}")
    echo = os.getenv("FLASK_DEBUG", "False") == "True"  # SQL logging in debug mode
    engine_start = time.time()

    if database_url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}, "echo": echo}
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
        engine = create_engine(database_url, **kwargs)
    else:
        engine = create_engine(
            database_url,
            pool_size=5,               # Base connection pool size
            max_overflow=10,           # Max additional connections
            pool_pre_ping=True,        # Verify connections before use
            pool_recycle=3600,         # Recycle connections after 1 hour
            echo=echo,
        )

    _log_db(f"Engine created in {time.time() - engine_start:.1f}s")
    return engine


# Create default engine and session factory
engine = create_db_engine()
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine, expire_on_commit=False)


def init_db(bind=None):
    """Create all tables that do not exist yet."""
    # Models register themselves on Base when imported
    from apricot import models  # noqa: F401

    Base.metadata.create_all(bind=bind or engine)


@contextmanager
def get_session():
    """
    Get a database session that commits on success and rolls back on error

    Usage:
        with get_session() as session:
            session.query(Post).all()
    """
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
