"""
Global Control Plane - Database Engine.

============================================================
PURPOSE
============================================================
Engine and session factory for the SQL-backed store.

- SQLAlchemy with PostgreSQL in production
- Explicit transaction boundaries
- Hard failures on persistence errors (PersistenceError)

============================================================
"""

import os
import logging
from contextlib import contextmanager
from typing import Optional, Generator

from dotenv import load_dotenv
from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool

from .models import Base
from .types import PersistenceError


# Load environment variables
load_dotenv()

logger = logging.getLogger(__name__)


DEFAULT_DATABASE_URL = "sqlite:///./control_plane.db"


def get_database_url() -> str:
    """Get database URL from environment."""
    url = os.getenv("CONTROL_PLANE_DATABASE_URL") or os.getenv("DATABASE_URL_SYNC")
    if not url:
        url = os.getenv("DATABASE_URL")
        if url and url.startswith("postgresql+asyncpg"):
            # Convert async URL to sync
            url = url.replace("postgresql+asyncpg", "postgresql")

    if not url:
        url = DEFAULT_DATABASE_URL
        logger.warning(f"DATABASE_URL not set, using default: {url}")

    return url


def create_database_engine(
    database_url: Optional[str] = None,
    pool_size: int = 10,
    max_overflow: int = 20,
    pool_timeout: int = 30,
    pool_recycle: int = 1800,
    echo: bool = False,
) -> Engine:
    """
    Create SQLAlchemy engine.

    SQLite URLs get a thread-shareable connection setup;
    in-memory SQLite uses a single static connection.
    """
    url = database_url or get_database_url()

    logger.info(f"Creating control plane database engine for: {url.split('@')[-1]}")

    if url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in url or url in ("sqlite://", "sqlite:///"):
            kwargs["poolclass"] = StaticPool
        return create_engine(url, echo=echo, **kwargs)

    return create_engine(
        url,
        pool_size=pool_size,
        max_overflow=max_overflow,
        pool_timeout=pool_timeout,
        pool_recycle=pool_recycle,
        pool_pre_ping=True,
        echo=echo,
    )


def create_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(
        bind=engine,
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,
    )


def create_all_tables(engine: Engine) -> None:
    """
    Create control plane tables.

    Raises:
        PersistenceError if table creation fails
    """
    try:
        Base.metadata.create_all(engine)
        logger.info("Control plane tables created")
    except SQLAlchemyError as e:
        logger.error(f"Failed to create control plane tables: {e}")
        raise PersistenceError(f"Table creation failed: {e}", cause=e) from e


def verify_database_connection(engine: Engine) -> bool:
    """
    Verify the database is reachable.

    Raises:
        PersistenceError if the connection fails
    """
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1")).fetchone()
        return True
    except SQLAlchemyError as e:
        logger.error(f"Database connection failed: {e}")
        raise PersistenceError(f"Cannot connect to database: {e}", cause=e) from e


@contextmanager
def transaction_scope(session_factory: sessionmaker) -> Generator[Session, None, None]:
    """
    Context manager for explicit transaction boundaries.

    Commits only if no exception occurs.
    Rolls back on ANY exception. SQLAlchemy errors surface as
    PersistenceError; control plane errors propagate unchanged.
    """
    session = session_factory()
    try:
        yield session
        session.commit()
    except SQLAlchemyError as e:
        logger.error(f"Database transaction failed, rolling back: {e}")
        session.rollback()
        raise PersistenceError(f"Transaction failed: {e}", cause=e) from e
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


@contextmanager
def read_scope(session_factory: sessionmaker) -> Generator[Session, None, None]:
    """Read-only session; SQLAlchemy errors surface as PersistenceError."""
    session = session_factory()
    try:
        yield session
    except SQLAlchemyError as e:
        logger.error(f"Database read failed: {e}")
        raise PersistenceError(f"Read failed: {e}", cause=e) from e
    finally:
        session.close()
