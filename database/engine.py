"""
Database Persistence Layer - Core Engine.

============================================================
LEDGER PERSISTENCE
============================================================

Owns the SQLAlchemy engine and session factory for the
Position / Trade / Order / PairLock ledger.

Requirements:
- SQLAlchemy ORM (SQLite for tests and paper runs, PostgreSQL live)
- Explicit transaction management
- Single-writer transactions (duplicate-buy guard depends on it)
- Hard failures on persistence errors

============================================================
"""

import os
import logging
from typing import Optional, Generator
from contextlib import contextmanager

from sqlalchemy import create_engine, text, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.exc import SQLAlchemyError, OperationalError, IntegrityError
from sqlalchemy.pool import StaticPool

from dotenv import load_dotenv

# Load environment variables
load_dotenv()

logger = logging.getLogger(__name__)


DEFAULT_DATABASE_URL = "sqlite:///trading_ledger.db"


def get_database_url() -> str:
    """Get database URL from environment."""
    url = os.getenv("DATABASE_URL_SYNC") or os.getenv("DATABASE_URL")
    if url and url.startswith("postgresql+asyncpg"):
        # Convert async URL to sync
        url = url.replace("postgresql+asyncpg", "postgresql")

    if not url:
        url = DEFAULT_DATABASE_URL
        logger.warning(f"DATABASE_URL not set, using default: {url}")

    return url


# =============================================================
# DATABASE
# =============================================================


class Database:
    """
    Engine + session factory for the trading ledger.

    One instance is constructed at startup and passed to every
    manager that reads or writes the ledger.

    SQLite connections open every transaction with
    ``BEGIN IMMEDIATE`` so the write lock is held from the first
    read; other backends run at SERIALIZABLE isolation.
    """

    def __init__(self, url: Optional[str] = None, echo: bool = False):
        self._url = url or get_database_url()
        self._engine = self._create_engine(self._url, echo)
        self._session_factory = sessionmaker(
            bind=self._engine,
            autocommit=False,
            autoflush=False,
            expire_on_commit=False,
        )

    @classmethod
    def in_memory(cls) -> "Database":
        """Create an in-memory SQLite ledger with all tables."""
        db = cls("sqlite://")
        db.create_all()
        return db

    @property
    def engine(self) -> Engine:
        return self._engine

    @property
    def url(self) -> str:
        return self._url

    @staticmethod
    def _create_engine(url: str, echo: bool) -> Engine:
        logger.info(f"Creating database engine for: {url.split('@')[-1]}")

        if not url.startswith("sqlite"):
            return create_engine(
                url,
                pool_size=10,
                max_overflow=20,
                pool_timeout=30,
                pool_recycle=1800,
                isolation_level="SERIALIZABLE",
                echo=echo,
            )

        kwargs = {"connect_args": {"check_same_thread": False}}
        if url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool

        engine = create_engine(url, echo=echo, **kwargs)

        @event.listens_for(engine, "connect")
        def on_connect(dbapi_conn, connection_record):
            # Let SQLAlchemy emit BEGIN itself
            dbapi_conn.isolation_level = None
            logger.debug("Database connection established")

        @event.listens_for(engine, "begin")
        def on_begin(conn):
            conn.exec_driver_sql("BEGIN IMMEDIATE")

        return engine

    # =========================================================
    # SESSION MANAGEMENT
    # =========================================================

    def get_session(self) -> Session:
        """
        Get a new database session.

        IMPORTANT: Caller is responsible for committing/closing.
        Prefer session_scope() or transaction_scope().
        """
        return self._session_factory()

    @contextmanager
    def session_scope(self) -> Generator[Session, None, None]:
        """
        Read-mostly session with automatic cleanup.

        On exception the session is rolled back and the exception
        re-raised unchanged.
        """
        session = self.get_session()
        try:
            yield session
        except SQLAlchemyError as e:
            logger.error(f"Database error, rolling back: {e}")
            session.rollback()
            raise
        finally:
            session.close()

    @contextmanager
    def transaction_scope(self) -> Generator[Session, None, None]:
        """
        Context manager for explicit transaction boundaries.

        Commits only if no exception occurs.
        Rolls back on ANY exception.

        Raises:
            IntegrityViolationError: a unique constraint rejected the write
            DatabasePersistenceError: any other SQLAlchemy failure

        Non-database exceptions raised by the body propagate unchanged
        after the rollback.

        Usage:
            with db.transaction_scope() as session:
                session.add(order)
                session.add(position)
                # Commits automatically at end
        """
        session = self.get_session()
        try:
            yield session
            session.commit()
            logger.debug("Database transaction committed successfully")
        except IntegrityError as e:
            logger.warning(f"Integrity violation, rolling back: {e.orig}")
            session.rollback()
            raise IntegrityViolationError(f"Integrity violation: {e.orig}") from e
        except SQLAlchemyError as e:
            logger.error(f"Database transaction failed, rolling back: {e}")
            session.rollback()
            raise DatabasePersistenceError(f"Transaction failed: {e}") from e
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    # =========================================================
    # INITIALIZATION
    # =========================================================

    def verify_connection(self) -> bool:
        """
        Verify database connection is working.

        Raises:
            DatabaseConnectionError if connection fails
        """
        try:
            with self._engine.connect() as conn:
                conn.execute(text("SELECT 1")).fetchone()
                logger.info("Database connection verified successfully")
                return True
        except OperationalError as e:
            logger.error(f"Database connection failed: {e}")
            raise DatabaseConnectionError(f"Cannot connect to database: {e}") from e

    def create_all(self) -> None:
        """
        Create all ledger tables.

        Raises:
            DatabaseInitializationError if table creation fails
        """
        from .models import Base

        try:
            Base.metadata.create_all(bind=self._engine)
            logger.info("Ledger tables created successfully")
        except SQLAlchemyError as e:
            logger.error(f"Failed to create ledger tables: {e}")
            raise DatabaseInitializationError(f"Table creation failed: {e}") from e

    def dispose(self) -> None:
        self._engine.dispose()


# =============================================================
# CUSTOM EXCEPTIONS
# =============================================================


class DatabasePersistenceError(Exception):
    """Raised when database persistence fails."""
    pass


class DatabaseConnectionError(DatabasePersistenceError):
    """Raised when database connection fails."""
    pass


class DatabaseInitializationError(DatabasePersistenceError):
    """Raised when database initialization fails."""
    pass


class IntegrityViolationError(DatabasePersistenceError):
    """Raised when a unique constraint rejects a write."""
    pass


# =============================================================
# EXPORTS
# =============================================================

__all__ = [
    "Database",
    "get_database_url",
    "DEFAULT_DATABASE_URL",
    # Exceptions
    "DatabasePersistenceError",
    "DatabaseConnectionError",
    "DatabaseInitializationError",
    "IntegrityViolationError",
]
