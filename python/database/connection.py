"""
Database Connection Management for the Screening Engine

This module provides:
- Settings derived from the ``database`` config section (DATABASE_URL wins)
- Connection validation with tenacity retry on OperationalError
- DatabaseSession unit of work with explicit commit/rollback
- session_scope() context manager with auto-commit/rollback
- Global provider for the API process

Uses SQLAlchemy 2.0 style. sqlite (the default) gets a thread-tolerant
connection; in-memory sqlite shares one connection so all sessions see the
same tables.
"""

import logging
import os
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Callable, Dict, Generator, Optional

from sqlalchemy import Engine, create_engine, event, text
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from config_manager import DatabaseConfig
from database.models import Base

logger = logging.getLogger(__name__)


# ============================================
# CONFIGURATION
# ============================================

@dataclass
class DatabaseSettings:
    """Database configuration settings."""
    url: str = "sqlite:///screening.db"
    pool_size: int = 5
    max_overflow: int = 10
    pool_timeout: int = 30
    pool_recycle: int = 1800
    connect_retries: int = 3
    echo: bool = False

    @classmethod
    def from_config(cls, config: DatabaseConfig) -> 'DatabaseSettings':
        return cls(
            url=os.getenv("DATABASE_URL") or config.url,
            pool_size=config.pool_size,
            max_overflow=config.max_overflow,
            connect_retries=config.connect_retries,
            echo=config.echo,
        )

    @property
    def is_sqlite(self) -> bool:
        return self.url.startswith("sqlite")

    @property
    def is_memory(self) -> bool:
        return self.is_sqlite and (":memory:" in self.url or self.url.rstrip("/") == "sqlite:")

    def engine_options(self) -> Dict[str, Any]:
        """Keyword arguments for create_engine() appropriate to the backend"""
        if self.is_memory:
            return {
                "connect_args": {"check_same_thread": False},
                "poolclass": StaticPool,
            }
        if self.is_sqlite:
            return {"connect_args": {"check_same_thread": False}}
        return {
            "pool_size": self.pool_size,
            "max_overflow": self.max_overflow,
            "pool_timeout": self.pool_timeout,
            "pool_recycle": self.pool_recycle,
            "pool_pre_ping": True,
        }


# ============================================
# RETRY LOGIC
# ============================================

def create_retry_decorator(
    max_attempts: int = 3,
    min_wait: float = 1,
    max_wait: float = 10
) -> Callable:
    """
    Create a retry decorator for database operations.

    Args:
        max_attempts: Maximum number of attempts
        min_wait: Minimum wait time between retries (seconds)
        max_wait: Maximum wait time between retries (seconds)
    """
    return retry(
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(multiplier=1, min=min_wait, max=max_wait),
        retry=retry_if_exception_type(OperationalError),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True
    )


# ============================================
# UNIT OF WORK
# ============================================

class DatabaseSession:
    """
    Unit of work with explicit transaction boundaries.

    Rolls back when the block raises; otherwise the caller decides whether
    to commit.

    Usage:
        with provider.database_session() as db:
            WatchlistRepository(db.session).add('12345678', 'ACME LTD')
            db.commit()
    """

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory
        self._session: Optional[Session] = None

    def __enter__(self) -> 'DatabaseSession':
        self._session = self._session_factory()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if exc_type is not None:
            self.rollback()
        self.close()

    @property
    def session(self) -> Session:
        if self._session is None:
            raise RuntimeError("DatabaseSession not started. Use as context manager.")
        return self._session

    def commit(self) -> None:
        if self._session:
            self._session.commit()

    def rollback(self) -> None:
        if self._session:
            self._session.rollback()

    def close(self) -> None:
        if self._session:
            self._session.close()
            self._session = None


# ============================================
# SESSION PROVIDER
# ============================================

class DatabaseSessionProvider:
    """
    Owns the engine and hands out sessions.

    Usage:
        provider = DatabaseSessionProvider(DatabaseSettings.from_config(cfg.database))
        provider.init()
        provider.create_tables()
        with provider.session_scope() as session:
            ...
    """

    def __init__(self, settings: Optional[DatabaseSettings] = None,
                 engine: Optional[Engine] = None):
        """
        Args:
            settings: Database settings (defaults to sqlite:///screening.db)
            engine: Pre-created engine (for testing)
        """
        self._settings = settings or DatabaseSettings()
        self._engine = engine
        self._session_factory: Optional[sessionmaker] = None
        self._initialized = False

    @property
    def settings(self) -> DatabaseSettings:
        return self._settings

    def init(self) -> None:
        """Create the engine (validated with retry) and the session factory"""
        if self._initialized:
            return

        if self._engine is None:
            connect = create_retry_decorator(max_attempts=max(self._settings.connect_retries, 1))(
                self._create_engine
            )
            self._engine = connect()

        self._session_factory = sessionmaker(
            bind=self._engine,
            autocommit=False,
            autoflush=False,
            expire_on_commit=False
        )
        self._setup_event_listeners()
        self._initialized = True
        logger.info("Database session provider initialized")

    def _create_engine(self) -> Engine:
        engine = create_engine(
            self._settings.url,
            echo=self._settings.echo,
            **self._settings.engine_options()
        )
        # Verify connection
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return engine

    def _setup_event_listeners(self) -> None:

        @event.listens_for(self._engine, "connect")
        def on_connect(dbapi_connection, connection_record):
            logger.debug("New database connection established")

    @property
    def engine(self) -> Engine:
        if self._engine is None:
            raise RuntimeError("Database not initialized. Call init() first.")
        return self._engine

    def get_session(self) -> Generator[Session, None, None]:
        """FastAPI dependency style session generator"""
        if self._session_factory is None:
            self.init()

        session = self._session_factory()
        try:
            yield session
        finally:
            session.close()

    def database_session(self) -> DatabaseSession:
        if self._session_factory is None:
            self.init()
        return DatabaseSession(self._session_factory)

    @contextmanager
    def session_scope(self) -> Generator[Session, None, None]:
        """
        Context manager for session with auto-commit/rollback.

        Usage:
            with provider.session_scope() as session:
                session.add(entry)
                # Auto-commits on exit, rollbacks on exception
        """
        if self._session_factory is None:
            self.init()

        session = self._session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def create_tables(self) -> None:
        if self._engine is None:
            self.init()
        Base.metadata.create_all(self._engine)
        logger.info("Database tables created")

    def health_check(self) -> bool:
        try:
            with self.session_scope() as session:
                session.execute(text("SELECT 1"))
            return True
        except SQLAlchemyError as e:
            logger.error(f"Database health check failed: {e}")
            return False

    def close(self) -> None:
        if self._engine:
            self._engine.dispose()
            logger.info("Database engine disposed")
        self._initialized = False


# ============================================
# GLOBAL PROVIDER INSTANCE
# ============================================

_db_provider: Optional[DatabaseSessionProvider] = None


def get_db_provider() -> Optional[DatabaseSessionProvider]:
    return _db_provider


def init_db(config: Optional[DatabaseConfig] = None) -> DatabaseSessionProvider:
    """
    Initialize the global provider and create missing tables.

    Call this during application startup.
    """
    global _db_provider
    if _db_provider is None:
        _db_provider = DatabaseSessionProvider(DatabaseSettings.from_config(config or DatabaseConfig()))
    _db_provider.init()
    _db_provider.create_tables()
    return _db_provider


def close_db() -> None:
    """Call this during application shutdown."""
    global _db_provider
    if _db_provider:
        _db_provider.close()
        _db_provider = None


def create_test_provider(url: str = "sqlite:///:memory:") -> DatabaseSessionProvider:
    """In-memory provider with tables created, for tests"""
    provider = DatabaseSessionProvider(DatabaseSettings(url=url, connect_retries=1))
    provider.init()
    provider.create_tables()
    return provider
