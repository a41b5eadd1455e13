"""
Database Package for the Screening Engine

This package provides:
- SQLAlchemy ORM models for the watchlist and alert read model
- Session provider with tenacity-retried connection setup
- DatabaseSession unit of work
- Repository pattern for data access
- WatchlistStore write-through used by the change-stream watcher
"""

from database.models import (
    Base,
    WatchlistEntryModel,
    AlertModel,
)
from database.connection import (
    DatabaseSession,
    DatabaseSessionProvider,
    DatabaseSettings,
    create_retry_decorator,
    get_db_provider,
    init_db,
    close_db,
    create_test_provider,
)
from database.repositories import (
    WatchlistRepository,
    AlertRepository,
    WatchlistStore,
)

__all__ = [
    # Models
    'Base',
    'WatchlistEntryModel',
    'AlertModel',
    # Connection
    'DatabaseSession',
    'DatabaseSessionProvider',
    'DatabaseSettings',
    'create_retry_decorator',
    'get_db_provider',
    'init_db',
    'close_db',
    'create_test_provider',
    # Repositories
    'WatchlistRepository',
    'AlertRepository',
    'WatchlistStore',
]
