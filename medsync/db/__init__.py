"""
Persistence Layer for the Ledger Synchronizer

Provides:
- PostgreSQL schema
- ProjectionStore abstraction (InMemory for dev, asyncpg for prod)
- Cursor store
- Connection pooling and configuration
"""

from .store import (
    BlockUnit,
    ProjectionStore,
    InMemoryProjectionStore,
    AsyncPostgresProjectionStore,
    open_store,
)
from .cursor import CursorStore
from .config import DatabaseConfig, StoreDriver, get_database_url, get_store_driver

__all__ = [
    "BlockUnit",
    "ProjectionStore",
    "InMemoryProjectionStore",
    "AsyncPostgresProjectionStore",
    "open_store",
    "CursorStore",
    "DatabaseConfig",
    "StoreDriver",
    "get_database_url",
    "get_store_driver",
]
