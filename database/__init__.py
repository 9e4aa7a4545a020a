"""
Database layer — Multi-backend persistence for notification records.

Backends:
  - SQL (PostgreSQL / MySQL / SQLite via SQLAlchemy async)
  - In-memory (dict-based, for development/testing)
  - File (JSON file on disk, for small single-process deployments)

Quick start:
  from database import create_store
  store = create_store({"store_backend": "memory"})
  record_id = await store.create(record)
"""
from database.models import Base, NotificationRow
from database.session import get_engine, get_session, init_db, close_db, create_engine_for_url
from database.store_base import BaseRecordStore, StoreUnavailableError
from database.store import SqlRecordStore
from database.store_memory import InMemoryRecordStore
from database.store_file import FileRecordStore
from database.store_factory import create_store

__all__ = [
    # ORM models
    "Base", "NotificationRow",
    # Session management
    "get_engine", "get_session", "init_db", "close_db", "create_engine_for_url",
    # Store interface
    "BaseRecordStore", "StoreUnavailableError",
    # Store backends
    "SqlRecordStore", "InMemoryRecordStore", "FileRecordStore",
    # Factory
    "create_store",
]
