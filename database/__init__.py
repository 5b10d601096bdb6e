"""
Database layer — Multi-backend session persistence.

Backends:
  - SQL (PostgreSQL / MySQL / SQLite via SQLAlchemy async)
  - In-memory (dict-based, for development/testing)
  - File (JSON files on disk, for small deployments)

Quick start:
  from database import create_store
  from config.settings import get_settings
  store = create_store(get_settings().database)
  session = await store.get_session("abc123")
"""
from database.models import Base, SessionRow
from database.session import get_engine, get_db_session, init_db, close_db
from database.store_base import BaseSessionStore
from database.store import SqlSessionStore
from database.store_memory import InMemorySessionStore
from database.store_file import FileSessionStore
from database.store_factory import create_store, get_store, reset_store

__all__ = [
    # ORM models
    "Base", "SessionRow",
    # Session management
    "get_engine", "get_db_session", "init_db", "close_db",
    # Store interface
    "BaseSessionStore",
    # Store backends
    "SqlSessionStore", "InMemorySessionStore", "FileSessionStore",
    # Factory
    "create_store", "get_store", "reset_store",
]
