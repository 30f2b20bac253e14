"""
Database layer — Submission queue persistence.

Backends:
  - SQL (PostgreSQL / MySQL / SQLite via SQLAlchemy async)
  - In-memory (dict-based, for development/testing)

Quick start:
  from database import create_store
  store, engine = create_store({"store_backend": "memory"})
  await store.create_items("wf1", "u1", "cv1", ["101", "102"])
"""
from database.models import Base, ApplicationQueueRow
from database.session import create_engine, create_session_factory, session_scope, init_db, close_db
from database.store_base import BaseQueueStore
from database.store import SqlQueueStore
from database.store_memory import InMemoryQueueStore
from database.store_factory import create_store

__all__ = [
    # ORM models
    "Base", "ApplicationQueueRow",
    # Session management
    "create_engine", "create_session_factory", "session_scope", "init_db", "close_db",
    # Store interface
    "BaseQueueStore",
    # Store backends
    "SqlQueueStore", "InMemoryQueueStore",
    # Factory
    "create_store",
]
