"""
Database layer — Execution State Store with multi-backend persistence.

Backends:
  - SQL (PostgreSQL / MySQL / SQLite via SQLAlchemy async)
  - In-memory (dict-based, for development/testing)

Quick start:
  from database import create_store, get_store
  store = create_store({"store_backend": "memory"})
  execution = await store.find_active_execution("5511999999999")
"""
from database.models import Base, FlowRow, FlowExecutionRow
from database.session import get_engine, get_session, init_db, close_db
from database.errors import StoreError, ActiveExecutionExistsError, StaleExecutionError
from database.store_base import BaseExecutionStore
from database.store import SqlExecutionStore
from database.store_memory import InMemoryExecutionStore
from database.store_factory import create_store, get_store, reset_store

__all__ = [
    # ORM models
    "Base", "FlowRow", "FlowExecutionRow",
    # Session management
    "get_engine", "get_session", "init_db", "close_db",
    # Errors
    "StoreError", "ActiveExecutionExistsError", "StaleExecutionError",
    # Store interface
    "BaseExecutionStore",
    # Store backends
    "SqlExecutionStore", "InMemoryExecutionStore",
    # Factory
    "create_store", "get_store", "reset_store",
]
