"""
Process-wide execution store, selected by `database.store_backend`:

  sql     executions and flows in the database at `database.url`
  memory  in-process dicts, lost on restart (development and tests)
"""
from __future__ import annotations

import structlog
from typing import Callable, Optional

from database.store_base import BaseExecutionStore

logger = structlog.get_logger()


def _sql_store() -> BaseExecutionStore:
    from database.store import SqlExecutionStore
    return SqlExecutionStore()


def _memory_store() -> BaseExecutionStore:
    from database.store_memory import InMemoryExecutionStore
    return InMemoryExecutionStore()


_BACKENDS: dict[str, Callable[[], BaseExecutionStore]] = {
    "sql": _sql_store,
    "memory": _memory_store,
}

_instance: Optional[BaseExecutionStore] = None


def create_store(config: dict = None) -> BaseExecutionStore:
    """Build the store once; later calls return the same instance whatever the config."""
    global _instance
    if _instance is None:
        backend = (config or {}).get("store_backend", "memory")
        if backend not in _BACKENDS:
            raise ValueError(f"Unknown store backend: {backend}")
        _instance = _BACKENDS[backend]()
        logger.info("store_created", backend=backend)
    return _instance


def get_store() -> BaseExecutionStore:
    return _instance if _instance is not None else create_store()


def reset_store() -> None:
    global _instance
    _instance = None
