"""
Store Factory — picks the session store backend named in settings.

    database:
      store_backend: memory              # memory | file | sql
      store_file_dir: ./data             # file backend only
      url: "sqlite:///./flow_engine.db"  # sql backend only

`memory` loses sessions on restart. `file` survives restarts on one node.
Only `sql` makes a claim visible to other worker processes, so it is the
backend to use when more than one process receives webhooks.
"""
from __future__ import annotations

import structlog
from typing import Optional

from config.settings import DatabaseConfig, get_settings
from database.store_base import BaseSessionStore

logger = structlog.get_logger()

BACKENDS = ("memory", "file", "sql")

_instance: Optional[BaseSessionStore] = None


def _build(config: DatabaseConfig) -> BaseSessionStore:
    backend = config.store_backend
    if backend == "sql":
        from database.store import SqlSessionStore
        return SqlSessionStore()
    if backend == "file":
        from database.store_file import FileSessionStore
        return FileSessionStore(data_dir=config.store_file_dir)
    if backend == "memory":
        from database.store_memory import InMemorySessionStore
        return InMemorySessionStore()
    raise ValueError(
        f"database.store_backend must be one of {', '.join(BACKENDS)}, got '{backend}'"
    )


def create_store(config: DatabaseConfig = None) -> BaseSessionStore:
    """Build the configured store once; later calls return the same instance."""
    global _instance
    if _instance is None:
        config = config or get_settings().database
        _instance = _build(config)
        logger.info("store_created",
                    backend=config.store_backend,
                    store=type(_instance).__name__)
    return _instance


def get_store() -> BaseSessionStore:
    return create_store()


def reset_store() -> None:
    """Forget the singleton (tests, reconfiguration)."""
    global _instance
    _instance = None
