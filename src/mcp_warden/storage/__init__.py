"""Persistence collaborators for ledger and sandbox records."""

import sqlite3

from mcp_warden.config import Settings
from mcp_warden.logging import get_logger
from mcp_warden.storage.base import (
    RecordStore,
    load_all_best_effort,
    load_best_effort,
    save_best_effort,
)
from mcp_warden.storage.memory import MemoryRecordStore
from mcp_warden.storage.sqlite import SQLiteRecordStore

__all__ = [
    "MemoryRecordStore",
    "RecordStore",
    "SQLiteRecordStore",
    "build_store",
    "load_all_best_effort",
    "load_best_effort",
    "save_best_effort",
]


log = get_logger("mcp_warden.storage")


def build_store(settings: Settings, namespace: str) -> RecordStore | None:
    """Create the configured store backend for *namespace*.

    Returns None when the SQLite file cannot be opened; callers then run
    from memory alone.
    """
    if settings.store_backend == "sqlite":
        try:
            return SQLiteRecordStore(settings.store_db_path, namespace=namespace)
        except (OSError, sqlite3.Error) as e:
            log.error(
                "store_init_failed",
                path=settings.store_db_path,
                namespace=namespace,
                error=str(e),
            )
            return None
    # Violations are keyed per record, so only that namespace needs a bound.
    maxlen = settings.sandbox_violation_log_limit if namespace == "violations" else None
    return MemoryRecordStore(namespace=namespace, maxlen=maxlen)
