"""SQLite record store.

Records are stored as JSON documents keyed by ``(namespace, key)``. Several
namespaces (reputation, sandbox, violations) share one database file.
Blocking sqlite3 calls run in a worker thread so the event loop never waits
on disk.
"""

import asyncio
import json
import sqlite3
from collections.abc import Generator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from mcp_warden.logging import get_logger

log = get_logger("mcp_warden.storage.sqlite")

_SCHEMA = """
CREATE TABLE IF NOT EXISTS records (
    namespace TEXT NOT NULL,
    key TEXT NOT NULL,
    document TEXT NOT NULL,
    updated_at DATETIME DEFAULT CURRENT_TIMESTAMP,
    PRIMARY KEY (namespace, key)
);

CREATE INDEX IF NOT EXISTS idx_records_namespace ON records(namespace);
"""


class SQLiteRecordStore:
    """SQLite storage for one record namespace.

    Thread-safe via connection-per-operation pattern.
    """

    def __init__(self, db_path: str | Path = "data/mcp_warden.db", namespace: str = "default"):
        """Initialize the record store.

        Args:
            db_path: Path to the SQLite database file.
            namespace: Record type stored through this instance.
        """
        self.namespace = namespace
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _init_db(self) -> None:
        """Initialize the database schema."""
        with self._get_connection() as conn:
            conn.executescript(_SCHEMA)
            conn.commit()
        log.debug("database_initialized", path=str(self._db_path), namespace=self.namespace)

    @contextmanager
    def _get_connection(self) -> Generator[sqlite3.Connection, None, None]:
        """Get a database connection with row factory."""
        conn = sqlite3.connect(str(self._db_path))
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        finally:
            conn.close()

    def _load_sync(self, key: str) -> dict[str, Any] | None:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT document FROM records WHERE namespace = ? AND key = ?",
                (self.namespace, key),
            ).fetchone()
        if row is None:
            return None
        return json.loads(row["document"])  # type: ignore[no-any-return]

    def _save_sync(self, key: str, record: dict[str, Any]) -> None:
        document = json.dumps(record, default=str)
        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT INTO records (namespace, key, document)
                VALUES (?, ?, ?)
                ON CONFLICT (namespace, key) DO UPDATE SET
                    document = excluded.document,
                    updated_at = CURRENT_TIMESTAMP
                """,
                (self.namespace, key, document),
            )
            conn.commit()

    def _load_all_sync(self) -> list[dict[str, Any]]:
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT document FROM records WHERE namespace = ? ORDER BY updated_at",
                (self.namespace,),
            ).fetchall()
        return [json.loads(row["document"]) for row in rows]

    async def load(self, key: str) -> dict[str, Any] | None:
        return await asyncio.to_thread(self._load_sync, key)

    async def save(self, key: str, record: dict[str, Any]) -> None:
        await asyncio.to_thread(self._save_sync, key, record)

    async def load_all(self) -> list[dict[str, Any]]:
        return await asyncio.to_thread(self._load_all_sync)
