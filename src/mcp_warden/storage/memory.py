"""In-process record store."""

from __future__ import annotations

import copy
from typing import Any


class MemoryRecordStore:
    """Dict-backed store. Records are deep-copied in and out.

    With ``maxlen`` set, saving a new key past the limit evicts the key that
    was saved least recently.
    """

    def __init__(self, namespace: str = "default", maxlen: int | None = None) -> None:
        self.namespace = namespace
        self.maxlen = maxlen
        self._records: dict[str, dict[str, Any]] = {}

    async def load(self, key: str) -> dict[str, Any] | None:
        record = self._records.get(key)
        return copy.deepcopy(record) if record is not None else None

    async def save(self, key: str, record: dict[str, Any]) -> None:
        self._records.pop(key, None)
        self._records[key] = copy.deepcopy(record)
        if self.maxlen is not None:
            while len(self._records) > self.maxlen:
                del self._records[next(iter(self._records))]

    async def load_all(self) -> list[dict[str, Any]]:
        return [copy.deepcopy(r) for r in self._records.values()]

    def __len__(self) -> int:
        return len(self._records)
