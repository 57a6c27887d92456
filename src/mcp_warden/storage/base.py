"""Record store protocol and best-effort access helpers.

The store is treated as unreliable: in-memory state stays authoritative for
the running process, and every store call is bounded by a timeout. Failures
are logged and swallowed so that a dead database never takes the request path
down with it.
"""

from __future__ import annotations

import asyncio
from typing import Any, Protocol, runtime_checkable

from mcp_warden.logging import get_logger

log = get_logger("mcp_warden.storage")


@runtime_checkable
class RecordStore(Protocol):
    """Key/document store for one record type."""

    namespace: str

    async def load(self, key: str) -> dict[str, Any] | None: ...

    async def save(self, key: str, record: dict[str, Any]) -> None: ...

    async def load_all(self) -> list[dict[str, Any]]: ...


async def load_best_effort(
    store: RecordStore | None,
    key: str,
    *,
    timeout: float,
) -> dict[str, Any] | None:
    """Load *key* from *store*, returning None on absence, error or timeout."""
    if store is None:
        return None
    try:
        return await asyncio.wait_for(store.load(key), timeout=timeout)
    except TimeoutError:
        log.warning("store_timeout", operation="load", namespace=store.namespace, key=key)
    except Exception as e:
        log.warning(
            "store_load_failed", namespace=store.namespace, key=key, error=str(e)
        )
    return None


async def save_best_effort(
    store: RecordStore | None,
    key: str,
    record: dict[str, Any],
    *,
    timeout: float,
) -> bool:
    """Save *record* under *key*. Returns False if the write was lost."""
    if store is None:
        return False
    try:
        await asyncio.wait_for(store.save(key, record), timeout=timeout)
        return True
    except TimeoutError:
        log.warning("store_timeout", operation="save", namespace=store.namespace, key=key)
    except Exception as e:
        log.warning(
            "store_save_failed", namespace=store.namespace, key=key, error=str(e)
        )
    return False


async def load_all_best_effort(
    store: RecordStore | None,
    *,
    timeout: float,
) -> list[dict[str, Any]]:
    """Load every record in *store*, returning [] on error or timeout."""
    if store is None:
        return []
    try:
        return await asyncio.wait_for(store.load_all(), timeout=timeout)
    except TimeoutError:
        log.warning("store_timeout", operation="load_all", namespace=store.namespace)
    except Exception as e:
        log.warning("store_load_failed", namespace=store.namespace, key="*", error=str(e))
    return []
