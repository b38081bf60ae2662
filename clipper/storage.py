"""
Key/value persistence for clipper.

Both backends expose the same small async surface:

    await storage.get(["clips", "authUser"])   -> {"clips": [...], ...}
    await storage.set({"clips": [...]})
    storage.subscribe(callback)                 # callback(set_of_changed_keys)

Values are JSON-compatible. ``get`` only returns keys that are present;
callers supply their own defaults. ``set`` replaces each given key's value
wholesale; there is no item-level update at this layer.

Values handed out by ``get`` are copies: mutating them never changes what
is stored.
"""

import asyncio
import copy
import json
import logging
import sqlite3
import threading
from collections.abc import Callable, Iterable
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional, Protocol, runtime_checkable

logger = logging.getLogger(__name__)

ChangeListener = Callable[[set[str]], None]

_MISSING = object()


@runtime_checkable
class Storage(Protocol):
    """Persistence contract consumed by the store mutator and the service."""

    async def get(self, keys: Iterable[str]) -> dict[str, Any]:
        ...

    async def set(self, values: dict[str, Any]) -> None:
        ...

    def subscribe(self, listener: ChangeListener) -> Callable[[], None]:
        """Register a change listener; returns an unsubscribe function."""
        ...


class _ListenerMixin:
    """Change-notification fan-out shared by the backends."""

    def _init_listeners(self) -> None:
        self._listeners: list[ChangeListener] = []

    def subscribe(self, listener: ChangeListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self, keys: set[str]) -> None:
        if not keys:
            return
        for listener in list(self._listeners):
            try:
                listener(set(keys))
            except Exception as e:
                # A broken listener must not fail the write that triggered it
                logger.warning("Storage change listener failed: %s", e, exc_info=True)


class MemoryStorage(_ListenerMixin):
    """In-process storage. Used for tests and ephemeral sessions."""

    def __init__(self, initial: Optional[dict[str, Any]] = None):
        self._data: dict[str, Any] = copy.deepcopy(initial or {})
        self._init_listeners()
        self.get_calls = 0
        self.set_calls = 0

    async def get(self, keys: Iterable[str]) -> dict[str, Any]:
        self.get_calls += 1
        await asyncio.sleep(0)
        return {k: copy.deepcopy(self._data[k]) for k in keys if k in self._data}

    async def set(self, values: dict[str, Any]) -> None:
        self.set_calls += 1
        await asyncio.sleep(0)
        changed = set()
        for key, value in values.items():
            if self._data.get(key, _MISSING) != value:
                changed.add(key)
            self._data[key] = copy.deepcopy(value)
        self._notify(changed)

    def snapshot(self) -> dict[str, Any]:
        """Synchronous copy of everything stored."""
        return copy.deepcopy(self._data)


class SqliteStorage(_ListenerMixin):
    """
    SQLite-backed storage: one row per key, JSON-encoded value.

    Blocking sqlite calls run on a worker thread so the event loop keeps
    serving other triggers while I/O is in flight.
    """

    def __init__(self, db_path: Path):
        """
        Args:
            db_path: Path to SQLite database file
        """
        self._db_path = db_path
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.Lock()
        self._init_listeners()
        self._init_db()

    def _init_db(self) -> None:
        """Initialize the SQLite database."""
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(self._db_path), check_same_thread=False)

        # WAL lets an external reader (a UI process) read while we write
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA busy_timeout=5000")

        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS kv (
                key TEXT PRIMARY KEY,
                value_json TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)
        self._conn.commit()

    def _get_sync(self, keys: list[str]) -> dict[str, Any]:
        if not keys:
            return {}
        placeholders = ",".join("?" * len(keys))
        with self._lock:
            rows = self._conn.execute(
                f"SELECT key, value_json FROM kv WHERE key IN ({placeholders})",
                keys,
            ).fetchall()
        return {key: json.loads(value) for key, value in rows}

    def _set_sync(self, values: dict[str, Any]) -> set[str]:
        now = datetime.now(timezone.utc).isoformat()
        changed = set()
        with self._lock:
            for key, value in values.items():
                encoded = json.dumps(value, ensure_ascii=False)
                row = self._conn.execute(
                    "SELECT value_json FROM kv WHERE key = ?", (key,)
                ).fetchone()
                if row is None or row[0] != encoded:
                    changed.add(key)
                self._conn.execute(
                    "INSERT OR REPLACE INTO kv (key, value_json, updated_at) VALUES (?, ?, ?)",
                    (key, encoded, now),
                )
            self._conn.commit()
        return changed

    async def get(self, keys: Iterable[str]) -> dict[str, Any]:
        return await asyncio.to_thread(self._get_sync, list(keys))

    async def set(self, values: dict[str, Any]) -> None:
        changed = await asyncio.to_thread(self._set_sync, dict(values))
        self._notify(changed)

    def close(self) -> None:
        """Close the database connection."""
        if self._conn is not None:
            self._conn.close()
            self._conn = None
