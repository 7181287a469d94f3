"""Key-value storage backends used as Local Store Chain tiers.

Each backend exposes the same small contract:

- ``get(key)`` returns the stored value or None
- ``set(key, value)`` / ``remove(key)``
- ``update(key, fn)`` atomic read-modify-write; ``fn`` receives the current
  value and returns the new one, or ``NO_CHANGE`` to skip the write
- ``subscribe(listener)`` native change events as ``(key, old, new)``

Values must be JSON serializable. Any failure is reported as
``BackendUnavailable`` so the chain can fall through to the next tier.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import sqlite3
import threading
from collections.abc import AsyncGenerator, Callable
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path
from typing import Any

import aiosqlite

from src.sync.errors import BackendUnavailable

logger = logging.getLogger(__name__)

ChangeListener = Callable[[str, Any, Any], None]


class _NoChange:
    def __repr__(self) -> str:
        return "NO_CHANGE"


NO_CHANGE: Any = _NoChange()


def _encode(backend: str, value: Any) -> str:
    try:
        return json.dumps(value, sort_keys=True)
    except (TypeError, ValueError) as exc:
        raise BackendUnavailable(backend, f"serialization error: {exc}") from exc


def _decode(backend: str, raw: str | None) -> Any:
    if raw is None:
        return None
    try:
        return json.loads(raw)
    except json.JSONDecodeError as exc:
        raise BackendUnavailable(backend, f"corrupt value: {exc}") from exc


class KeyValueBackend:
    """Base class holding the change-listener bookkeeping."""

    name = "backend"

    def __init__(self) -> None:
        self._listeners: list[ChangeListener] = []
        self._listeners_lock = threading.Lock()

    async def initialize(self) -> None:
        """Prepare the backend for use."""

    async def close(self) -> None:
        """Release any held resources."""

    async def get(self, key: str) -> Any:
        raise NotImplementedError

    async def set(self, key: str, value: Any) -> None:
        await self.update(key, lambda _current: value)

    async def remove(self, key: str) -> None:
        raise NotImplementedError

    async def update(self, key: str, fn: Callable[[Any], Any]) -> Any:
        raise NotImplementedError

    def subscribe(self, listener: ChangeListener) -> Callable[[], None]:
        """Register a native change listener; returns an unsubscribe callable."""
        with self._listeners_lock:
            self._listeners.append(listener)

        def _unsubscribe() -> None:
            with self._listeners_lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return _unsubscribe

    def _emit(self, key: str, old: Any, new: Any) -> None:
        with self._listeners_lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(key, old, new)
            except Exception:
                logger.exception("Change listener failed for key %s", key)


class MemoryBackend(KeyValueBackend):
    """Volatile store shared by every context in the same process.

    Values are kept serialized so quota and serialization failures surface
    the same way they would on a persistent store.
    """

    name = "memory"

    def __init__(self, quota_bytes: int | None = None, name: str | None = None) -> None:
        super().__init__()
        if name:
            self.name = name
        self.quota_bytes = quota_bytes
        self._data: dict[str, str] = {}
        self._lock = threading.Lock()

    def _check_quota(self, key: str, encoded: str) -> None:
        if self.quota_bytes is None:
            return
        used = sum(len(v) for k, v in self._data.items() if k != key) + len(encoded)
        if used > self.quota_bytes:
            raise BackendUnavailable(
                self.name, f"quota exceeded ({used} > {self.quota_bytes} bytes)"
            )

    async def get(self, key: str) -> Any:
        with self._lock:
            raw = self._data.get(key)
        return _decode(self.name, raw)

    async def remove(self, key: str) -> None:
        with self._lock:
            raw = self._data.pop(key, None)
        if raw is not None:
            self._emit(key, _decode(self.name, raw), None)

    async def update(self, key: str, fn: Callable[[Any], Any]) -> Any:
        with self._lock:
            old = _decode(self.name, self._data.get(key))
            new = fn(old)
            if new is NO_CHANGE:
                return old
            if new is None:
                self._data.pop(key, None)
            else:
                encoded = _encode(self.name, new)
                self._check_quota(key, encoded)
                self._data[key] = encoded
        self._emit(key, old, new)
        return new


class JsonFileBackend(KeyValueBackend):
    """Page-scoped store: one JSON document on disk holding every key."""

    name = "json-file"

    def __init__(self, path: Path | str, quota_bytes: int | None = None) -> None:
        super().__init__()
        self.path = Path(path)
        self.quota_bytes = quota_bytes
        self._lock = threading.Lock()

    async def initialize(self) -> None:
        try:
            await asyncio.to_thread(self.path.parent.mkdir, parents=True, exist_ok=True)
        except OSError as exc:
            raise BackendUnavailable(self.name, f"cannot create directory: {exc}") from exc

    def _load(self) -> dict[str, Any]:
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        except OSError as exc:
            raise BackendUnavailable(self.name, f"read failed: {exc}") from exc
        document = _decode(self.name, raw) if raw.strip() else {}
        if not isinstance(document, dict):
            raise BackendUnavailable(self.name, "corrupt document: not an object")
        return document

    def _store(self, document: dict[str, Any]) -> None:
        encoded = _encode(self.name, document)
        if self.quota_bytes is not None and len(encoded) > self.quota_bytes:
            raise BackendUnavailable(
                self.name, f"quota exceeded ({len(encoded)} > {self.quota_bytes} bytes)"
            )
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        try:
            tmp_path.write_text(encoded, encoding="utf-8")
            os.replace(tmp_path, self.path)
        except OSError as exc:
            raise BackendUnavailable(self.name, f"write failed: {exc}") from exc

    def _get_sync(self, key: str) -> Any:
        with self._lock:
            return self._load().get(key)

    def _update_sync(self, key: str, fn: Callable[[Any], Any]) -> tuple[Any, Any]:
        with self._lock:
            document = self._load()
            old = document.get(key)
            new = fn(old)
            if new is NO_CHANGE:
                return old, NO_CHANGE
            if new is None:
                document.pop(key, None)
            else:
                document[key] = new
            self._store(document)
            return old, new

    async def get(self, key: str) -> Any:
        return await asyncio.to_thread(self._get_sync, key)

    async def remove(self, key: str) -> None:
        await self.update(key, lambda _current: None)

    async def update(self, key: str, fn: Callable[[Any], Any]) -> Any:
        old, new = await asyncio.to_thread(self._update_sync, key, fn)
        if new is NO_CHANGE:
            return old
        self._emit(key, old, new)
        return new


CREATE_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS kv_store (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    updated_at TEXT NOT NULL
)
"""


class SqliteBackend(KeyValueBackend):
    """Durable extension-scoped store backed by an SQLite key-value table.

    ``update`` runs inside ``BEGIN IMMEDIATE`` so a read-modify-write is
    atomic across every process sharing the database file.
    """

    name = "sqlite"

    def __init__(self, db_path: Path | str, busy_timeout: float = 5.0) -> None:
        super().__init__()
        self.db_path = Path(db_path)
        self.busy_timeout = busy_timeout
        self._connection: aiosqlite.Connection | None = None
        self._tx_lock = asyncio.Lock()

    @asynccontextmanager
    async def _get_connection(self) -> AsyncGenerator[aiosqlite.Connection, None]:
        """Get the database connection, opening it on first use."""
        if self._connection is None:
            try:
                self._connection = await aiosqlite.connect(
                    self.db_path, timeout=self.busy_timeout, isolation_level=None
                )
            except (sqlite3.Error, OSError) as exc:
                raise BackendUnavailable(self.name, f"cannot open database: {exc}") from exc
            self._connection.row_factory = aiosqlite.Row
        yield self._connection

    async def initialize(self) -> None:
        """Initialize the database, creating the table if needed."""
        try:
            await asyncio.to_thread(
                self.db_path.parent.mkdir, parents=True, exist_ok=True
            )
            async with self._get_connection() as conn:
                await conn.execute("PRAGMA journal_mode=WAL")
                await conn.execute(CREATE_TABLE_SQL)
        except (sqlite3.Error, OSError) as exc:
            raise BackendUnavailable(self.name, f"initialization failed: {exc}") from exc

    async def close(self) -> None:
        """Close the database connection."""
        if self._connection is not None:
            await self._connection.close()
            self._connection = None

    async def get(self, key: str) -> Any:
        try:
            async with self._get_connection() as conn:
                cursor = await conn.execute(
                    "SELECT value FROM kv_store WHERE key = ?", (key,)
                )
                row = await cursor.fetchone()
        except sqlite3.Error as exc:
            raise BackendUnavailable(self.name, f"read failed: {exc}") from exc
        return _decode(self.name, row["value"] if row is not None else None)

    async def remove(self, key: str) -> None:
        await self.update(key, lambda _current: None)

    async def update(self, key: str, fn: Callable[[Any], Any]) -> Any:
        async with self._tx_lock:
            try:
                async with self._get_connection() as conn:
                    await conn.execute("BEGIN IMMEDIATE")
                    try:
                        cursor = await conn.execute(
                            "SELECT value FROM kv_store WHERE key = ?", (key,)
                        )
                        row = await cursor.fetchone()
                        old = _decode(self.name, row["value"] if row is not None else None)
                        new = fn(old)
                        if new is NO_CHANGE:
                            await conn.execute("ROLLBACK")
                            return old
                        if new is None:
                            await conn.execute("DELETE FROM kv_store WHERE key = ?", (key,))
                        else:
                            await conn.execute(
                                """
                                INSERT INTO kv_store (key, value, updated_at)
                                VALUES (?, ?, ?)
                                ON CONFLICT(key) DO UPDATE SET
                                    value = excluded.value,
                                    updated_at = excluded.updated_at
                                """,
                                (key, _encode(self.name, new), datetime.now().isoformat()),
                            )
                        await conn.execute("COMMIT")
                    except BaseException:
                        await conn.execute("ROLLBACK")
                        raise
            except sqlite3.Error as exc:
                raise BackendUnavailable(self.name, f"write failed: {exc}") from exc

        self._emit(key, old, new)
        return new
