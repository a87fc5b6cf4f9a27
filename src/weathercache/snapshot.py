"""Best-effort snapshot persistence for the cache table and analytics.

All snapshot stores catch their infrastructure errors internally and degrade
gracefully: load failures return ``None`` (callers start empty), save failures
are logged and ignored (the in-memory state stays authoritative). Errors are
logged with ``exc_info=True`` so they remain observable.
"""

from __future__ import annotations

import asyncio
import os
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

import aiosqlite
import structlog

if TYPE_CHECKING:
    from collections.abc import Callable

log = structlog.get_logger()


class SnapshotStore(Protocol):
    async def load(self) -> bytes | None: ...

    async def save(self, payload: bytes) -> None: ...


class NullSnapshotStore:
    """Discards every save; always loads nothing."""

    async def load(self) -> bytes | None:
        return None

    async def save(self, payload: bytes) -> None:
        return None


class MemorySnapshotStore:
    """Keeps the last saved payload in memory."""

    def __init__(self, payload: bytes | None = None) -> None:
        self.payload = payload
        self.saves = 0

    async def load(self) -> bytes | None:
        return self.payload

    async def save(self, payload: bytes) -> None:
        self.payload = payload
        self.saves += 1


class FileSnapshotStore:
    """One snapshot per file, replaced atomically on every save."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path).expanduser()

    async def load(self) -> bytes | None:
        try:
            return await asyncio.to_thread(self.path.read_bytes)
        except FileNotFoundError:
            return None
        except OSError:
            log.warning("snapshot_read_error", path=str(self.path), exc_info=True)
            return None

    async def save(self, payload: bytes) -> None:
        try:
            await asyncio.to_thread(self._write, payload)
        except OSError:
            log.warning("snapshot_write_error", path=str(self.path), exc_info=True)

    def _write(self, payload: bytes) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp.write_bytes(payload)
        os.replace(tmp, self.path)


_CREATE_SNAPSHOT_TABLE = """
CREATE TABLE IF NOT EXISTS snapshots (
    name      TEXT PRIMARY KEY,
    payload   BLOB NOT NULL,
    saved_at  TEXT NOT NULL
)
"""


async def init_snapshot_db(db: aiosqlite.Connection) -> None:
    """Create the snapshot table and set WAL mode. Called once at startup."""
    await db.execute("PRAGMA journal_mode = WAL")
    await db.execute(_CREATE_SNAPSHOT_TABLE)
    await db.commit()


class SqliteSnapshotStore:
    """Named snapshot row in a shared SQLite database."""

    def __init__(self, db: aiosqlite.Connection, name: str) -> None:
        self._db = db
        self.name = name

    async def load(self) -> bytes | None:
        try:
            cursor = await self._db.execute(
                "SELECT payload FROM snapshots WHERE name = ?", (self.name,)
            )
            row = await cursor.fetchone()
            if row is None:
                return None
            payload = row[0]
            return payload.encode("utf-8") if isinstance(payload, str) else bytes(payload)
        except aiosqlite.Error:
            log.warning("snapshot_read_error", name=self.name, exc_info=True)
            return None

    async def save(self, payload: bytes) -> None:
        try:
            await self._db.execute(
                "INSERT OR REPLACE INTO snapshots (name, payload, saved_at) VALUES (?, ?, ?)",
                (self.name, payload, datetime.now(UTC).isoformat()),
            )
            await self._db.commit()
        except aiosqlite.Error:
            log.warning("snapshot_write_error", name=self.name, exc_info=True)


class SnapshotWriter:
    """Coalesces save requests into at most one background write at a time.

    ``schedule()`` never blocks: it marks the state dirty and, when no write
    is running, starts one on the event loop. The payload is built right
    before writing, so a burst of changes produces a single serialization.
    """

    def __init__(self, store: SnapshotStore, build: Callable[[], bytes], name: str) -> None:
        self._store = store
        self._build = build
        self._name = name
        self._dirty = False
        self._task: asyncio.Task[None] | None = None

    @property
    def dirty(self) -> bool:
        return self._dirty

    def schedule(self) -> None:
        self._dirty = True
        if self._task is not None and not self._task.done():
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # Outside the loop: the write happens on the next flush().
            return
        self._task = loop.create_task(self._drain())

    async def flush(self) -> None:
        """Wait for any running write, then write once more if still dirty."""
        if self._task is not None and not self._task.done():
            await self._task
        if self._dirty:
            await self._drain()

    async def _drain(self) -> None:
        while self._dirty:
            self._dirty = False
            try:
                payload = self._build()
            except (TypeError, ValueError):
                log.warning("snapshot_serialize_error", name=self._name, exc_info=True)
                return
            await self._store.save(payload)
