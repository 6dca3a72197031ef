"""Local artifact cache with LRU eviction and revocable read handles.

The cache makes previously generated pages instantly retrievable.  It is
strictly an optimization: nothing here is a source of truth, so write
failures are logged and swallowed and read failures count as a miss.

Storage
-------
Entries live in a single SQLite file managed by :class:`ArtifactStore`.
The store is opened once at application startup and handed to the
:class:`ArtifactCache` (and anything else that needs it) explicitly.
SQLite calls are blocking, so the async cache runs them with
:func:`asyncio.to_thread`; each call opens its own connection, which keeps
the store safe to use from worker threads.

Eviction
--------
After every successful write the total payload size is summed.  When it
exceeds ``max_bytes`` the oldest entries (by last write time, ties broken by
write order) are deleted one at a time until the total is at or below
``low_water_ratio * max_bytes``.  The gap between the cap and the low-water
mark stops repeated near-cap writes from evicting on every call.

Handles
-------
:meth:`ArtifactCache.get` returns an :class:`ArtifactHandle`, a borrowed
view of a *copy* of the payload with an explicit :meth:`~ArtifactHandle.release`.
Asking for the same id again revokes the previously issued handle, and
invalidation, clearing or eviction revoke the handles of the removed ids.
Because handles own their bytes, evicting an entry right after a handle was
issued never corrupts the reader.
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
import time
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

DEFAULT_MAX_BYTES = 500 * 1024 * 1024
DEFAULT_LOW_WATER_RATIO = 0.8


class HandleReleasedError(RuntimeError):
    """Raised when reading from a handle that was released or revoked."""


@dataclass(frozen=True)
class CacheEntry:
    """Metadata of one cached artifact (payload excluded)."""

    artifact_id: str
    origin_key: str
    cached_at: float
    write_seq: int
    size: int


@dataclass(frozen=True)
class CacheStats:
    count: int
    total_bytes: int


class ArtifactHandle:
    """Borrowed read access to a cached payload.

    Use as a context manager to release automatically::

        handle = await cache.get("abc")
        if handle is not None:
            with handle:
                png = handle.read()
    """

    def __init__(self, artifact_id: str, payload: bytes, mime_type: str = "image/png") -> None:
        self.artifact_id = artifact_id
        self.mime_type = mime_type
        self._payload: bytes | None = payload

    @property
    def released(self) -> bool:
        return self._payload is None

    @property
    def size(self) -> int:
        return len(self._require())

    def read(self) -> bytes:
        """Return the payload bytes."""
        return self._require()

    def view(self) -> memoryview:
        """Return a zero-copy view of the payload."""
        return memoryview(self._require())

    def release(self) -> None:
        """Give up access to the payload.  Safe to call more than once."""
        self._payload = None

    def _require(self) -> bytes:
        if self._payload is None:
            raise HandleReleasedError(f"Handle for '{self.artifact_id}' has been released")
        return self._payload

    def __enter__(self) -> ArtifactHandle:
        return self

    def __exit__(self, *exc_info) -> None:
        self.release()

    def __repr__(self) -> str:
        state = "released" if self.released else f"{len(self._payload)} bytes"
        return f"ArtifactHandle({self.artifact_id!r}, {state})"


class ArtifactStore:
    """SQLite-backed durable key -> blob store.

    All methods are synchronous and raise :class:`sqlite3.Error` on failure;
    :class:`ArtifactCache` is responsible for turning failures into log
    lines.
    """

    def __init__(self, db_path: Path):
        """Initialize the artifact store.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._initialize_db()
        logger.info(f"Initialized artifact store at {self.db_path}")

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(self.db_path, timeout=30)

    def _initialize_db(self) -> None:
        """Create database schema if it doesn't exist."""
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS artifacts (
                    id TEXT PRIMARY KEY,
                    payload BLOB NOT NULL,
                    mime_type TEXT NOT NULL DEFAULT 'image/png',
                    origin_key TEXT NOT NULL,
                    cached_at REAL NOT NULL,
                    write_seq INTEGER NOT NULL,
                    size INTEGER NOT NULL
                )
                """)

            # LRU scans read oldest-first
            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_artifacts_lru
                ON artifacts(cached_at, write_seq)
                """)

            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_artifacts_origin
                ON artifacts(origin_key)
                """)
            conn.commit()

    def put(
        self,
        artifact_id: str,
        payload: bytes,
        origin_key: str,
        cached_at: float,
        mime_type: str = "image/png",
    ) -> None:
        """Insert or replace an entry, stamping a new write sequence number."""
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT COALESCE(MAX(write_seq), 0) + 1 FROM artifacts")
            write_seq = cursor.fetchone()[0]
            cursor.execute(
                """
                INSERT OR REPLACE INTO artifacts
                    (id, payload, mime_type, origin_key, cached_at, write_seq, size)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    artifact_id,
                    sqlite3.Binary(payload),
                    mime_type,
                    origin_key,
                    cached_at,
                    write_seq,
                    len(payload),
                ),
            )
            conn.commit()

    def read(self, artifact_id: str) -> tuple[bytes, str] | None:
        """Return ``(payload, mime_type)`` for ``artifact_id``, or ``None``."""
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute(
                "SELECT payload, mime_type FROM artifacts WHERE id = ?", (artifact_id,)
            )
            row = cursor.fetchone()
            return (bytes(row[0]), row[1]) if row else None

    def get(self, artifact_id: str) -> bytes | None:
        entry = self.read(artifact_id)
        return entry[0] if entry else None

    def has(self, artifact_id: str) -> bool:
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT 1 FROM artifacts WHERE id = ? LIMIT 1", (artifact_id,))
            return cursor.fetchone() is not None

    def delete(self, artifact_id: str) -> bool:
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute("DELETE FROM artifacts WHERE id = ?", (artifact_id,))
            conn.commit()
            return cursor.rowcount > 0

    def delete_many(self, artifact_ids: list[str]) -> None:
        with self._connect() as conn:
            conn.executemany(
                "DELETE FROM artifacts WHERE id = ?",
                [(artifact_id,) for artifact_id in artifact_ids],
            )
            conn.commit()

    def ids_for_origin(self, origin_key: str) -> list[str]:
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT id FROM artifacts WHERE origin_key = ?", (origin_key,))
            return [row[0] for row in cursor.fetchall()]

    def clear(self) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM artifacts")
            conn.commit()

    def entries_oldest_first(self) -> list[CacheEntry]:
        """List entry metadata ordered by last write time, then write order."""
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute("""
                SELECT id, origin_key, cached_at, write_seq, size
                FROM artifacts
                ORDER BY cached_at ASC, write_seq ASC
                """)
            return [CacheEntry(*row) for row in cursor.fetchall()]

    def stats(self) -> CacheStats:
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT COUNT(*), COALESCE(SUM(size), 0) FROM artifacts")
            count, total = cursor.fetchone()
            return CacheStats(count=count, total_bytes=total)


class ArtifactCache:
    """Async LRU cache of generated artifacts on top of an :class:`ArtifactStore`.

    Attributes:
        max_bytes: Total payload size that triggers eviction.
        low_water_ratio: Eviction stops once the total is at or below
            ``low_water_ratio * max_bytes``.
    """

    def __init__(
        self,
        store: ArtifactStore,
        *,
        max_bytes: int = DEFAULT_MAX_BYTES,
        low_water_ratio: float = DEFAULT_LOW_WATER_RATIO,
    ) -> None:
        if max_bytes <= 0:
            raise ValueError(f"max_bytes must be positive, got {max_bytes}")
        if not 0 < low_water_ratio <= 1:
            raise ValueError(f"low_water_ratio must be in (0, 1], got {low_water_ratio}")

        self._store = store
        self.max_bytes = max_bytes
        self.low_water_ratio = low_water_ratio
        self._handles: dict[str, ArtifactHandle] = {}
        # Serializes write + eviction; readers never take it.
        self._write_lock = asyncio.Lock()

    @property
    def store(self) -> ArtifactStore:
        return self._store

    async def put(
        self, artifact_id: str, data: bytes, origin_key: str, mime_type: str = "image/png"
    ) -> None:
        """Store or replace ``artifact_id``, then evict if over the cap.

        The call returns only after eviction has finished.  Never raises.
        """
        try:
            async with self._write_lock:
                await asyncio.to_thread(
                    self._store.put, artifact_id, bytes(data), origin_key, time.time(), mime_type
                )
                await self._evict_if_needed()
        except Exception as e:
            logger.warning(f"Failed to cache artifact {artifact_id}: {e}")

    async def get(self, artifact_id: str) -> ArtifactHandle | None:
        """Return a fresh handle to the payload, or ``None`` on a miss.

        Any handle previously issued for ``artifact_id`` is revoked first.
        """
        try:
            entry = await asyncio.to_thread(self._store.read, artifact_id)
        except Exception as e:
            logger.warning(f"Failed to read cached artifact {artifact_id}: {e}")
            return None

        if entry is None:
            return None

        payload, mime_type = entry
        self._revoke(artifact_id)
        handle = ArtifactHandle(artifact_id, payload, mime_type)
        self._handles[artifact_id] = handle
        return handle

    async def has(self, artifact_id: str) -> bool:
        try:
            return await asyncio.to_thread(self._store.has, artifact_id)
        except Exception as e:
            logger.warning(f"Failed to check cache for {artifact_id}: {e}")
            return False

    async def invalidate(self, artifact_id: str) -> None:
        """Remove one entry and revoke its live handle."""
        try:
            await asyncio.to_thread(self._store.delete, artifact_id)
        except Exception as e:
            logger.warning(f"Failed to invalidate cached artifact {artifact_id}: {e}")
        finally:
            self._revoke(artifact_id)

    async def invalidate_origin(self, origin_key: str) -> int:
        """Remove every entry that was cached from ``origin_key``.

        Returns:
            Number of entries removed.
        """
        try:
            ids = await asyncio.to_thread(self._store.ids_for_origin, origin_key)
            if ids:
                await asyncio.to_thread(self._store.delete_many, ids)
        except Exception as e:
            logger.warning(f"Failed to invalidate cache entries for {origin_key}: {e}")
            return 0

        for artifact_id in ids:
            self._revoke(artifact_id)
        return len(ids)

    async def clear(self) -> None:
        """Remove all entries and revoke all live handles."""
        try:
            await asyncio.to_thread(self._store.clear)
            logger.info("Artifact cache cleared")
        except Exception as e:
            logger.warning(f"Failed to clear artifact cache: {e}")
        finally:
            for handle in self._handles.values():
                handle.release()
            self._handles.clear()

    async def stats(self) -> CacheStats:
        try:
            return await asyncio.to_thread(self._store.stats)
        except Exception as e:
            logger.warning(f"Failed to read cache stats: {e}")
            return CacheStats(count=0, total_bytes=0)

    async def _evict_if_needed(self) -> None:
        entries = await asyncio.to_thread(self._store.entries_oldest_first)
        total = sum(entry.size for entry in entries)
        if total <= self.max_bytes:
            return

        target = self.max_bytes * self.low_water_ratio
        to_delete: list[str] = []
        for entry in entries:
            if total <= target:
                break
            to_delete.append(entry.artifact_id)
            total -= entry.size

        await asyncio.to_thread(self._store.delete_many, to_delete)
        for artifact_id in to_delete:
            self._revoke(artifact_id)

        logger.info(f"Artifact cache evicted {len(to_delete)} entries ({total} bytes remain)")

    def _revoke(self, artifact_id: str) -> None:
        handle = self._handles.pop(artifact_id, None)
        if handle is not None:
            handle.release()
