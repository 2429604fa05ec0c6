"""DiskByteStore: optional durable tier for fetched image bytes.

Stores the encoded payload per resource so a cold process can skip the
network. Decoded bitmaps are never persisted; they are cheap to rebuild
from bytes at whatever size is requested next.
"""

from __future__ import annotations

import time
import weakref
from pathlib import Path

from drift_images.logger import get_logger

from ..metrics import metrics
from ..types import ResourceRef
from .db_operator import DbOperator

_logger = get_logger("byte_store")

DEFAULT_MAX_BYTES = 256 * 1024 * 1024


def _schema_init(conn) -> None:
    conn.execute("""
        CREATE TABLE IF NOT EXISTS images (
            resource TEXT PRIMARY KEY,
            data BLOB NOT NULL,
            size INTEGER NOT NULL,
            created_at REAL NOT NULL,
            accessed_at REAL NOT NULL
        )
    """)
    conn.execute("CREATE INDEX IF NOT EXISTS idx_accessed_at ON images(accessed_at)")


def _get(conn, resource: str) -> bytes | None:
    row = conn.execute("SELECT data FROM images WHERE resource = ?", (resource,)).fetchone()
    if row is None:
        return None
    conn.execute("UPDATE images SET accessed_at = ? WHERE resource = ?", (time.time(), resource))
    return bytes(row[0])


def _put(conn, resource: str, data: bytes, max_bytes: int) -> int:
    now = time.time()
    conn.execute(
        """
        INSERT INTO images (resource, data, size, created_at, accessed_at)
        VALUES (?, ?, ?, ?, ?)
        ON CONFLICT(resource) DO UPDATE SET
            data = excluded.data, size = excluded.size, accessed_at = excluded.accessed_at
        """,
        (resource, data, len(data), now, now),
    )
    return _prune(conn, max_bytes)


def _prune(conn, max_bytes: int) -> int:
    total = int(conn.execute("SELECT COALESCE(SUM(size), 0) FROM images").fetchone()[0])
    if total <= max_bytes:
        return 0
    removed = 0
    rows = conn.execute("SELECT resource, size FROM images ORDER BY accessed_at ASC, rowid ASC").fetchall()
    for resource, size in rows:
        if total <= max_bytes:
            break
        conn.execute("DELETE FROM images WHERE resource = ?", (resource,))
        total -= int(size)
        removed += 1
    return removed


class DiskByteStore:
    """sqlite-backed bytes store, accessed through a DbOperator."""

    def __init__(self, db_path: Path | str, max_bytes: int = DEFAULT_MAX_BYTES, operator: DbOperator | None = None):
        self.db_path = Path(db_path)
        self.max_bytes = int(max_bytes)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._operator_owned = operator is None
        self._operator = operator or DbOperator(self.db_path)
        self._operator.schedule_write(_schema_init).result()
        self._finalizer = weakref.finalize(self, self._operator.shutdown) if self._operator_owned else None
        _logger.debug("byte store initialized: %s (max_bytes=%d)", self.db_path, self.max_bytes)

    def get(self, resource: ResourceRef, timeout: float | None = None) -> bytes | None:
        data = self._operator.schedule_read(_get, resource.location).result(timeout=timeout)
        metrics.inc("byte_store.hits" if data is not None else "byte_store.misses")
        return data

    def put(self, resource: ResourceRef, data: bytes, timeout: float | None = None) -> None:
        removed = self._operator.schedule_write(_put, resource.location, bytes(data), self.max_bytes).result(
            timeout=timeout
        )
        if removed:
            metrics.inc("byte_store.pruned", removed)
            _logger.debug("byte store pruned %d rows", removed)

    def remove(self, resource: ResourceRef) -> bool:
        def _delete(conn) -> int:
            return conn.execute("DELETE FROM images WHERE resource = ?", (resource.location,)).rowcount

        return bool(self._operator.schedule_write(_delete).result())

    def total_bytes(self) -> int:
        def _total(conn) -> int:
            return int(conn.execute("SELECT COALESCE(SUM(size), 0) FROM images").fetchone()[0])

        return self._operator.schedule_read(_total).result()

    def close(self) -> None:
        if self._finalizer is not None:
            self._finalizer()
