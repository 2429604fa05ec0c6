"""FetchCoordinator: one network fetch per resource at a time.

Concurrent callers asking for the same resource join a single
PendingFetch and share its Future, so every joiner observes the identical
bytes or the identical error. The registry entry is removed under the lock
*before* the outcome is delivered, on every completion path, so a call made
after completion always starts a fresh fetch.

Joiners that lose interest call leave(); the shared fetch keeps running.
Its bytes still feed the durable tier (when configured) and any joiner that
remains.
"""

from __future__ import annotations

import contextlib
import os
import threading
import time
from concurrent.futures import Future, InvalidStateError, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Protocol

from drift_images.logger import get_logger

from .errors import NetworkError
from .metrics import metrics
from .types import ResourceRef

if TYPE_CHECKING:
    from .db.byte_store import DiskByteStore

_logger = get_logger("fetcher")


class Transport(Protocol):
    def get(self, resource: ResourceRef) -> bytes: ...


@dataclass
class PendingFetch:
    resource: ResourceRef
    future: Future = field(default_factory=Future)
    waiters: int = 1
    started_at: float = field(default_factory=time.monotonic)


class FetchCoordinator:
    def __init__(self, transport: Transport, max_workers: int | None = None, byte_store: DiskByteStore | None = None):
        self._transport = transport
        self._byte_store = byte_store
        max_io = max_workers or max(2, min(4, (os.cpu_count() or 2)))
        self._io_pool = ThreadPoolExecutor(max_workers=max_io, thread_name_prefix="drift-images-fetch")
        self._pending: dict[ResourceRef, PendingFetch] = {}
        self._lock = threading.Lock()
        self._closed = False
        _logger.debug("FetchCoordinator init: io_workers=%s disk_tier=%s", max_io, byte_store is not None)

    # ---- public API ------------------------------------------------
    def submit(self, resource: ResourceRef) -> Future:
        """Join or start the fetch for `resource`; returns the shared Future[bytes]."""
        with self._lock:
            if self._closed:
                fut: Future = Future()
                fut.set_exception(NetworkError("fetch coordinator shut down", resource))
                return fut
            pending = self._pending.get(resource)
            if pending is not None:
                pending.waiters += 1
                waiters = pending.waiters
                joined = True
            else:
                pending = PendingFetch(resource)
                self._pending[resource] = pending
                joined = False

        if joined:
            metrics.inc("fetch.joined")
            _logger.debug("fetch joined: %s waiters=%d", resource, waiters)
            return pending.future

        metrics.inc("fetch.started")
        _logger.debug("fetch started: %s", resource)
        try:
            self._io_pool.submit(self._run, pending)
        except RuntimeError as e:
            # Pool shut down between the registry insert and the submit.
            self._complete(pending, None, NetworkError(f"cannot schedule fetch: {e}", resource))
        return pending.future

    def fetch(self, resource: ResourceRef, timeout: float | None = None) -> bytes:
        """Blocking form of submit(); raises NetworkError."""
        return self.submit(resource).result(timeout=timeout)

    def leave(self, resource: ResourceRef) -> None:
        """A joiner lost interest. The shared fetch is not cancelled."""
        with self._lock:
            pending = self._pending.get(resource)
            if pending is None:
                return
            pending.waiters = max(0, pending.waiters - 1)
            waiters = pending.waiters
        _logger.debug("fetch left: %s waiters=%d", resource, waiters)

    def is_pending(self, resource: ResourceRef) -> bool:
        with self._lock:
            return resource in self._pending

    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    def waiters(self, resource: ResourceRef) -> int:
        with self._lock:
            pending = self._pending.get(resource)
            return pending.waiters if pending is not None else 0

    def shutdown(self, wait: bool = False) -> None:
        with self._lock:
            self._closed = True
            abandoned = list(self._pending.values())
            self._pending.clear()
        for pending in abandoned:
            self._deliver(pending, None, NetworkError("fetch coordinator shut down", pending.resource))
        if abandoned:
            _logger.debug("shutdown abandoned %d pending fetches", len(abandoned))
        self._io_pool.shutdown(wait=wait, cancel_futures=True)

    # ---- worker ----------------------------------------------------
    def _run(self, pending: PendingFetch) -> None:
        resource = pending.resource
        data: bytes | None = None
        error: BaseException | None = None
        try:
            data = self._read_disk(resource)
            if data is None:
                with metrics.timed("fetch.duration"):
                    data = self._transport.get(resource)
                if not isinstance(data, (bytes, bytearray, memoryview)):
                    raise NetworkError(f"transport returned {type(data).__name__}, expected bytes", resource)
                data = bytes(data)
                self._write_disk(resource, data)
        except NetworkError as e:
            error = e
        except Exception as e:
            error = NetworkError(f"fetch failed: {e}", resource)
            error.__cause__ = e
        finally:
            if data is None and error is None:
                # BaseException escaping the transport; still clear the registry.
                error = NetworkError("fetch aborted", resource)
            self._complete(pending, data if error is None else None, error)

    def _complete(self, pending: PendingFetch, data: bytes | None, error: BaseException | None) -> None:
        with self._lock:
            if self._pending.get(pending.resource) is pending:
                del self._pending[pending.resource]
        elapsed = time.monotonic() - pending.started_at
        if error is None:
            metrics.inc("fetch.succeeded")
            _logger.debug(
                "fetch done: %s bytes=%d waiters=%d %.3fs",
                pending.resource,
                len(data),
                pending.waiters,
                elapsed,
            )
        else:
            metrics.inc("fetch.failed")
            _logger.debug("fetch failed: %s err=%s waiters=%d", pending.resource, error, pending.waiters)
        self._deliver(pending, data, error)

    @staticmethod
    def _deliver(pending: PendingFetch, data: bytes | None, error: BaseException | None) -> None:
        # shutdown() may already have failed this future.
        with contextlib.suppress(InvalidStateError):
            if error is not None:
                pending.future.set_exception(error)
            else:
                pending.future.set_result(data)

    # ---- durable tier ----------------------------------------------
    def _read_disk(self, resource: ResourceRef) -> bytes | None:
        if self._byte_store is None:
            return None
        try:
            data = self._byte_store.get(resource)
        except Exception:
            _logger.warning("byte store read failed for %s", resource, exc_info=True)
            return None
        if data is not None:
            metrics.inc("fetch.disk_hits")
            _logger.debug("fetch served from disk: %s", resource)
        return data

    def _write_disk(self, resource: ResourceRef, data: bytes) -> None:
        if self._byte_store is None:
            return
        try:
            self._byte_store.put(resource, data)
        except Exception:
            _logger.warning("byte store write failed for %s", resource, exc_info=True)
