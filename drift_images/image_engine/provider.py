"""Image Provider - entry point used by the UI layer.

This module provides ImageProvider, which ties the cache store, fetch
coordinator and decoder together, and ImageRequest, the per-caller state
machine that turns a (resource, size) identity into a Phase.

Flow for one identity:
    cache.lookup (synchronous) -> hit: SUCCESS, nothing scheduled
                               -> miss: LOADING, then
    coordinator.submit -> decoder.decode (decode pool) -> cache.insert -> SUCCESS
    any error along the way -> FAILURE(error)
"""

from __future__ import annotations

import contextlib
import os
import threading
from collections.abc import Callable, Iterable
from concurrent.futures import Future, InvalidStateError, ThreadPoolExecutor
from typing import TYPE_CHECKING

from drift_images.logger import get_logger

from .decoder import Decoder
from .errors import DecodeError, ImageError
from .fetcher import FetchCoordinator
from .memory_cache import CacheStore
from .metrics import metrics
from .types import Bitmap, CacheKey, Phase, PhaseState, ResourceRef, TargetSize

if TYPE_CHECKING:
    from drift_images.settings_manager import SettingsManager

_logger = get_logger("provider")

PhaseListener = Callable[[Phase], None]


def _resolved(phase: Phase) -> Future:
    fut: Future = Future()
    fut.set_result(phase)
    return fut


def _forward(source: Future, target: Future) -> None:
    with contextlib.suppress(InvalidStateError):
        target.set_result(source.result())


class ImageRequest:
    """One caller's view of an image load.

    A request scope holds the identity the caller currently wants and the
    Phase for it. Changing the identity supersedes any pipeline still
    running for the previous one: its result is dropped for this caller,
    while the shared network fetch carries on for other joiners.
    """

    def __init__(self, provider: ImageProvider):
        self._provider = provider
        self._lock = threading.RLock()
        self._identity: CacheKey | None = None
        self._phase = Phase.empty()
        self._generation = 0
        self._done: Future = _resolved(self._phase)
        # Resource whose PendingFetch this scope is currently joined to.
        self._joined: ResourceRef | None = None
        self._listeners: list[PhaseListener] = []

    # ---- state -----------------------------------------------------
    @property
    def phase(self) -> Phase:
        with self._lock:
            return self._phase

    @property
    def identity(self) -> CacheKey | None:
        with self._lock:
            return self._identity

    def add_listener(self, listener: PhaseListener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def remove_listener(self, listener: PhaseListener) -> None:
        with self._lock, contextlib.suppress(ValueError):
            self._listeners.remove(listener)

    def result(self, timeout: float | None = None) -> Phase:
        """Wait for the current identity to settle and return its Phase."""
        with self._lock:
            done = self._done
        return done.result(timeout=timeout)

    # ---- transitions -----------------------------------------------
    def update(self, resource: ResourceRef | str | None, size: TargetSize | None = None) -> Phase:
        """Re-evaluate for `(resource, size)` and return the resulting Phase.

        An unchanged identity that is already loading or loaded is a no-op.
        A failed identity is retried.
        """
        key = None if resource is None else CacheKey(ResourceRef.of(resource), size)
        with self._lock:
            if (
                key is not None
                and key == self._identity
                and self._phase.state in (PhaseState.SUCCESS, PhaseState.LOADING)
            ):
                return self._phase

            self._generation += 1
            generation = self._generation
            self._identity = key
            superseded = self._joined
            self._joined = None

            start_pipeline = False
            if key is None:
                phase = Phase.empty()
            else:
                bitmap = self._provider.cache.lookup(key)
                if bitmap is not None:
                    metrics.inc("provider.sync_hits")
                    phase = Phase.success(bitmap)
                else:
                    phase = Phase.loading()
                    start_pipeline = True
            self._phase = phase
            superseded_done = self._done
            self._done = Future() if start_pipeline else _resolved(phase)
            done = self._done
            listeners = list(self._listeners)

        if superseded is not None:
            self._provider.coordinator.leave(superseded)
        # Waiters on the old identity follow the request to its new outcome.
        done.add_done_callback(lambda f: _forward(f, superseded_done))
        self._notify(listeners, phase)
        if start_pipeline:
            self._provider._start_pipeline(self, generation, key)
        return self.phase

    def cancel(self) -> None:
        """Abandon the current identity; phase becomes EMPTY."""
        self.update(None)

    # ---- pipeline callbacks (any thread) ---------------------------
    def _is_current(self, generation: int) -> bool:
        with self._lock:
            return generation == self._generation

    def _set_joined(self, generation: int, resource: ResourceRef | None) -> bool:
        with self._lock:
            if generation != self._generation:
                return False
            self._joined = resource
            return True

    def _settle(self, generation: int, phase: Phase) -> bool:
        with self._lock:
            if generation != self._generation:
                metrics.inc("provider.stale_drops")
                _logger.debug("stale result dropped: gen=%s current=%s", generation, self._generation)
                return False
            self._phase = phase
            done = self._done
            listeners = list(self._listeners)
        with contextlib.suppress(InvalidStateError):
            done.set_result(phase)
        self._notify(listeners, phase)
        return True

    @staticmethod
    def _notify(listeners: list[PhaseListener], phase: Phase) -> None:
        for listener in listeners:
            try:
                listener(phase)
            except Exception:
                _logger.exception("phase listener failed")


class ImageProvider:
    """Facade over cache store, fetch coordinator and decoder."""

    def __init__(
        self,
        cache: CacheStore,
        coordinator: FetchCoordinator,
        decoder: Decoder,
        decode_workers: int | None = None,
    ):
        self.cache = cache
        self.coordinator = coordinator
        self.decoder = decoder
        workers = decode_workers or max(1, min(2, (os.cpu_count() or 1)))
        # pyvips releases the GIL while decoding, so threads are enough.
        self._decode_pool = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="drift-images-decode")
        self._closers: list[Callable[[], None]] = []
        _logger.debug("ImageProvider init: decode_workers=%s scale=%s", workers, getattr(decoder, "scale", None))

    @classmethod
    def from_settings(cls, settings: SettingsManager) -> ImageProvider:
        """Build the full stack (HTTP transport, optional disk tier) from settings."""
        from .db.byte_store import DiskByteStore
        from .transport import HttpTransport

        transport = HttpTransport(
            timeout=float(settings.get("http_timeout")),
            headers=settings.get("http_headers") or {},
        )
        byte_store = None
        if settings.disk_cache_enabled:
            byte_store = DiskByteStore(settings.disk_cache_path, max_bytes=int(settings.get("disk_cache_max_bytes")))
        coordinator = FetchCoordinator(
            transport,
            max_workers=int(settings.get("fetch_workers")),
            byte_store=byte_store,
        )
        provider = cls(
            CacheStore(settings.cache_cost_limit),
            coordinator,
            Decoder(settings.device_scale),
            decode_workers=int(settings.get("decode_workers")),
        )
        provider._closers.append(transport.close)
        if byte_store is not None:
            provider._closers.append(byte_store.close)
        return provider

    # ---- public API ------------------------------------------------
    def request(
        self,
        resource: ResourceRef | str | None,
        size: TargetSize | None = None,
        listener: PhaseListener | None = None,
    ) -> ImageRequest:
        """Open a request scope for `(resource, size)`.

        The scope's phase is SUCCESS straight away on a cache hit; otherwise
        it is LOADING and settles asynchronously. `listener`, when given, is
        attached before the first evaluation so it sees every phase.
        """
        req = ImageRequest(self)
        if listener is not None:
            req.add_listener(listener)
        req.update(resource, size)
        return req

    def load(self, resource: ResourceRef | str, size: TargetSize | None = None, timeout: float | None = None) -> Phase:
        return self.request(resource, size).result(timeout=timeout)

    def prefetch(self, resources: Iterable[ResourceRef | str], size: TargetSize | None = None) -> list[ImageRequest]:
        """Warm the cache for `resources`; cached ones settle immediately."""
        return [self.request(r, size) for r in resources]

    def cached(self, resource: ResourceRef | str, size: TargetSize | None = None) -> Bitmap | None:
        return self.cache.lookup(CacheKey(ResourceRef.of(resource), size))

    def invalidate(self, resource: ResourceRef | str) -> int:
        """Drop every cached size of `resource`."""
        return self.cache.remove_resource(ResourceRef.of(resource))

    def stats(self) -> dict[str, object]:
        """Point-in-time view of cache residency, in-flight fetches and counters."""
        return {
            "cache_entries": len(self.cache),
            "cache_cost": self.cache.total_cost,
            "cache_cost_limit": self.cache.cost_limit,
            "pending_fetches": self.coordinator.pending_count(),
            "counters": {**metrics.counters("cache."), **metrics.counters("fetch."), **metrics.counters("provider.")},
        }

    def shutdown(self) -> None:
        self.coordinator.shutdown()
        self._decode_pool.shutdown(wait=False, cancel_futures=True)
        for close in self._closers:
            try:
                close()
            except Exception:
                _logger.warning("close failed during shutdown", exc_info=True)
        self._closers.clear()

    # ---- pipeline --------------------------------------------------
    def _start_pipeline(self, req: ImageRequest, generation: int, key: CacheKey) -> None:
        metrics.inc("provider.pipelines")
        _logger.debug("pipeline start: key=%s gen=%s", key, generation)
        fut = self.coordinator.submit(key.resource)
        if not req._set_joined(generation, key.resource):
            # Superseded while submitting.
            self.coordinator.leave(key.resource)
            return
        fut.add_done_callback(lambda f: self._on_fetched(req, generation, key, f))

    def _on_fetched(self, req: ImageRequest, generation: int, key: CacheKey, fut: Future) -> None:
        req._set_joined(generation, None)
        if not req._is_current(generation):
            metrics.inc("provider.stale_drops")
            return
        error = fut.exception()
        if error is not None:
            req._settle(generation, Phase.failure(error))
            return

        # Another scope may have decoded this exact variant meanwhile.
        bitmap = self.cache.lookup(key)
        if bitmap is not None:
            req._settle(generation, Phase.success(bitmap))
            return

        try:
            decode_fut = self._decode_pool.submit(self._decode_and_store, key, fut.result())
        except RuntimeError as e:
            req._settle(generation, Phase.failure(ImageError(f"provider shut down: {e}", key.resource)))
            return
        decode_fut.add_done_callback(lambda f: self._on_decoded(req, generation, f))

    def _decode_and_store(self, key: CacheKey, data: bytes) -> Bitmap:
        try:
            bitmap = self.decoder.decode(data, key.size)
        except DecodeError as e:
            if e.resource is None:
                e.resource = key.resource
            raise
        except Exception as e:
            raise DecodeError(f"cannot decode image data: {e}", key.resource) from e
        self.cache.insert(key, bitmap)
        return bitmap

    @staticmethod
    def _on_decoded(req: ImageRequest, generation: int, fut: Future) -> None:
        if fut.cancelled():
            req._settle(generation, Phase.failure(ImageError("decode cancelled")))
            return
        error = fut.exception()
        if error is not None:
            req._settle(generation, Phase.failure(error))
        else:
            req._settle(generation, Phase.success(fut.result()))
