"""CacheStore: cost-bounded LRU of decoded bitmaps.

Capacity is the summed byte cost of resident bitmaps, not an entry count:
a 168x168 avatar and a full-resolution photo differ by orders of magnitude.

Locking:
- lookup() takes the shared side of a reader/writer lock. It never reorders
  the LRU itself; it appends the key to an access log (deque appends are
  thread-safe) so concurrent lookups never block each other.
- insert()/remove()/eviction take the exclusive side, replay the access log
  into the OrderedDict order and then mutate.
"""

from __future__ import annotations

import itertools
import threading
from collections import OrderedDict, deque
from contextlib import contextmanager
from dataclasses import dataclass

from drift_images.logger import get_logger

from .metrics import metrics
from .types import Bitmap, CacheKey, ResourceRef

_logger = get_logger("memory_cache")

DEFAULT_COST_LIMIT = 100 * 1024 * 1024  # 100 MB

# Access log is replayed at the next write; bound it so a read-only
# workload cannot grow it forever. A full log may have dropped bumps, so
# the next write rebuilds the order from `last_access` instead.
_ACCESS_LOG_MAX = 4096


class _RWLock:
    """Many readers or one writer. Writers are preferred once waiting."""

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    @contextmanager
    def read(self):
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if not self._readers:
                    self._cond.notify_all()

    @contextmanager
    def write(self):
        with self._cond:
            self._writers_waiting += 1
            try:
                while self._writer or self._readers:
                    self._cond.wait()
            finally:
                self._writers_waiting -= 1
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


@dataclass
class CacheEntry:
    bitmap: Bitmap
    cost: int
    last_access: int


class CacheStore:
    """Thread-safe LRU keyed by CacheKey, bounded by total bitmap cost."""

    def __init__(self, cost_limit: int = DEFAULT_COST_LIMIT):
        if cost_limit < 0:
            raise ValueError(f"cost_limit must be >= 0, got {cost_limit}")
        self._cost_limit = int(cost_limit)
        # Oldest first; move_to_end on access.
        self._entries: OrderedDict[CacheKey, CacheEntry] = OrderedDict()
        self._total_cost = 0
        self._lock = _RWLock()
        self._access_log: deque[tuple[CacheKey, int]] = deque(maxlen=_ACCESS_LOG_MAX)
        self._seq = itertools.count(1)

    # ---- reads -----------------------------------------------------
    def lookup(self, key: CacheKey) -> Bitmap | None:
        with self._lock.read():
            entry = self._entries.get(key)
            if entry is None:
                metrics.inc("cache.misses")
                return None
            seq = next(self._seq)
            entry.last_access = seq
            self._access_log.append((key, seq))
        metrics.inc("cache.hits")
        return entry.bitmap

    def __contains__(self, key: object) -> bool:
        with self._lock.read():
            return key in self._entries

    def __len__(self) -> int:
        with self._lock.read():
            return len(self._entries)

    @property
    def total_cost(self) -> int:
        with self._lock.read():
            return self._total_cost

    @property
    def cost_limit(self) -> int:
        return self._cost_limit

    def keys(self) -> list[CacheKey]:
        """Resident keys, least recently used first."""
        with self._lock.write():
            self._replay_access_log()
            return list(self._entries)

    # ---- writes ----------------------------------------------------
    def insert(self, key: CacheKey, bitmap: Bitmap) -> bool:
        """Store `bitmap` under `key`, evicting LRU entries until it fits.

        Returns False when the bitmap alone is larger than the budget; it is
        then not stored (and any previous entry for `key` is dropped).
        """
        cost = bitmap.cost
        with self._lock.write():
            self._replay_access_log()
            self._drop(key)
            if cost > self._cost_limit:
                metrics.inc("cache.rejected")
                _logger.debug("insert rejected: key=%s cost=%d limit=%d", key, cost, self._cost_limit)
                return False
            evicted = self._evict_until(self._cost_limit - cost)
            self._entries[key] = CacheEntry(bitmap=bitmap, cost=cost, last_access=next(self._seq))
            self._total_cost += cost
            total = self._total_cost
        metrics.inc("cache.inserts")
        _logger.debug("insert: key=%s cost=%d total=%d evicted=%d", key, cost, total, evicted)
        return True

    def remove(self, key: CacheKey) -> bool:
        with self._lock.write():
            return self._drop(key)

    def remove_resource(self, resource: ResourceRef) -> int:
        """Drop every size variant cached for `resource`."""
        with self._lock.write():
            doomed = [k for k in self._entries if k.resource == resource]
            for k in doomed:
                self._drop(k)
        if doomed:
            _logger.debug("remove_resource: %s variants=%d", resource, len(doomed))
        return len(doomed)

    def clear(self) -> None:
        with self._lock.write():
            self._entries.clear()
            self._access_log.clear()
            self._total_cost = 0

    def set_cost_limit(self, cost_limit: int) -> None:
        if cost_limit < 0:
            raise ValueError(f"cost_limit must be >= 0, got {cost_limit}")
        with self._lock.write():
            self._cost_limit = int(cost_limit)
            self._replay_access_log()
            evicted = self._evict_until(self._cost_limit)
        _logger.debug("cost limit set to %d (evicted=%d)", cost_limit, evicted)

    # ---- internals (write lock held) -------------------------------
    def _replay_access_log(self) -> None:
        if len(self._access_log) >= _ACCESS_LOG_MAX:
            self._access_log.clear()
            self._entries = OrderedDict(sorted(self._entries.items(), key=lambda item: item[1].last_access))
            metrics.inc("cache.reorders")
            return
        while self._access_log:
            key, seq = self._access_log.popleft()
            entry = self._entries.get(key)
            # Skip bumps for entries replaced since the lookup.
            if entry is not None and entry.last_access == seq:
                self._entries.move_to_end(key)

    def _drop(self, key: CacheKey) -> bool:
        entry = self._entries.pop(key, None)
        if entry is None:
            return False
        self._total_cost -= entry.cost
        return True

    def _evict_until(self, budget: int) -> int:
        evicted = 0
        while self._entries and self._total_cost > budget:
            key, entry = self._entries.popitem(last=False)
            self._total_cost -= entry.cost
            evicted += 1
            _logger.debug("evict: key=%s cost=%d", key, entry.cost)
        if evicted:
            metrics.inc("cache.evictions", evicted)
        return evicted
