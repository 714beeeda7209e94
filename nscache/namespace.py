import logging
import re
from contextlib import nullcontext
from threading import Event, Lock
from typing import Any, Callable, ContextManager, Dict, Generic, Optional, Tuple

from nscache.models import KT, VT, CacheConfig, CacheStats, Entry

logger = logging.getLogger(__name__)

sentinel = object()


class EventData:
    __slots__ = ("event", "data", "error")

    def __init__(self) -> None:
        self.event = Event()
        self.data: Any = None
        self.error: Optional[BaseException] = None


class Namespace(Generic[KT, VT]):
    """
    One named cache region: a key-entry table, its hit/miss counters and the mutex guarding both.
    All methods take ``now`` from the owning registry's clock so expiry is decided by a single
    time source.
    """

    def __init__(
        self,
        name: str,
        config: CacheConfig,
        default_ttl: Optional[int],
        nolock: bool = False,
    ) -> None:
        self.name = name
        self.config = config
        self.default_ttl = default_ttl
        self._map: Dict[KT, Entry[VT]] = {}
        self._mutex: ContextManager[Any] = nullcontext() if nolock else Lock()
        self._hits = 0
        self._misses = 0
        self._total_hits = 0
        self._total_misses = 0
        # in-flight computations of get_or_compute, keyed by cache key
        self._events: Dict[KT, EventData] = {}

    def _miss(self) -> None:
        self._misses += 1
        self._total_misses += 1

    def _get_nolock(self, key: KT, now: int) -> Tuple[Optional[VT], bool]:
        try:
            entry = self._map[key]
        except KeyError:
            self._miss()
            return (None, False)
        if entry.expired(now):
            del self._map[key]
            self._miss()
            return (None, False)
        entry.last_accessed = now
        self._hits += 1
        self._total_hits += 1
        return (entry.value, True)

    def get(self, key: KT, now: int) -> Tuple[Optional[VT], bool]:
        with self._mutex:
            return self._get_nolock(key, now)

    def _set_nolock(self, key: KT, value: VT, ttl: Optional[int], now: int) -> None:
        if len(self._map) >= self.config.max_entries:
            self._reclaim(now)
        self._map[key] = Entry(value, now, ttl)

    def set(self, key: KT, value: VT, ttl: Optional[int], now: int) -> None:
        # capacity check, both reclaim stages and the insertion hold the mutex together
        with self._mutex:
            self._set_nolock(key, value, ttl, now)

    def has(self, key: KT, now: int) -> bool:
        with self._mutex:
            entry = self._map.get(key)
            if entry is None:
                return False
            if entry.expired(now):
                del self._map[key]
                return False
            return True

    def touch(self, key: KT, ttl: Optional[int], now: int) -> bool:
        with self._mutex:
            entry = self._map.get(key)
            if entry is None:
                return False
            if entry.expired(now):
                del self._map[key]
                return False
            entry.stored_at = now
            entry.ttl = ttl
            return True

    def remove(self, key: KT) -> bool:
        with self._mutex:
            return self._map.pop(key, sentinel) is not sentinel

    def clear(self) -> None:
        with self._mutex:
            self._map.clear()
            self._hits = 0
            self._misses = 0

    def _sweep_nolock(self, now: int) -> int:
        expired = [key for key, entry in self._map.items() if entry.expired(now)]
        for key in expired:
            del self._map[key]
        return len(expired)

    def sweep_expired(self, now: int) -> int:
        with self._mutex:
            removed = self._sweep_nolock(now)
        if removed:
            logger.debug("swept %d expired entries from namespace %r", removed, self.name)
        return removed

    def _evict_nolock(self, count: int) -> int:
        if count <= 0 or not self._map:
            return 0
        # sorted() is stable: entries with equal access time go in insertion order
        ordered = sorted(self._map.items(), key=lambda item: item[1].last_accessed)
        victims = ordered[:count]
        for key, _ in victims:
            del self._map[key]
        return len(victims)

    def evict_lru(self, count: int) -> int:
        with self._mutex:
            evicted = self._evict_nolock(count)
        if evicted:
            logger.info(
                "evicted %d least recently used entries from namespace %r",
                evicted,
                self.name,
            )
        return evicted

    # caller must hold the mutex
    def _reclaim(self, now: int) -> None:
        removed = self._sweep_nolock(now)
        if removed:
            logger.debug("swept %d expired entries from namespace %r", removed, self.name)
        high_water = self.config.max_entries * self.config.evict_high_water
        if removed < self.config.evict_min_reclaimed and len(self._map) > high_water:
            evicted = self._evict_nolock(self.config.evict_batch)
            logger.info(
                "namespace %r over capacity, evicted %d least recently used entries",
                self.name,
                evicted,
            )

    def invalidate(self, pattern: "re.Pattern[str]") -> int:
        with self._mutex:
            matched = [
                key
                for key in self._map
                if isinstance(key, str) and pattern.search(key) is not None
            ]
            for key in matched:
                del self._map[key]
        return len(matched)

    def get_or_compute(
        self,
        key: KT,
        fn: Callable[[], VT],
        ttl: Optional[int],
        clock: Callable[[], int],
    ) -> VT:
        event = EventData()
        with self._mutex:
            (v, ok) = self._get_nolock(key, clock())
            if ok:
                return v  # type: ignore[return-value]
            ve = self._events.setdefault(key, event)
        # the mutex is released while computing, following callers of the same key
        # wait on the event of the first one
        if ve is not event:
            ve.event.wait()
            if ve.error is not None:
                raise ve.error
            return ve.data  # type: ignore[no-any-return]
        try:
            result = fn()
        except BaseException as e:
            event.error = e
            with self._mutex:
                self._events.pop(key, None)
            event.event.set()
            raise
        event.data = result
        with self._mutex:
            self._set_nolock(key, result, ttl, clock())
            self._events.pop(key, None)
        event.event.set()
        return result

    def stats(self) -> CacheStats:
        with self._mutex:
            return CacheStats(
                len(self._map),
                self._hits,
                self._misses,
                self._total_hits,
                self._total_misses,
            )

    def __len__(self) -> int:
        with self._mutex:
            return len(self._map)
