from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Dict, Generic, Hashable, Optional, TypeVar

from nscache.utils import hit_rate_percent

KT = TypeVar("KT", bound=Hashable)
VT = TypeVar("VT")


class Entry(Generic[VT]):
    __slots__ = ("value", "stored_at", "ttl", "last_accessed")
    value: VT
    stored_at: int
    # nanoseconds, None means no expiration
    ttl: Optional[int]
    last_accessed: int

    def __init__(self, value: VT, now: int, ttl: Optional[int]) -> None:
        self.value = value
        self.stored_at = now
        self.ttl = ttl
        self.last_accessed = now

    def expired(self, now: int) -> bool:
        return self.ttl is not None and now - self.stored_at > self.ttl


class CacheStats:
    def __init__(
        self,
        size: int = 0,
        hits: int = 0,
        misses: int = 0,
        total_hits: int = 0,
        total_misses: int = 0,
    ):
        self.size = size
        self.hits = hits
        self.misses = misses
        self.total_hits = total_hits
        self.total_misses = total_misses
        self.hit_rate = hit_rate_percent(hits, misses)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "size": self.size,
            "hits": self.hits,
            "misses": self.misses,
            "hit_rate": self.hit_rate,
            "total_hits": self.total_hits,
            "total_misses": self.total_misses,
        }

    def __repr__(self) -> str:
        return f"CacheStats({self.to_dict()!r})"


@dataclass(frozen=True)
class CacheConfig:
    """
    Tunables shared by every namespace of a registry.

    :param default_ttl: ttl used by ``set`` when none is given. None means no expiration.
    :param max_entries: entry count at which ``set`` reclaims space before inserting.
    :param sweep_interval: period of the background expiry sweep of each namespace.
    :param evict_batch: number of least recently used entries evicted by the LRU fallback.
    :param evict_min_reclaimed: the LRU fallback only runs if the expiry sweep removed fewer entries.
    :param evict_high_water: fraction of ``max_entries`` the table must still exceed for the LRU fallback.
    :param coalesce_window: debounce window of ``CacheRegistry.sweep_all_later``.
    """

    default_ttl: Optional[timedelta] = timedelta(minutes=30)
    max_entries: int = 500
    sweep_interval: timedelta = timedelta(minutes=5)
    evict_batch: int = 50
    evict_min_reclaimed: int = 10
    evict_high_water: float = 0.9
    coalesce_window: timedelta = timedelta(seconds=10)
