from functools import lru_cache
from unittest.mock import Mock

from bounded_zipf import Zipf  # type: ignore[import]
from cachetools import LRUCache, cached

from nscache import CacheConfig, CacheRegistry, Memoize


def bench_nscache(cap: int):
    registry: CacheRegistry = CacheRegistry(CacheConfig(max_entries=cap))

    @Memoize(registry, "hit_ratio")
    def nscache_hit(i: int, m: Mock):
        m(i)
        return i

    @nscache_hit.key
    def _(i: int, m: Mock) -> str:
        return f"key:{i}"

    mock = Mock()
    z = Zipf(1.001, 10, 1000000)
    for n in range(1000000):
        num = z.get()
        v = nscache_hit(num, mock)
        assert num == v
    print(f"nscache hit ratio: {1 - mock.call_count / 1000000:.2f}")
    print(f"nscache stats: {registry.get_stats('hit_ratio').to_dict()}")
    registry.shutdown()


def bench_lru(cap: int):
    @lru_cache(maxsize=cap)
    def lru_hit(i: int, m: Mock):
        m(i)
        return i

    mock = Mock()
    z = Zipf(1.001, 10, 1000000)
    for _ in range(1000000):
        num = z.get()
        v = lru_hit(num, mock)
        assert num == v
    print(f"lru hit ratio: {1 - mock.call_count / 1000000:.2f}")


def bench_cachetools_lru(cap: int):
    @cached(cache=LRUCache(maxsize=cap))
    def lru_hit(i: int, m: Mock):
        m(i)
        return i

    mock = Mock()
    z = Zipf(1.001, 10, 1000000)
    for _ in range(1000000):
        num = z.get()
        v = lru_hit(num, mock)
        assert num == v
    print(f"cachetools lru hit ratio: {1 - mock.call_count / 1000000:.2f}")


for cap in [100, 200, 500, 1000, 2000, 5000]:
    print(f"====== Cache Size {cap} ======")
    bench_nscache(cap)
    bench_lru(cap)
    bench_cachetools_lru(cap)
