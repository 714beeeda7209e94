import asyncio
from datetime import timedelta
from random import randint
from threading import Thread
from typing import Any, Dict, List
from unittest.mock import Mock

import pytest

from nscache import CacheRegistry, Memoize

EXCEPTION_THROWING_CACHE_TTL = timedelta(seconds=3)

registry: CacheRegistry = CacheRegistry()


@Memoize(registry, "foo", None)
def foo(id: int, m: Mock) -> Dict[str, int]:
    m(id)
    return {"id": id}


@foo.key
def _(id: int, m: Mock) -> str:
    return f"id-{id}"


@Memoize(registry, "foo_empty", None)
def foo_empty() -> Dict:
    return {"id": "empty"}


@foo_empty.key
def _() -> str:
    return "empty"


@Memoize(registry, "async_foo", None)
async def async_foo(id: int, m: Mock) -> Dict:
    m(id)
    await asyncio.sleep(1)
    return {"id": id}


@async_foo.key
def _(id: int, m: Mock) -> str:
    return f"id-{id}"


@Memoize(registry, "async_foo_that_can_raise", ttl=EXCEPTION_THROWING_CACHE_TTL)
async def async_foo_that_can_raise(input_val: int, m: Mock) -> Dict:
    m(input_val)
    await asyncio.sleep(1)
    return {"id": input_val}


@async_foo_that_can_raise.key
def _(input_val: int, m: Mock) -> str:
    return f"id-{input_val}"


class Bar:
    @Memoize(registry, "bar.foo", None)
    def foo(self, id: int, m: Mock) -> Dict:
        m(id)
        return {"id": id}

    @foo.key
    def _(self, id: int, m: Mock) -> str:
        return f"id-{id}"

    @Memoize(registry, "bar.async_foo", None)
    async def async_foo(self, id: int, m: Mock) -> Dict:
        m(id)
        await asyncio.sleep(1)
        return {"id": id}

    @async_foo.key
    def _(self, id: int, m: Mock) -> str:
        return f"id-{id}"

    @Memoize(registry, "bar.foo_auto", None)
    def foo_auto(self, id: int, m: Mock) -> Dict:
        m(id)
        return {"id": id}


def test_sync_decorator() -> None:
    mock = Mock()
    threads: List[Thread] = []
    assert foo.__name__ == "foo"  # type: ignore

    def assert_id(id: int, m: Mock):
        v = foo(id, m)
        assert v["id"] == id

    for _ in range(500):
        t = Thread(target=assert_id, args=[randint(0, 5), mock])
        threads.append(t)
        t.start()

    for t in threads:
        t.join()

    assert mock.call_count == 6
    ints = [i[0][0] for i in mock.call_args_list]
    assert set(ints) == {0, 1, 2, 3, 4, 5}
    assert registry.get("foo", "id-3") == {"id": 3}


def test_sync_decorator_empty() -> None:
    threads: List[Thread] = []

    def assert_id():
        assert foo_empty()["id"] == "empty"

    for _ in range(500):
        t = Thread(target=assert_id, args=[])
        threads.append(t)
        t.start()

    for t in threads:
        t.join()
    assert registry.get_stats("foo_empty").size == 1


@pytest.mark.asyncio
async def test_async_decorator() -> None:
    mock = Mock()
    assert async_foo.__name__ == "async_foo"  # type: ignore

    async def assert_id(id: int, m: Mock):
        data = await async_foo(id, m)
        assert data["id"] == id

    await asyncio.gather(*[assert_id(randint(0, 5), mock) for _ in range(500)])

    assert mock.call_count == 6
    ints = [i[0][0] for i in mock.call_args_list]
    assert set(ints) == {0, 1, 2, 3, 4, 5}


@pytest.mark.asyncio
async def test_async_decorator_with_exceptions() -> None:
    exception_to_raise = Exception("Test exception")

    # verify exception is properly raised on first call
    mock = Mock(side_effect=exception_to_raise)
    with pytest.raises(Exception) as exc_info:
        await async_foo_that_can_raise(1, mock)
    assert exc_info.value == exception_to_raise
    assert mock.call_count == 1
    assert not registry.has("async_foo_that_can_raise", "id-1")

    # prior call should not be cached due to exception and this will run
    mock = Mock(return_value=None)
    result = await async_foo_that_can_raise(1, mock)
    assert result["id"] == 1
    assert mock.call_count == 1

    # good value should be cached and won't hit service
    mock = Mock(return_value=None)
    result = await async_foo_that_can_raise(1, mock)
    assert result["id"] == 1
    assert mock.call_count == 0

    # sleep enough to let cache expire and verify new exceptions are raised again
    await asyncio.sleep(EXCEPTION_THROWING_CACHE_TTL.total_seconds() + 0.1)
    mock = Mock(side_effect=exception_to_raise)
    with pytest.raises(Exception) as exc_info:
        await async_foo_that_can_raise(1, mock)
    assert exc_info.value == exception_to_raise
    assert mock.call_count == 1


@pytest.mark.asyncio
async def test_async_decorator_same_exception_herd() -> None:
    total = 500
    mock = Mock(side_effect=Exception("Test exception"))

    coros = [async_foo(20, mock) for _ in range(total)]
    results = await asyncio.gather(*coros, return_exceptions=True)

    assert all([isinstance(res, Exception) for res in results])
    assert len(set(results)) == 1
    # herd should have only result in 1 call
    assert mock.call_count == 1


def test_sync_exception_not_cached() -> None:
    calls: List[int] = []

    @Memoize(registry, "raising", None)
    def raising(id: int) -> int:
        calls.append(id)
        if len(calls) == 1:
            raise ValueError("first call fails")
        return id

    with pytest.raises(ValueError):
        raising(1)
    assert raising(1) == 1
    assert raising(1) == 1
    assert calls == [1, 1]


def test_instance_method_sync() -> None:
    mock = Mock()
    threads: List[Thread] = []
    bar = Bar()
    assert bar.foo.__name__ == "foo"  # type: ignore

    def assert_id(id: int, m: Mock):
        assert bar.foo(id, m)["id"] == id

    for _ in range(500):
        t = Thread(target=assert_id, args=[randint(0, 5), mock])
        threads.append(t)
        t.start()

    for t in threads:
        t.join()

    assert mock.call_count == 6


@pytest.mark.asyncio
async def test_instance_method_async() -> None:
    mock = Mock()
    bar = Bar()

    async def assert_id(id: int, m: Mock):
        data = await bar.async_foo(id, m)
        assert data["id"] == id

    await asyncio.gather(*[assert_id(randint(0, 5), mock) for _ in range(500)])

    assert mock.call_count == 6


@Memoize(registry, "foo_auto_key", None)
def foo_auto_key(a: int, b: int, c: int = 5) -> Dict:
    return {"a": a, "b": b, "c": c}


def test_auto_key() -> None:
    tests = [
        ([1, 2, 3], {}, (1, 2, 3)),
        ([1, 2], {}, (1, 2, 5)),
        ([1], {"b": 2}, (1, 2, 5)),
        ([], {"a": 1, "b": 2}, (1, 2, 5)),
        ([], {"a": 1, "b": 2, "c": 3}, (1, 2, 3)),
    ]

    def assert_data(args, kwargs, expected):
        result = foo_auto_key(*args, **kwargs)
        assert result["a"] == expected[0]
        assert result["b"] == expected[1]
        assert result["c"] == expected[2]

    for case in tests:
        assert_data(*case)


def test_instance_method_auto_key_sync() -> None:
    mock = Mock()
    bar1 = Bar()
    bar2 = Bar()
    for _ in range(3):
        assert bar1.foo_auto(1, mock)["id"] == 1
        assert bar2.foo_auto(1, mock)["id"] == 1
    # self is part of the generated key
    assert mock.call_count == 2


def test_cache_stats() -> None:
    @Memoize(registry, "stats", None)
    def double(i: int) -> int:
        return i * 2

    @double.key
    def _(i: int) -> str:
        return f"double:{i}"

    for i in range(4):
        for _ in range(4):
            assert double(i) == i * 2
    stats = double.cache_stats()
    assert stats.size == 4
    assert stats.misses == 4
    assert stats.hits == 12
    assert stats.hit_rate == "75%"


def test_memoize_ttl() -> None:
    clock_registry: CacheRegistry[Any, Any] = CacheRegistry(clock=lambda: now[0])
    now = [0]
    calls: List[int] = []

    @Memoize(clock_registry, "ttl", timedelta(seconds=1))
    def ident(i: int) -> int:
        calls.append(i)
        return i

    assert ident(1) == 1
    now[0] += 500_000_000
    assert ident(1) == 1
    now[0] += 600_000_000
    assert ident(1) == 1
    assert calls == [1, 1]
    clock_registry.shutdown()


@pytest.mark.asyncio
async def test_async_settled_result_is_reused() -> None:
    mock = Mock()

    @Memoize(registry, "settled", None)
    async def slow(i: int) -> int:
        mock(i)
        await asyncio.sleep(0.1)
        return i * 10

    first = slow(1)
    assert first is slow(1)
    assert await asyncio.gather(first, slow(1)) == [10, 10]
    # awaiting a finished result again does not run the coroutine a second time
    assert await first == 10
    assert await slow(1) == 10
    assert mock.call_count == 1


@pytest.mark.asyncio
async def test_async_failure_reaches_every_waiter() -> None:
    calls: List[int] = []

    @Memoize(registry, "flaky", None)
    async def flaky(i: int) -> int:
        calls.append(i)
        await asyncio.sleep(0.05)
        if len(calls) == 1:
            raise ValueError("boom")
        return i

    @flaky.key
    def _(i: int) -> str:
        return f"flaky-{i}"

    tasks = [asyncio.ensure_future(flaky(1)) for _ in range(3)]
    results = await asyncio.gather(*tasks, return_exceptions=True)
    assert all(isinstance(r, ValueError) for r in results)
    assert calls == [1]
    assert not registry.has("flaky", "flaky-1")

    assert await flaky(1) == 1
    assert registry.has("flaky", "flaky-1")
    assert calls == [1, 1]
