from typing import Iterable

import pytest

from nscache import CacheConfig, CacheRegistry


class FakeClock:
    def __init__(self, start: int = 1_000_000_000) -> None:
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: float) -> None:
        self.now += int(ms * 1_000_000)


@pytest.fixture(params=[True, False])
def nolock(request):
    return request.param


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def registry(clock: FakeClock, nolock: bool) -> Iterable[CacheRegistry]:
    r = CacheRegistry(CacheConfig(), nolock, clock)
    yield r
    r.shutdown()
