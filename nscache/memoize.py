import asyncio
import inspect
from datetime import timedelta
from functools import _make_key, update_wrapper
from typing import (
    Any,
    Awaitable,
    Callable,
    Generator,
    Hashable,
    Optional,
    TypeVar,
    cast,
    no_type_check,
    overload,
)

from typing_extensions import Concatenate, ParamSpec, Protocol

from nscache.models import VT, CacheStats
from nscache.registry import DEFAULT_TTL, CacheRegistry

S = TypeVar("S", contravariant=True)
P = ParamSpec("P")

sentinel = object()


# https://github.com/python/cpython/issues/90780
# a coroutine can only be awaited once, so the namespace stores this instead and
# every caller of the key shares the single run of the underlying coroutine
class SharedAwaitable:
    def __init__(
        self,
        awaitable: Awaitable[Any],
        registry: "CacheRegistry[Hashable, Any]",
        namespace: str,
        key: Hashable,
    ) -> None:
        self._awaitable: Optional[Awaitable[Any]] = awaitable
        self._registry = registry
        self._namespace = namespace
        self._key = key
        self._value: Any = None
        self._error: Optional[BaseException] = None
        self._waiter: Optional["asyncio.Future[None]"] = None

    def _settle(self) -> None:
        self._awaitable = None
        waiter, self._waiter = self._waiter, None
        if waiter is not None and not waiter.done():
            waiter.set_result(None)

    def __await__(self) -> Generator[Any, None, Any]:
        if self._waiter is not None:
            # another caller is running the coroutine, wait for it to settle
            yield from self._waiter.__await__()
        elif self._awaitable is not None:
            self._waiter = asyncio.get_running_loop().create_future()
            try:
                self._value = yield from self._awaitable.__await__()
            except BaseException as e:
                self._error = e
                # failures are not cached, the next call runs the function again
                self._registry.remove(self._namespace, self._key)
            finally:
                self._settle()
        if self._error is not None:
            raise self._error
        return self._value


class Cached(Protocol[S, P, VT]):
    _registry: "CacheRegistry[Hashable, Any]"
    _namespace: str

    @overload
    def key(self, fn: Callable[P, Hashable]) -> None: ...

    @overload
    def key(self, fn: Callable[Concatenate[S, P], Hashable]) -> None: ...

    @overload
    def __call__(self, _arg_first: S, *args: P.args, **kwargs: P.kwargs) -> VT: ...

    @overload
    def __call__(self, *args: P.args, **kwargs: P.kwargs) -> VT: ...

    def cache_stats(self) -> CacheStats: ...


@no_type_check
def Wrapper(
    fn: Callable,
    ttl: Optional[timedelta],
    registry: CacheRegistry,
    namespace: str,
    typed: bool,
    is_async: bool,
):
    _key_func = None
    _auto_key = True

    def key(fn) -> None:
        nonlocal _key_func
        nonlocal _auto_key
        _key_func = fn
        _auto_key = False

    def cache_stats() -> CacheStats:
        return registry.get_stats(namespace)

    def fetch(*args, **kwargs):
        if _auto_key:
            key = _make_key(args, kwargs, typed)
        else:
            key = _key_func(*args, **kwargs)

        if is_async:
            result = registry.get(namespace, key, sentinel)
            if result is sentinel:
                result = SharedAwaitable(fn(*args, **kwargs), registry, namespace, key)
                registry.set(namespace, key, result, ttl)
            return result

        return registry.get_or_compute(namespace, key, lambda: fn(*args, **kwargs), ttl)

    fetch._registry = registry
    fetch._namespace = namespace
    fetch.key = key
    fetch.cache_stats = cache_stats
    return fetch


class Memoize:
    """
    Memoize decorator to cache function results in a registry namespace. This decorator has 2 modes,
    first one custom-key mode, this is also the recommended mode. You must specify the key function
    manually. Second one is auto-key mode, a key is generated from the function inputs.

    :param registry: registry holding the namespace.
    :param namespace: namespace the results are stored in, initialized if it does not exist yet.
    :param ttl: timedelta to store the function result. Defaults to the namespace default ttl,
        None means no expiration.
    :param typed: Only valid with auto-key mode. If typed is set to true,
        function arguments of different types will be cached separately.
    """

    def __init__(
        self,
        registry: "CacheRegistry[Any, Any]",
        namespace: str,
        ttl: Optional[timedelta] = DEFAULT_TTL,
        typed: bool = False,
    ):
        self.registry = registry
        self.namespace = namespace
        self.ttl = ttl
        self.typed = typed
        registry.initialize(namespace)

    def __call__(self, fn: Callable[Concatenate[S, P], VT]) -> Cached[S, P, VT]:
        wrapper = Wrapper(
            fn,
            self.ttl,
            self.registry,
            self.namespace,
            self.typed,
            inspect.iscoroutinefunction(fn),
        )
        return cast(Cached[S, P, VT], update_wrapper(wrapper, fn))
