import asyncio
import logging
import re
import time
from concurrent.futures import Future
from datetime import timedelta
from threading import Lock
from typing import Any, Callable, Dict, Generic, List, Optional, Union

from nscache.models import KT, VT, CacheConfig, CacheStats
from nscache.namespace import Namespace
from nscache.sweeper import DebouncedSweep, cancel_periodic, schedule_periodic
from nscache.utils import ttl_nano

logger = logging.getLogger(__name__)


class _Default:
    def __repr__(self) -> str:
        return "DEFAULT_TTL"


# marks "use the namespace default ttl", since None already means no expiration
DEFAULT_TTL: Any = _Default()


class NamespaceNotInitialized(KeyError):
    def __init__(self, namespace: str) -> None:
        super().__init__(namespace)
        self.namespace = namespace

    def __str__(self) -> str:
        return f"cache namespace {self.namespace!r} not initialized, call initialize first"


class CacheRegistry(Generic[KT, VT]):
    """
    Create a registry of named cache regions and use the cache API through it. Each namespace
    is an independent key-value table with per-entry ttl, size-bounded eviction and its own
    hit/miss statistics. Construct one registry at startup and hand it to whatever needs caching.

    Misuse never raises: reading or writing a namespace that was not initialized logs a warning
    and behaves as a miss or a dropped write.

    :param config: tunables shared by all namespaces, see ``CacheConfig``.
    :param nolock: disables thread locking for namespace operations. Defaults to False. Only use
        the registry from one thread then: periodic and coalesced sweeps run on that thread's
        event loop instead of the maintainer thread, or not in the background at all.
    :param clock: nanosecond clock used for ttl and access bookkeeping, ``time.monotonic_ns`` by default.
    """

    def __init__(
        self,
        config: Optional[CacheConfig] = None,
        nolock: bool = False,
        clock: Callable[[], int] = time.monotonic_ns,
    ):
        self.config = config or CacheConfig()
        self.clock = clock
        self._nolock = nolock
        self._namespaces: Dict[str, Namespace[KT, VT]] = {}
        self._sweepers: Dict[str, "Union[Future[None], asyncio.Task[None]]"] = {}
        self._mutex = Lock()
        self._closed = False
        self._coalescer: Optional[DebouncedSweep] = None
        if not nolock:
            self._coalescer = DebouncedSweep(
                self.config.coalesce_window.total_seconds(), self.sweep_all
            )

    def _owner_loop(self) -> Optional[asyncio.AbstractEventLoop]:
        # unlocked namespaces must only be touched from the owner's thread, so their
        # background sweeps go to the event loop running there, if any
        try:
            return asyncio.get_running_loop()
        except RuntimeError:
            return None

    def _namespace(self, namespace: str) -> Namespace[KT, VT]:
        try:
            return self._namespaces[namespace]
        except KeyError:
            raise NamespaceNotInitialized(namespace) from None

    def _ttl(self, ns: Namespace[KT, VT], ttl: Union[timedelta, None, Any]) -> Optional[int]:
        if ttl is DEFAULT_TTL:
            return ns.default_ttl
        return ttl_nano(ttl)

    def initialize(
        self, namespace: str, default_ttl: Union[timedelta, None, Any] = DEFAULT_TTL
    ) -> None:
        """
        Create the namespace and schedule its periodic expiry sweep. Calling it again for an
        existing namespace does nothing, its entries and statistics are kept.

        A ``nolock`` registry schedules the sweep on the event loop running in the calling
        thread. Called outside a running loop, no sweep is scheduled and expired entries are
        removed by reads, capacity reclaim or explicit ``sweep_expired``/``sweep_all`` calls.

        :param namespace: namespace name.
        :param default_ttl: ttl used by ``set`` in this namespace when none is given. Defaults to
            the registry's ``CacheConfig.default_ttl``. None means entries never expire.
        """
        with self._mutex:
            if namespace in self._namespaces:
                return
            if default_ttl is DEFAULT_TTL:
                default_ttl = self.config.default_ttl
            ns: Namespace[KT, VT] = Namespace(
                namespace,
                self.config,
                ttl_nano(default_ttl),
                self._nolock,
            )
            self._namespaces[namespace] = ns
            loop = self._owner_loop() if self._nolock else None
            if self._closed or (self._nolock and loop is None):
                logger.debug("namespace %r has no periodic sweep", namespace)
            else:
                self._sweepers[namespace] = schedule_periodic(
                    self.config.sweep_interval.total_seconds(),
                    lambda: ns.sweep_expired(self.clock()),
                    loop,
                )
        logger.debug("initialized cache namespace %r", namespace)

    def namespaces(self) -> List[str]:
        return list(self._namespaces)

    def get(self, namespace: str, key: KT, default: Optional[VT] = None) -> Optional[VT]:
        """
        Retrieve data with cache key. If the key is missing or expired, return default value.

        :param namespace: namespace name.
        :param key: key hashable, use str for best performance.
        :param default: returned value if key is not found in cache, default None.
        """
        try:
            ns = self._namespace(namespace)
        except NamespaceNotInitialized as e:
            logger.warning("%s", e)
            return default
        (v, ok) = ns.get(key, self.clock())
        if not ok:
            return default
        return v

    def set(self, namespace: str, key: KT, value: VT, ttl: Optional[timedelta] = DEFAULT_TTL) -> None:
        """
        Add new data to cache. If the key already exists, value and ttl are replaced and the
        expiry clock restarts.

        :param namespace: namespace name.
        :param key: key hashable, use str for best performance.
        :param value: cached value.
        :param ttl: timedelta to store the data. Defaults to the namespace default ttl, 30 minutes
            unless configured otherwise. None means no expiration. A zero or negative ttl stores an
            entry that is expired on the next read.
        """
        try:
            ns = self._namespace(namespace)
        except NamespaceNotInitialized as e:
            logger.warning("%s, value not stored", e)
            return
        ns.set(key, value, self._ttl(ns, ttl), self.clock())

    def has(self, namespace: str, key: KT) -> bool:
        try:
            ns = self._namespace(namespace)
        except NamespaceNotInitialized as e:
            logger.warning("%s", e)
            return False
        return ns.has(key, self.clock())

    def touch(self, namespace: str, key: KT, ttl: Optional[timedelta] = DEFAULT_TTL) -> bool:
        """
        Restart the expiry clock of a live key with a new ttl. Return False if the key is
        missing or already expired.
        """
        try:
            ns = self._namespace(namespace)
        except NamespaceNotInitialized as e:
            logger.warning("%s", e)
            return False
        return ns.touch(key, self._ttl(ns, ttl), self.clock())

    def remove(self, namespace: str, key: KT) -> bool:
        """
        Remove key from cache. Return True if given key exists in cache and been deleted.
        """
        try:
            return self._namespace(namespace).remove(key)
        except NamespaceNotInitialized:
            return False

    def clear(self, namespace: str) -> bool:
        """
        Remove every entry of the namespace and reset its hit/miss counters. Lifetime totals
        are kept. Return False if the namespace does not exist.
        """
        try:
            ns = self._namespace(namespace)
        except NamespaceNotInitialized:
            return False
        ns.clear()
        return True

    def sweep_expired(self, namespace: str) -> int:
        """
        Remove expired entries of the namespace, return how many were removed.
        """
        try:
            ns = self._namespace(namespace)
        except NamespaceNotInitialized:
            return 0
        return ns.sweep_expired(self.clock())

    def evict_lru(self, namespace: str, count: int) -> int:
        try:
            ns = self._namespace(namespace)
        except NamespaceNotInitialized:
            return 0
        return ns.evict_lru(count)

    def invalidate_pattern(self, namespace: str, pattern: Union[str, "re.Pattern[str]"]) -> int:
        """
        Remove every str key of the namespace matching the regular expression.
        """
        try:
            ns = self._namespace(namespace)
        except NamespaceNotInitialized:
            return 0
        removed = ns.invalidate(re.compile(pattern))
        if removed:
            logger.info(
                "invalidated %d entries matching %r in namespace %r",
                removed,
                getattr(pattern, "pattern", pattern),
                namespace,
            )
        return removed

    def get_or_compute(
        self,
        namespace: str,
        key: KT,
        fn: Callable[[], VT],
        ttl: Optional[timedelta] = DEFAULT_TTL,
    ) -> VT:
        """
        Return the cached value, or compute it with ``fn``, store and return it. Concurrent
        callers of the same missing key wait for the first computation. Without an initialized
        namespace ``fn`` is called and nothing is stored.
        """
        try:
            ns = self._namespace(namespace)
        except NamespaceNotInitialized as e:
            logger.warning("%s, value not stored", e)
            return fn()
        return ns.get_or_compute(key, fn, self._ttl(ns, ttl), self.clock)

    def get_stats(self, namespace: str) -> CacheStats:
        try:
            return self._namespace(namespace).stats()
        except NamespaceNotInitialized:
            return CacheStats()

    def sweep_all(self) -> int:
        removed = 0
        for ns in list(self._namespaces.values()):
            removed += ns.sweep_expired(self.clock())
        return removed

    def sweep_all_later(self) -> None:
        """
        Sweep every namespace once the configured coalesce window passes without another call.
        Does nothing after ``shutdown``. A ``nolock`` registry waits on the event loop running
        in the calling thread, without one it sweeps right away.
        """
        if self._closed:
            return
        coalescer = self._coalescer
        if coalescer is None or coalescer.loop.is_closed():
            loop = self._owner_loop()
            if loop is None:
                self.sweep_all()
                return
            coalescer = self._coalescer = DebouncedSweep(
                self.config.coalesce_window.total_seconds(), self.sweep_all, loop
            )
        coalescer.trigger()

    def shutdown(self) -> None:
        """
        Stop background sweeps and clear every namespace.
        """
        with self._mutex:
            self._closed = True
            sweepers = list(self._sweepers.values())
            self._sweepers.clear()
        for sweeper in sweepers:
            cancel_periodic(sweeper)
        if self._coalescer is not None:
            self._coalescer.cancel()
        for ns in list(self._namespaces.values()):
            ns.clear()
        logger.debug("cache registry shut down, %d namespaces cleared", len(self._namespaces))

    def __len__(self) -> int:
        return sum(len(ns) for ns in list(self._namespaces.values()))
