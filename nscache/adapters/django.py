from datetime import timedelta
from threading import Lock
from typing import Any, Callable, Dict, Optional, Union, cast

from django.core.cache.backends.base import BaseCache, DEFAULT_TIMEOUT

from nscache.models import CacheConfig
from nscache.namespace import sentinel
from nscache.registry import CacheRegistry

KEY_TYPE = Union[str, Callable[..., str]]
VALUE_TYPE = Any
VERSION_TYPE = Optional[int]

# registries are shared by every backend instance with the same LOCATION,
# Django builds one backend instance per thread
_registries: Dict[str, CacheRegistry[str, Any]] = {}
_registries_lock = Lock()


def _registry(location: str, max_entries: int) -> CacheRegistry[str, Any]:
    with _registries_lock:
        registry = _registries.get(location)
        if registry is None:
            registry = CacheRegistry[str, Any](CacheConfig(max_entries=max_entries))
            _registries[location] = registry
        return registry


class Cache(BaseCache):
    def __init__(self, location: str, params: Dict[str, Any]):
        super().__init__(params)
        options = params.get("OPTIONS", {})
        self.namespace: str = options.get("NAMESPACE", "default")
        self.registry = _registry(location, self._max_entries)
        self.registry.initialize(self.namespace)

    def _ttl(self, timeout: "Optional[Union[float, DEFAULT_TIMEOUT]]") -> Optional[timedelta]:
        if timeout is DEFAULT_TIMEOUT:
            timeout = self.default_timeout
        if timeout is None:
            return None
        return timedelta(seconds=cast(float, timeout))

    def add(
        self,
        key: KEY_TYPE,
        value: VALUE_TYPE,
        timeout: Optional[float] = DEFAULT_TIMEOUT,
        version: VERSION_TYPE = None,
    ) -> bool:
        data = self.get(key, sentinel, version)
        if data is not sentinel:
            return False
        self.set(key, value, timeout, version)
        return True

    def get(
        self,
        key: KEY_TYPE,
        default: Optional[VALUE_TYPE] = None,
        version: VERSION_TYPE = None,
    ) -> Optional[VALUE_TYPE]:
        key = self.make_key(key, version)
        return self.registry.get(self.namespace, key, default)

    def set(
        self,
        key: KEY_TYPE,
        value: VALUE_TYPE,
        timeout: Optional[float] = DEFAULT_TIMEOUT,
        version: VERSION_TYPE = None,
    ) -> None:
        ttl = self._ttl(timeout)
        if ttl is not None and ttl <= timedelta(0):
            self.delete(key, version)
            return
        key = self.make_key(key, version)
        self.registry.set(self.namespace, key, value, ttl)

    def touch(
        self,
        key: KEY_TYPE,
        timeout: Optional[float] = DEFAULT_TIMEOUT,
        version: VERSION_TYPE = None,
    ) -> bool:
        nkey = self.make_key(key, version)
        ttl = self._ttl(timeout)
        if ttl is not None and ttl <= timedelta(0):
            return self.registry.remove(self.namespace, nkey)
        return self.registry.touch(self.namespace, nkey, ttl)

    def has_key(self, key: KEY_TYPE, version: VERSION_TYPE = None) -> bool:
        key = self.make_key(key, version)
        return self.registry.has(self.namespace, key)

    def delete(self, key: KEY_TYPE, version: VERSION_TYPE = None) -> bool:
        key = self.make_key(key, version)
        return self.registry.remove(self.namespace, key)

    def clear(self) -> None:
        self.registry.clear(self.namespace)
