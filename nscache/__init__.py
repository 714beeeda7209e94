from nscache.memoize import Memoize
from nscache.models import CacheConfig, CacheStats
from nscache.registry import DEFAULT_TTL, CacheRegistry, NamespaceNotInitialized

__all__ = [
    "CacheConfig",
    "CacheRegistry",
    "CacheStats",
    "DEFAULT_TTL",
    "Memoize",
    "NamespaceNotInitialized",
]
