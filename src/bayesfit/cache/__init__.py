"""
Fit cache: one computation per canonical model.

- cache_key: SHA-256 of a ModelSpec's canonical form
- FitCache: per-key serialization, bounded concurrency, timeouts
- CancelToken / current_token: cooperative cancellation of in-flight fits
"""

from bayesfit.cache.cancellation import CancelToken, current_token
from bayesfit.cache.keys import cache_key
from bayesfit.cache.fit_cache import CacheStats, FitCache

__all__ = [
    "CancelToken",
    "current_token",
    "cache_key",
    "CacheStats",
    "FitCache",
]
