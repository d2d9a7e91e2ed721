"""
Outbound HTTP access for the analysis stages.

* `connection_pool` – Per-endpoint aiohttp sessions with rate limiting,
  retry with exponential backoff and response caching.
* `cache` – The in-process TTL cache used for cacheable calls.
"""

from .cache import ResponseCache  # noqa: F401
from .connection_pool import (  # noqa: F401
    CacheOptions,
    CallSpec,
    ConnectionPool,
    EndpointConfig,
    EndpointStats,
    PooledResponse,
)
