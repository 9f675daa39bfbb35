"""
In-memory cache of backend reads, keyed by API path.

Mirrors how the web client kept `/auth/user`, `/organizations/current` and
friends around until a mutation invalidated them.
"""
import logging
import os
from typing import Any, Awaitable, Callable, Dict, Optional

from cachetools import TTLCache

logger = logging.getLogger(__name__)


class QueryCache:
    """Cache of fetched JSON keyed by path (e.g. "/organizations/current")."""

    def __init__(self):
        self._entries: Dict[str, Any] = {}

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    def get(self, key: str) -> Optional[Any]:
        return self._entries.get(key)

    def set(self, key: str, value: Any) -> None:
        self._entries[key] = value

    async def fetch(self, key: str, loader: Callable[[], Awaitable[Any]]) -> Any:
        """
        Return the cached value for `key`, loading it on a miss.

        Loader errors propagate and nothing is cached.
        """
        if key in self._entries:
            return self._entries[key]
        value = await loader()
        self._entries[key] = value
        return value

    def invalidate(self, *prefixes: str) -> int:
        """
        Drop entries whose key equals a prefix or sits below it.

        "/companies/team" drops "/companies/team" and "/companies/team/42"
        but not "/companies/teams".

        Returns:
            Number of entries dropped
        """
        stale = [
            key for key in self._entries
            if any(key == prefix or key.startswith(prefix.rstrip("/") + "/") for prefix in prefixes)
        ]
        for key in stale:
            del self._entries[key]

        if stale:
            logger.debug(f"Invalidated {len(stale)} cached queries: {stale}")
        return len(stale)

    def clear(self) -> None:
        self._entries.clear()


class QueryCacheRegistry:
    """
    One QueryCache per browser client.

    Bounded in size and age: the least recently used clients are evicted once
    `max_clients` is reached, and a client's cache is dropped `ttl_seconds`
    after it was created.
    """

    def __init__(self, max_clients: Optional[int] = None, ttl_seconds: Optional[float] = None):
        if max_clients is None:
            max_clients = int(os.getenv("QUERY_CACHE_MAX_CLIENTS", "10000"))
        if ttl_seconds is None:
            ttl_seconds = float(os.getenv("QUERY_CACHE_TTL_SECONDS", "3600"))
        self._caches: TTLCache = TTLCache(maxsize=max_clients, ttl=ttl_seconds)

    def __len__(self) -> int:
        return len(self._caches)

    def for_client(self, client_id: str) -> QueryCache:
        cache = self._caches.get(client_id)
        if cache is None:
            cache = QueryCache()
            self._caches[client_id] = cache
        return cache

    def discard(self, client_id: str) -> None:
        self._caches.pop(client_id, None)
