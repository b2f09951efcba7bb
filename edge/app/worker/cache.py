"""Named response caches for the offline cache worker.

Mirrors the browser Cache Storage model: a CacheStorage holds named
CacheStore objects, each mapping request URLs to response snapshots.
Writes are idempotent per URL, so two racing fetches for the same asset
at worst store the same response twice.
"""

import asyncio
from typing import Optional

from edge.app.worker.models import CachedResponse, cache_key


class CacheStore:
    """One named cache: URL -> response snapshot."""

    def __init__(self, name: str) -> None:
        self.name = name
        self._entries: dict[str, CachedResponse] = {}
        self._lock = asyncio.Lock()

    async def match(self, url: str) -> Optional[CachedResponse]:
        """Return a copy of the stored response for url, or None."""
        async with self._lock:
            entry = self._entries.get(cache_key(url))
            return entry.clone() if entry is not None else None

    async def put(self, url: str, response: CachedResponse) -> None:
        async with self._lock:
            self._entries[cache_key(url)] = response.clone()

    async def keys(self) -> list[str]:
        async with self._lock:
            return list(self._entries)


class CacheStorage:
    """All caches owned by one origin, in creation order."""

    def __init__(self) -> None:
        self._caches: dict[str, CacheStore] = {}
        self._lock = asyncio.Lock()

    async def open(self, name: str) -> CacheStore:
        """Return the cache called name, creating it if needed."""
        async with self._lock:
            store = self._caches.get(name)
            if store is None:
                store = CacheStore(name)
                self._caches[name] = store
            return store

    async def has(self, name: str) -> bool:
        async with self._lock:
            return name in self._caches

    async def keys(self) -> list[str]:
        async with self._lock:
            return list(self._caches)

    async def delete(self, name: str) -> bool:
        """Drop a whole cache and every entry in it."""
        async with self._lock:
            return self._caches.pop(name, None) is not None

    async def match(self, url: str) -> Optional[CachedResponse]:
        """Look url up in every cache, oldest first."""
        async with self._lock:
            stores = list(self._caches.values())
        for store in stores:
            response = await store.match(url)
            if response is not None:
                return response
        return None
