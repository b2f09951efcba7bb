"""Offline cache worker: service-worker caching policy for the site shell."""

from typing import Optional

from edge.app.core.config import settings
from edge.app.worker.cache import CacheStorage, CacheStore
from edge.app.worker.lifecycle import (
    Client,
    Clients,
    ExtendableEvent,
    FetchEvent,
    InstallError,
    OfflineCacheWorker,
    ServiceWorkerHost,
    WorkerState,
)
from edge.app.worker.models import (
    CacheMode,
    CachedResponse,
    FetchRequest,
    RequestMode,
    ResponseType,
)
from edge.app.worker.network import HttpxNetwork, Network, NetworkError
from edge.app.worker.strategy import FetchStrategy, select_strategy


def create_worker(
    network: Network,
    caches: Optional[CacheStorage] = None,
    intercept_fetches: bool = True,
) -> OfflineCacheWorker:
    """Build a worker configured from settings."""
    return OfflineCacheWorker(
        origin=settings.site_origin,
        caches=caches or CacheStorage(),
        network=network,
        version=settings.cache_version,
        precache_urls=settings.precache_urls,
        offline_url=settings.offline_url,
        intercept_fetches=intercept_fetches,
    )


__all__ = [
    "CacheMode",
    "CacheStorage",
    "CacheStore",
    "CachedResponse",
    "Client",
    "Clients",
    "ExtendableEvent",
    "FetchEvent",
    "FetchRequest",
    "FetchStrategy",
    "HttpxNetwork",
    "InstallError",
    "Network",
    "NetworkError",
    "OfflineCacheWorker",
    "RequestMode",
    "ResponseType",
    "ServiceWorkerHost",
    "WorkerState",
    "create_worker",
    "select_strategy",
]
