"""Offline cache worker and the host that drives its lifecycle.

OfflineCacheWorker holds the caching policy as three event handlers
(install, activate, fetch). ServiceWorkerHost plays the browser's part:
it moves a worker through

    INSTALLING -> INSTALLED (waiting) -> ACTIVATING -> ACTIVATED

dispatches events, and keeps each event alive until every awaitable the
worker passed to wait_until() has finished. Nothing here touches a real
browser, so the policy can be tested with synthetic requests.
"""

import asyncio
import itertools
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Iterable, Optional
from urllib.parse import urljoin

from edge.app.core.config import DEFAULT_PRECACHE_URLS
from edge.app.core.logging import get_logger
from edge.app.worker.cache import CacheStorage
from edge.app.worker.models import CacheMode, CachedResponse, FetchRequest, ResponseType
from edge.app.worker.network import Network, NetworkError
from edge.app.worker.strategy import FetchStrategy, select_strategy

logger = get_logger(__name__)


class WorkerState(str, Enum):
    PARSED = "parsed"
    INSTALLING = "installing"
    INSTALLED = "installed"
    ACTIVATING = "activating"
    ACTIVATED = "activated"
    REDUNDANT = "redundant"


class InstallError(Exception):
    """Raised when precaching fails; the worker is then discarded."""


class ExtendableEvent:
    """Lifecycle event that the host keeps alive until its work settles."""

    def __init__(self, scope: "ServiceWorkerHost"):
        self.scope = scope
        self._pending: list[asyncio.Future] = []

    def wait_until(self, awaitable: Awaitable[Any]) -> None:
        """Ask the host not to finish this event before awaitable completes."""
        self._pending.append(asyncio.ensure_future(awaitable))

    async def settle(self) -> list[BaseException]:
        """Wait for all extended work, including work added while waiting.

        Returns:
            Exceptions raised by the extended work, in registration order
        """
        errors: list[BaseException] = []
        while self._pending:
            pending, self._pending = self._pending, []
            results = await asyncio.gather(*pending, return_exceptions=True)
            errors.extend(r for r in results if isinstance(r, BaseException))
        return errors


class FetchEvent(ExtendableEvent):
    def __init__(self, scope: "ServiceWorkerHost", request: FetchRequest):
        super().__init__(scope)
        self.request = request
        self._response: Optional[asyncio.Future] = None

    @property
    def responded(self) -> bool:
        return self._response is not None

    def respond_with(self, response: Awaitable[CachedResponse]) -> None:
        if self._response is not None:
            raise RuntimeError("respond_with() already called for this fetch")
        self._response = asyncio.ensure_future(response)

    async def response(self) -> CachedResponse:
        if self._response is None:
            raise RuntimeError("Worker did not respond to this fetch")
        return await self._response


class OfflineCacheWorker:
    """Precaches the site shell and serves it when the network is gone.

    Args:
        origin: Site origin, e.g. "https://alkindix.com"
        caches: Cache storage shared by every worker version of the origin
        network: Used for precaching and for cache misses
        version: Cache name; bumping it is the only way to invalidate
        precache_urls: Site-relative URLs fetched at install time
        offline_url: Page served for failed navigations (must be precached)
        intercept_fetches: False installs a pass-through worker
    """

    def __init__(
        self,
        origin: str,
        caches: CacheStorage,
        network: Network,
        version: str = "ax-v1",
        precache_urls: Iterable[str] = DEFAULT_PRECACHE_URLS,
        offline_url: str = "/offline.html",
        intercept_fetches: bool = True,
    ):
        self.origin = origin.rstrip("/")
        self.caches = caches
        self.network = network
        self.version = version
        self.precache_urls = list(precache_urls)
        self.offline_url = offline_url
        self.intercept_fetches = intercept_fetches
        self.state = WorkerState.PARSED

    def resolve(self, path: str) -> str:
        return urljoin(self.origin + "/", path)

    # install

    def on_install(self, event: ExtendableEvent) -> None:
        event.wait_until(self._install(event.scope))

    async def _install(self, scope: "ServiceWorkerHost") -> None:
        await self.precache()
        scope.skip_waiting()

    async def precache(self) -> None:
        """Fetch every shell asset from the network and store them together.

        Nothing is stored unless every asset came back with a 2xx status.
        """
        requests = [
            FetchRequest(url=self.resolve(path), cache=CacheMode.RELOAD)
            for path in self.precache_urls
        ]
        try:
            responses = await asyncio.gather(*(self.network.fetch(r) for r in requests))
        except NetworkError as e:
            raise InstallError(f"Precache failed: {e}") from e

        failed = [r.url for r in responses if not r.ok]
        if failed:
            raise InstallError(f"Precache got non-2xx responses for {', '.join(failed)}")

        cache = await self.caches.open(self.version)
        for request, response in zip(requests, responses):
            await cache.put(request.url, response)
        logger.info(f"Precached {len(requests)} assets into {self.version}")

    # activate

    def on_activate(self, event: ExtendableEvent) -> None:
        event.wait_until(self._activate(event.scope))

    async def _activate(self, scope: "ServiceWorkerHost") -> None:
        await self.purge_old_caches()
        await scope.clients.claim()

    async def purge_old_caches(self) -> list[str]:
        """Delete every cache whose name is not the current version."""
        stale = [name for name in await self.caches.keys() if name != self.version]
        await asyncio.gather(*(self.caches.delete(name) for name in stale))
        if stale:
            logger.info(f"Deleted old caches: {', '.join(stale)}")
        return stale

    # fetch

    def on_fetch(self, event: FetchEvent) -> None:
        if not self.intercept_fetches:
            return

        strategy = select_strategy(event.request, self.origin)
        if strategy is FetchStrategy.NETWORK_FIRST:
            event.respond_with(self._network_first(event.request))
        elif strategy is FetchStrategy.CACHE_FIRST:
            event.respond_with(self._cache_first(event))

    async def _network_first(self, request: FetchRequest) -> CachedResponse:
        try:
            return await self.network.fetch(request)
        except NetworkError:
            offline = await self.caches.match(self.resolve(self.offline_url))
            if offline is None:
                raise
            logger.debug(f"Serving offline page for {request.url}")
            return offline

    async def _cache_first(self, event: FetchEvent) -> CachedResponse:
        request = event.request
        cached = await self.caches.match(request.url)
        if cached is not None:
            return cached

        # Network errors propagate: assets have no fallback
        response = await self.network.fetch(request)
        if response.ok and response.type is ResponseType.BASIC:
            event.wait_until(self._store(request.url, response.clone()))
        return response

    async def _store(self, url: str, response: CachedResponse) -> None:
        cache = await self.caches.open(self.version)
        await cache.put(url, response)


@dataclass
class Client:
    """An open page of the origin."""
    id: int
    url: str
    controller: Optional[OfflineCacheWorker] = None


class Clients:
    def __init__(self, host: "ServiceWorkerHost"):
        self._host = host
        self._clients: list[Client] = []
        self._ids = itertools.count(1)

    def open(self, url: str) -> Client:
        """Open a page; it is controlled by the active worker, if any."""
        client = Client(id=next(self._ids), url=url, controller=self._host.active)
        self._clients.append(client)
        return client

    def all(self) -> list[Client]:
        return list(self._clients)

    async def claim(self) -> None:
        """Make the active worker control every open page immediately."""
        for client in self._clients:
            client.controller = self._host.active


class ServiceWorkerHost:
    """Stands in for the browser: registers workers and routes fetches.

    Args:
        network: Default network used when no worker handles a fetch
    """

    def __init__(self, network: Network):
        self.network = network
        self.clients = Clients(self)
        self.active: Optional[OfflineCacheWorker] = None
        self.waiting: Optional[OfflineCacheWorker] = None
        self.installing: Optional[OfflineCacheWorker] = None
        self._skip_waiting = False

    def skip_waiting(self) -> None:
        """Let the installing worker activate without waiting for old pages."""
        self._skip_waiting = True

    async def register(self, worker: OfflineCacheWorker) -> WorkerState:
        """Install worker and activate it if nothing holds it in waiting.

        Returns:
            The worker's state once registration settles
        """
        self._skip_waiting = False
        if not await self.install(worker):
            return worker.state

        # A waiting worker is held back while an older one still controls pages
        if self.active is None or self._skip_waiting:
            await self.activate(worker)
        return worker.state

    async def install(self, worker: OfflineCacheWorker) -> bool:
        self.installing = worker
        worker.state = WorkerState.INSTALLING

        event = ExtendableEvent(self)
        worker.on_install(event)
        errors = await event.settle()
        self.installing = None

        if errors:
            logger.error(f"Install of {worker.version} failed: {errors[0]}")
            worker.state = WorkerState.REDUNDANT
            return False

        if self.waiting is not None and self.waiting is not worker:
            self.waiting.state = WorkerState.REDUNDANT
        self.waiting = worker
        worker.state = WorkerState.INSTALLED
        return True

    async def activate(self, worker: Optional[OfflineCacheWorker] = None) -> None:
        """Promote worker (default: the waiting one) to active."""
        worker = worker or self.waiting
        if worker is None:
            raise RuntimeError("No installed worker to activate")
        if worker.state is not WorkerState.INSTALLED:
            raise RuntimeError(f"Cannot activate a worker in state {worker.state.value}")

        previous = self.active
        if self.waiting is worker:
            self.waiting = None
        self.active = worker
        worker.state = WorkerState.ACTIVATING
        if previous is not None and previous is not worker:
            previous.state = WorkerState.REDUNDANT

        event = ExtendableEvent(self)
        worker.on_activate(event)
        errors = await event.settle()
        for error in errors:
            logger.warning(f"Activate of {worker.version} reported: {error}")
        worker.state = WorkerState.ACTIVATED

    async def dispatch_fetch(self, request: FetchRequest) -> Optional[CachedResponse]:
        """Offer request to the active worker.

        Returns:
            The worker's response, or None if it declined to respond

        Raises:
            NetworkError: If the worker's response failed with no fallback
        """
        worker = self.active
        if worker is None or worker.state is not WorkerState.ACTIVATED:
            return None

        event = FetchEvent(self, request)
        worker.on_fetch(event)
        if not event.responded:
            return None

        try:
            return await event.response()
        finally:
            for error in await event.settle():
                logger.warning(f"Background cache write for {request.url} failed: {error}")

    async def fetch(self, request: FetchRequest) -> CachedResponse:
        """What a page gets for request: the worker's answer or the network's."""
        response = await self.dispatch_fetch(request)
        if response is None:
            return await self.network.fetch(request)
        return response
