"""Network access for the offline cache worker.

Like the browser fetch(), a Network only fails on transport problems;
HTTP error statuses come back as ordinary responses.
"""

from abc import ABC, abstractmethod
from typing import Optional

import httpx

from edge.app.core.config import settings
from edge.app.core.logging import get_logger
from edge.app.worker.models import CacheMode, CachedResponse, FetchRequest

logger = get_logger(__name__)


class NetworkError(Exception):
    """Raised when a request could not be completed (offline, DNS, reset)."""

    def __init__(self, url: str, reason: str = "network request failed"):
        self.url = url
        self.reason = reason
        super().__init__(f"{reason}: {url}")


class Network(ABC):
    """Abstract network used by the worker to reach the site origin."""

    @abstractmethod
    async def fetch(self, request: FetchRequest) -> CachedResponse:
        """Perform request.

        Raises:
            NetworkError: If no response was received
        """
        pass


class HttpxNetwork(Network):
    """Network backed by an httpx.AsyncClient.

    Pass a shared client to reuse its connection pool; otherwise one is
    created with the worker fetch timeout and closed by aclose().
    """

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        timeout: Optional[float] = None,
    ):
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(timeout or settings.worker_fetch_timeout_seconds),
            follow_redirects=True,
        )

    async def fetch(self, request: FetchRequest) -> CachedResponse:
        headers = dict(request.headers)
        if request.cache is CacheMode.RELOAD:
            headers["Cache-Control"] = "no-cache"
            headers["Pragma"] = "no-cache"

        try:
            response = await self._client.request(request.method, request.url, headers=headers)
        except httpx.TransportError as e:
            logger.warning(f"Fetch failed for {request.url}: {e}")
            raise NetworkError(request.url, type(e).__name__) from e

        return CachedResponse(
            url=str(response.url),
            status=response.status_code,
            headers=dict(response.headers),
            body=response.content,
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
