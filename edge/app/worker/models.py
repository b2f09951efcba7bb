"""Request and response snapshots exchanged by the offline cache worker."""

from dataclasses import dataclass, field, replace
from enum import Enum
from urllib.parse import urldefrag, urlsplit


class RequestMode(str, Enum):
    NAVIGATE = "navigate"
    SAME_ORIGIN = "same-origin"
    CORS = "cors"
    NO_CORS = "no-cors"


class CacheMode(str, Enum):
    DEFAULT = "default"
    RELOAD = "reload"  # Bypass HTTP caches on the way out


class ResponseType(str, Enum):
    BASIC = "basic"
    CORS = "cors"
    OPAQUE = "opaque"


@dataclass(frozen=True)
class FetchRequest:
    url: str
    method: str = "GET"
    mode: RequestMode = RequestMode.NO_CORS
    cache: CacheMode = CacheMode.DEFAULT
    headers: dict[str, str] = field(default_factory=dict)

    @property
    def is_navigation(self) -> bool:
        return self.mode is RequestMode.NAVIGATE


@dataclass(frozen=True)
class CachedResponse:
    """An HTTP response captured in full, suitable for storing in a cache."""
    url: str
    status: int = 200
    headers: dict[str, str] = field(default_factory=dict)
    body: bytes = b""
    type: ResponseType = ResponseType.BASIC

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    def clone(self) -> "CachedResponse":
        return replace(self, headers=dict(self.headers))


def cache_key(url: str) -> str:
    """Cache entries are keyed by URL without its fragment."""
    return urldefrag(url).url


_DEFAULT_PORTS = {"http": 80, "https": 443}


def origin_of(url: str) -> tuple[str, str, int | None]:
    parts = urlsplit(url)
    scheme = parts.scheme.lower()
    return scheme, (parts.hostname or "").lower(), parts.port or _DEFAULT_PORTS.get(scheme)


def is_same_origin(url: str, origin: str) -> bool:
    return origin_of(url) == origin_of(origin)
