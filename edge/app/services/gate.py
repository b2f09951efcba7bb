"""Subscription gate: the request pipeline behind POST /api/subscribe.

The gate is independent of the web framework. The route adapter builds a
GateRequest from the incoming request and turns the GateResponse back into
an HTTP response, so the whole policy can be exercised without a server.

Pipeline order:
1. security and cache headers, always
2. CORS headers for allow-listed origins
3. preflight (204) and method check (405)
4. origin check (403)
5. rate limit (429)
6-11. body read, content type (415), parse, honeypot, email (400), record
Unexpected failures in 6-11 become an opaque 500.
"""

import asyncio
import json
import math
from dataclasses import dataclass, field
from typing import Any, AsyncIterable, Iterable, Mapping, Optional

from edge.app.core.logging import get_log_context, get_logger
from edge.app.exceptions import (
    EdgeException,
    ForbiddenOriginError,
    ForbiddenRefererError,
    InvalidEmailError,
    MethodNotAllowedError,
    RateLimitedError,
    RequestTimeoutError,
    UnsupportedMediaTypeError,
)
from edge.app.services.rate_limit import FixedWindowRateLimiter
from edge.app.services.subscription import (
    SubscriptionEvent,
    SubscriptionOutcome,
    SubscriptionSink,
    classify_subscription,
    is_supported_content_type,
    parse_subscription,
)

logger = get_logger(__name__)

UNKNOWN_CLIENT = "0.0.0.0"

COMMON_HEADERS = {
    "Cache-Control": "no-store, no-cache, must-revalidate",
    "Pragma": "no-cache",
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Referrer-Policy": "strict-origin-when-cross-origin",
    "Vary": "Origin",
}

CORS_ALLOW_METHODS = "POST, OPTIONS"
CORS_ALLOW_HEADERS = "Content-Type"


@dataclass
class GateRequest:
    """Host-neutral view of an inbound request.

    body carries whatever the host runtime already produced (text, bytes or
    a parsed JSON object); stream is read only when body is None.
    """
    method: str
    headers: Mapping[str, str] = field(default_factory=dict)
    client_host: Optional[str] = None
    body: Any = None
    stream: Optional[AsyncIterable[bytes]] = None
    request_id: Optional[str] = None

    def __post_init__(self) -> None:
        self.headers = {k.lower(): v for k, v in self.headers.items()}

    def header(self, name: str) -> str:
        return self.headers.get(name.lower(), "")


@dataclass
class GateResponse:
    status_code: int
    body: Optional[dict[str, Any]]
    headers: dict[str, str] = field(default_factory=dict)


def get_client_key(headers: Mapping[str, str], client_host: Optional[str]) -> str:
    """Identify the client for rate limiting.

    Uses the first X-Forwarded-For hop, then X-Real-IP, then the socket peer.
    """
    forwarded = headers.get("x-forwarded-for", "")
    first_hop = forwarded.split(",")[0].strip()
    return first_hop or headers.get("x-real-ip", "") or client_host or UNKNOWN_CLIENT


def coerce_raw_body(body: Any) -> Optional[str]:
    """Normalise a host-provided body to text.

    Returns None when the host provided nothing usable and the raw stream
    has to be read instead.
    """
    if isinstance(body, str):
        return body
    if isinstance(body, (bytes, bytearray, memoryview)):
        return bytes(body).decode("utf-8", errors="replace")
    if isinstance(body, (dict, list)):
        # Some runtimes auto-parse JSON; re-serialise so parsing stays uniform
        return json.dumps(body)
    return None


async def _collect(stream: AsyncIterable[bytes]) -> str:
    chunks = [chunk async for chunk in stream]
    return b"".join(chunks).decode("utf-8", errors="replace")


async def read_raw_body(request: GateRequest, timeout: float) -> str:
    """Return the request body as text, reading the stream if needed.

    Raises:
        RequestTimeoutError: the stream did not finish within timeout seconds
    """
    raw = coerce_raw_body(request.body)
    if raw is not None:
        return raw
    if request.stream is None:
        return ""
    try:
        return await asyncio.wait_for(_collect(request.stream), timeout=timeout)
    except asyncio.TimeoutError:
        raise RequestTimeoutError(f"Request body not received within {timeout:g}s")


class SubscriptionGate:
    """Validates, rate-limits and records newsletter sign-ups."""

    def __init__(
        self,
        limiter: FixedWindowRateLimiter,
        sink: SubscriptionSink,
        allowed_origins: Iterable[str],
        enforce_referer: bool = False,
        body_read_timeout: float = 10.0,
    ):
        self.limiter = limiter
        self.sink = sink
        self.allowed_origins = frozenset(allowed_origins)
        self.enforce_referer = enforce_referer
        self.body_read_timeout = body_read_timeout

    def cors_headers(self, origin: str) -> dict[str, str]:
        """CORS headers for an allow-listed origin, nothing otherwise."""
        if origin and origin in self.allowed_origins:
            return {
                "Access-Control-Allow-Origin": origin,
                "Access-Control-Allow-Methods": CORS_ALLOW_METHODS,
                "Access-Control-Allow-Headers": CORS_ALLOW_HEADERS,
            }
        return {}

    def check_origin(self, origin: str, referer: str) -> None:
        if origin and origin not in self.allowed_origins:
            raise ForbiddenOriginError()
        if (
            self.enforce_referer
            and referer
            and not any(referer.startswith(allowed) for allowed in self.allowed_origins)
        ):
            raise ForbiddenRefererError()

    async def handle(self, request: GateRequest) -> GateResponse:
        origin = request.header("origin")
        headers = dict(COMMON_HEADERS)
        headers.update(self.cors_headers(origin))

        try:
            status_code, body = await self._dispatch(request, origin, headers)
        except EdgeException as exc:
            return GateResponse(exc.status_code, exc.to_response(), headers)
        return GateResponse(status_code, body, headers)

    async def _dispatch(
        self,
        request: GateRequest,
        origin: str,
        headers: dict[str, str],
    ) -> tuple[int, Optional[dict[str, Any]]]:
        method = request.method.upper()
        if method == "OPTIONS":
            return 204, None
        if method != "POST":
            raise MethodNotAllowedError()

        self.check_origin(origin, request.header("referer"))

        client_key = get_client_key(request.headers, request.client_host)
        result = await self.limiter.hit(client_key)
        if not result.allowed:
            retry_after_ms = result.retry_after_ms or self.limiter.window_ms
            headers["Retry-After"] = str(math.ceil(retry_after_ms / 1000))
            logger.info(
                "Subscribe rate limited",
                extra=get_log_context(request_id=request.request_id, client_key=client_key),
            )
            raise RateLimitedError(retry_after_ms)

        try:
            return await self._subscribe(request, client_key)
        except EdgeException:
            raise
        except Exception:
            logger.exception(
                "Subscription error",
                extra=get_log_context(request_id=request.request_id, client_key=client_key),
            )
            raise EdgeException()

    async def _subscribe(
        self,
        request: GateRequest,
        client_key: str,
    ) -> tuple[int, dict[str, Any]]:
        raw = await read_raw_body(request, self.body_read_timeout)

        content_type = request.header("content-type")
        if not is_supported_content_type(content_type):
            raise UnsupportedMediaTypeError()

        classification = classify_subscription(parse_subscription(content_type, raw))

        if classification.outcome is SubscriptionOutcome.HONEYPOT:
            # Same answer as a real sign-up so bots learn nothing
            logger.debug(
                "Honeypot field filled, submission dropped",
                extra=get_log_context(request_id=request.request_id, client_key=client_key),
            )
            return 200, {"ok": True, "message": "Thanks!"}

        if classification.outcome is SubscriptionOutcome.INVALID:
            raise InvalidEmailError()

        await self.sink.record(
            SubscriptionEvent(
                email=classification.email,
                client_key=client_key,
                user_agent=request.header("user-agent") or "n/a",
            )
        )
        return 200, {"ok": True, "message": "Subscribed successfully"}
