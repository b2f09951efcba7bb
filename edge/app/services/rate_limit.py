"""Fixed-window rate limiting for the subscription endpoint.

The limiter keeps one RateLimitEntry per client key behind a pluggable
store. The in-memory store is the default and suits single-instance
deployments (state resets on cold start); the Redis store shares windows
across instances.

Updates use an optimistic read-modify-compare-and-swap loop, so the
per-key increment is atomic whatever concurrency model the host uses.
"""

import asyncio
import json
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Optional

import redis
import redis.asyncio as aioredis

from edge.app.core.config import settings
from edge.app.core.logging import get_logger
from edge.app.exceptions import RateLimitStoreError

logger = get_logger(__name__)


@dataclass(frozen=True)
class RateLimitEntry:
    """Request count for one client key within the current window."""
    count: int = 0
    window_reset_at: int = 0  # epoch milliseconds


@dataclass
class RateLimitResult:
    """Result of a rate limit check."""
    allowed: bool
    limit: int
    remaining: int
    reset_at: int
    retry_after_ms: Optional[int] = None


class RateLimitStore(ABC):
    """Storage for rate limit entries keyed by client key."""

    @abstractmethod
    async def get(self, key: str) -> Optional[RateLimitEntry]:
        """Return the entry for key, or None if the key was never seen."""

    @abstractmethod
    async def set(self, key: str, entry: RateLimitEntry) -> None:
        """Unconditionally store entry for key."""

    @abstractmethod
    async def compare_and_swap_window(
        self,
        key: str,
        expected: Optional[RateLimitEntry],
        new: RateLimitEntry,
    ) -> bool:
        """Store new only if the current entry still equals expected.

        expected=None means the key must not exist yet.

        Returns:
            True if the swap happened, False if another writer got there first
        """

    async def close(self) -> None:
        """Release backend resources."""


class InMemoryRateLimitStore(RateLimitStore):
    """Process-local store.

    Entries are never evicted; a serverless process is short-lived and
    replaced often enough that growth is bounded in practice.
    """

    def __init__(self) -> None:
        self._entries: dict[str, RateLimitEntry] = {}
        self._lock = asyncio.Lock()

    async def get(self, key: str) -> Optional[RateLimitEntry]:
        async with self._lock:
            return self._entries.get(key)

    async def set(self, key: str, entry: RateLimitEntry) -> None:
        async with self._lock:
            self._entries[key] = entry

    async def compare_and_swap_window(
        self,
        key: str,
        expected: Optional[RateLimitEntry],
        new: RateLimitEntry,
    ) -> bool:
        async with self._lock:
            if self._entries.get(key) != expected:
                return False
            self._entries[key] = new
            return True

    def __len__(self) -> int:
        return len(self._entries)


# Atomic compare-and-swap. ARGV[1] is the expected encoded entry ('' when
# the key must be absent), ARGV[2] the new encoded entry, ARGV[3] the TTL.
COMPARE_AND_SWAP_SCRIPT = """
    local current = redis.call('GET', KEYS[1])
    local expected = ARGV[1]

    if expected == '' then
        if current then
            return 0
        end
    elseif current ~= expected then
        return 0
    end

    redis.call('SET', KEYS[1], ARGV[2], 'PX', tonumber(ARGV[3]))
    return 1
"""


def _encode_entry(entry: Optional[RateLimitEntry]) -> str:
    if entry is None:
        return ""
    # Canonical encoding: the CAS script compares strings byte for byte
    return json.dumps(
        {"count": entry.count, "window_reset_at": entry.window_reset_at},
        sort_keys=True,
        separators=(",", ":"),
    )


def _decode_entry(raw: Any) -> Optional[RateLimitEntry]:
    if raw is None:
        return None
    if isinstance(raw, bytes):
        raw = raw.decode()
    data = json.loads(raw)
    return RateLimitEntry(count=int(data["count"]), window_reset_at=int(data["window_reset_at"]))


class RedisRateLimitStore(RateLimitStore):
    """Redis-backed store shared by every instance of the deployment.

    Keys expire one window after their last write, so abandoned clients
    do not accumulate.
    """

    def __init__(
        self,
        redis_client: Optional[Any] = None,
        redis_url: Optional[str] = None,
        key_prefix: str = "edge:ratelimit",
        ttl_ms: int = 60_000,
    ):
        self._redis = redis_client
        self._redis_url = redis_url or settings.redis_url
        self._key_prefix = key_prefix
        self._ttl_ms = ttl_ms

    def _key(self, key: str) -> str:
        return f"{self._key_prefix}:{key}"

    def _get_redis(self) -> Any:
        if self._redis is None:
            self._redis = aioredis.from_url(self._redis_url)
        return self._redis

    async def get(self, key: str) -> Optional[RateLimitEntry]:
        try:
            raw = await self._get_redis().get(self._key(key))
        except redis.RedisError as e:
            raise RateLimitStoreError(f"Redis get failed: {e}") from e
        return _decode_entry(raw)

    async def set(self, key: str, entry: RateLimitEntry) -> None:
        try:
            await self._get_redis().set(self._key(key), _encode_entry(entry), px=self._ttl_ms)
        except redis.RedisError as e:
            raise RateLimitStoreError(f"Redis set failed: {e}") from e

    async def compare_and_swap_window(
        self,
        key: str,
        expected: Optional[RateLimitEntry],
        new: RateLimitEntry,
    ) -> bool:
        try:
            swapped = await self._get_redis().eval(
                COMPARE_AND_SWAP_SCRIPT,
                1,
                self._key(key),
                _encode_entry(expected),
                _encode_entry(new),
                self._ttl_ms,
            )
        except redis.RedisError as e:
            raise RateLimitStoreError(f"Redis compare-and-swap failed: {e}") from e
        return int(swapped) == 1

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None


def _now_ms() -> int:
    return int(time.time() * 1000)


class FixedWindowRateLimiter:
    """Counts requests per key in fixed windows of window_ms.

    The window opens on a key's first request and is reset by the first
    request that arrives after it has expired.
    """

    MAX_SWAP_ATTEMPTS = 8

    def __init__(
        self,
        store: Optional[RateLimitStore] = None,
        max_requests: int = 10,
        window_ms: int = 60_000,
        clock: Optional[Callable[[], int]] = None,
        fail_closed: bool = False,
    ):
        """Initialize rate limiter.

        Args:
            store: Entry storage (defaults to a fresh in-memory store)
            max_requests: Requests allowed per key per window
            window_ms: Window length in milliseconds
            clock: Returns the current time in epoch milliseconds
            fail_closed: Deny requests when the store is unavailable
        """
        self.store = store or InMemoryRateLimitStore()
        self.max_requests = max_requests
        self.window_ms = window_ms
        self._clock = clock or _now_ms
        self.fail_closed = fail_closed

    def _advance(self, current: Optional[RateLimitEntry], now: int) -> RateLimitEntry:
        if current is None or now > current.window_reset_at:
            current = RateLimitEntry(count=0, window_reset_at=now + self.window_ms)
        return RateLimitEntry(count=current.count + 1, window_reset_at=current.window_reset_at)

    async def hit(self, key: str) -> RateLimitResult:
        """Record one request for key and report whether it is allowed."""
        try:
            entry = await self._increment(key)
        except RateLimitStoreError as e:
            return self._handle_store_failure(e)

        if entry is None:
            # Lost every swap: the key is under a burst, not the store down
            logger.warning(
                f"Rate limit key contended for {self.MAX_SWAP_ATTEMPTS} attempts. Request denied.",
                extra={"client_key": key},
            )
            return RateLimitResult(
                allowed=False,
                limit=self.max_requests,
                remaining=0,
                reset_at=self._clock() + self.window_ms,
                retry_after_ms=self.window_ms,
            )

        allowed = entry.count <= self.max_requests
        return RateLimitResult(
            allowed=allowed,
            limit=self.max_requests,
            remaining=max(0, self.max_requests - entry.count),
            reset_at=entry.window_reset_at,
            retry_after_ms=None if allowed else self.window_ms,
        )

    async def _increment(self, key: str) -> Optional[RateLimitEntry]:
        """Apply one counted request; None if every swap lost a race."""
        for _ in range(self.MAX_SWAP_ATTEMPTS):
            current = await self.store.get(key)
            updated = self._advance(current, self._clock())
            if await self.store.compare_and_swap_window(key, current, updated):
                return updated
        return None

    def _handle_store_failure(self, error: RateLimitStoreError) -> RateLimitResult:
        """Apply the fail-open/fail-closed policy when the store is unavailable."""
        reset_at = self._clock() + self.window_ms
        if self.fail_closed:
            logger.warning(f"Rate limiting fail-closed triggered: {error}. Request denied.")
            return RateLimitResult(
                allowed=False,
                limit=self.max_requests,
                remaining=0,
                reset_at=reset_at,
                retry_after_ms=self.window_ms,
            )

        logger.warning(
            f"Rate limiting fail-open triggered: {error}. "
            "Request allowed without rate limit check."
        )
        return RateLimitResult(
            allowed=True,
            limit=self.max_requests,
            remaining=1,
            reset_at=reset_at,
        )

    async def close(self) -> None:
        await self.store.close()


_limiter_instance: Optional[FixedWindowRateLimiter] = None


def create_rate_limit_store(backend: Optional[str] = None) -> RateLimitStore:
    """Build the store selected by settings.rate_limit_backend."""
    backend = backend or settings.rate_limit_backend
    if backend == "redis":
        logger.info("Using Redis rate limit store")
        return RedisRateLimitStore(
            redis_url=settings.redis_url,
            key_prefix=settings.rate_limit_key_prefix,
            ttl_ms=settings.rate_limit_window_ms,
        )
    logger.debug("Using in-memory rate limit store")
    return InMemoryRateLimitStore()


def get_rate_limiter() -> FixedWindowRateLimiter:
    """Get or create the process-wide rate limiter."""
    global _limiter_instance
    if _limiter_instance is None:
        _limiter_instance = FixedWindowRateLimiter(
            store=create_rate_limit_store(),
            max_requests=settings.rate_limit_max_requests,
            window_ms=settings.rate_limit_window_ms,
            fail_closed=settings.rate_limit_fail_closed,
        )
    return _limiter_instance


async def close_rate_limiter() -> None:
    """Close the process-wide limiter's store, if one was created."""
    global _limiter_instance
    if _limiter_instance is not None:
        await _limiter_instance.close()
        _limiter_instance = None


def reset_rate_limiter() -> None:
    """Drop the process-wide limiter (used by tests)."""
    global _limiter_instance
    _limiter_instance = None
