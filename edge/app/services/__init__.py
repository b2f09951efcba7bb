"""Services package for the edge service.

This package provides:
- Fixed-window rate limiting with in-memory and Redis stores
- Subscription parsing, classification and recording
- The subscription gate request pipeline
"""

from edge.app.services.gate import GateRequest, GateResponse, SubscriptionGate, get_client_key
from edge.app.services.rate_limit import (
    FixedWindowRateLimiter,
    InMemoryRateLimitStore,
    RateLimitEntry,
    RateLimitResult,
    RateLimitStore,
    RedisRateLimitStore,
    get_rate_limiter,
    reset_rate_limiter,
)
from edge.app.services.subscription import (
    Classification,
    LoggingSubscriptionSink,
    SubscriptionEvent,
    SubscriptionOutcome,
    SubscriptionRequest,
    SubscriptionSink,
    classify_subscription,
    get_subscription_sink,
    is_valid_email,
    parse_subscription,
)

__all__ = [
    # Gate
    "GateRequest",
    "GateResponse",
    "SubscriptionGate",
    "get_client_key",
    # Rate limiting
    "FixedWindowRateLimiter",
    "InMemoryRateLimitStore",
    "RateLimitEntry",
    "RateLimitResult",
    "RateLimitStore",
    "RedisRateLimitStore",
    "get_rate_limiter",
    "reset_rate_limiter",
    # Subscription
    "Classification",
    "LoggingSubscriptionSink",
    "SubscriptionEvent",
    "SubscriptionOutcome",
    "SubscriptionRequest",
    "SubscriptionSink",
    "classify_subscription",
    "get_subscription_sink",
    "is_valid_email",
    "parse_subscription",
]
