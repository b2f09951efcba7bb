"""HTTP tests for /api/subscribe through the FastAPI application."""

import pytest
from fastapi.testclient import TestClient

from edge.app.main import create_app
from edge.app.services.rate_limit import (
    FixedWindowRateLimiter,
    InMemoryRateLimitStore,
    get_rate_limiter,
)
from edge.app.services.subscription import (
    SubscriptionEvent,
    SubscriptionSink,
    get_subscription_sink,
)

ORIGIN = "https://alkindix.com"


class RecordingSink(SubscriptionSink):
    def __init__(self):
        self.events: list[SubscriptionEvent] = []

    async def record(self, event: SubscriptionEvent) -> None:
        self.events.append(event)


class FakeClock:
    def __init__(self):
        self.now = 1_700_000_000_000

    def __call__(self) -> int:
        return self.now


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def client(sink, clock):
    app = create_app()
    limiter = FixedWindowRateLimiter(
        store=InMemoryRateLimitStore(), max_requests=10, window_ms=60_000, clock=clock
    )
    app.dependency_overrides[get_rate_limiter] = lambda: limiter
    app.dependency_overrides[get_subscription_sink] = lambda: sink
    return TestClient(app, raise_server_exceptions=False)


def test_json_subscription(client, sink):
    resp = client.post(
        "/api/subscribe",
        json={"email": "Reader@Alkindix.com"},
        headers={"Origin": ORIGIN, "User-Agent": "pytest-agent", "X-Forwarded-For": "203.0.113.7"},
    )

    assert resp.status_code == 200
    assert resp.json() == {"ok": True, "message": "Subscribed successfully"}
    assert resp.headers["access-control-allow-origin"] == ORIGIN
    assert resp.headers["x-content-type-options"] == "nosniff"
    assert resp.headers["x-frame-options"] == "DENY"
    assert resp.headers["referrer-policy"] == "strict-origin-when-cross-origin"
    assert "no-store" in resp.headers["cache-control"]
    assert "x-request-id" in resp.headers

    assert len(sink.events) == 1
    assert sink.events[0].email == "reader@alkindix.com"
    assert sink.events[0].client_key == "203.0.113.7"
    assert sink.events[0].user_agent == "pytest-agent"


def test_form_subscription(client, sink):
    resp = client.post(
        "/api/subscribe",
        data={"email": "reader@alkindix.com", "website": ""},
    )

    assert resp.status_code == 200
    assert sink.events[0].email == "reader@alkindix.com"


def test_socket_address_used_without_proxy_headers(client, sink):
    client.post("/api/subscribe", json={"email": "a@b.co"})
    assert sink.events[0].client_key == "testclient"


@pytest.mark.parametrize("origin", [ORIGIN, "https://evil.example", None])
def test_preflight_always_204(client, origin):
    headers = {"Origin": origin} if origin else {}
    resp = client.options("/api/subscribe", headers=headers)

    assert resp.status_code == 204
    assert resp.content == b""


def test_preflight_cors_headers_only_for_allowed_origin(client):
    allowed = client.options("/api/subscribe", headers={"Origin": ORIGIN})
    foreign = client.options("/api/subscribe", headers={"Origin": "https://evil.example"})

    assert allowed.headers["access-control-allow-methods"] == "POST, OPTIONS"
    assert "access-control-allow-origin" not in foreign.headers


@pytest.mark.parametrize("method", ["GET", "PUT", "PATCH", "DELETE"])
def test_other_methods_rejected(client, method):
    resp = client.request(method, "/api/subscribe")

    assert resp.status_code == 405
    assert resp.json() == {"ok": False, "error": "method_not_allowed"}


def test_forbidden_origin(client, sink):
    resp = client.post(
        "/api/subscribe",
        json={"email": "a@b.co"},
        headers={"Origin": "https://evil.example"},
    )

    assert resp.status_code == 403
    assert resp.json()["error"] == "forbidden_origin"
    assert sink.events == []


def test_text_plain_rejected(client):
    resp = client.post(
        "/api/subscribe",
        content=b'{"email": "a@b.co"}',
        headers={"Content-Type": "text/plain"},
    )

    assert resp.status_code == 415
    assert resp.json()["error"] == "unsupported_media_type"


def test_honeypot_returns_success_without_recording(client, sink):
    resp = client.post(
        "/api/subscribe",
        json={"email": "reader@alkindix.com", "website": "http://bot.example"},
    )

    assert resp.status_code == 200
    assert resp.json()["ok"] is True
    assert sink.events == []


def test_invalid_email(client):
    resp = client.post("/api/subscribe", json={"email": "reader@alkindix"})

    assert resp.status_code == 400
    assert resp.json() == {"ok": False, "error": "invalid_email"}


def test_rate_limit_then_recovery(client, clock):
    headers = {"X-Forwarded-For": "198.51.100.4"}
    for _ in range(10):
        assert client.post("/api/subscribe", json={"email": "a@b.co"}, headers=headers).status_code == 200

    resp = client.post("/api/subscribe", json={"email": "a@b.co"}, headers=headers)
    assert resp.status_code == 429
    assert resp.json() == {"ok": False, "error": "rate_limited", "retry_after_ms": 60000}
    assert resp.headers["retry-after"] == "60"

    # A different client is unaffected
    other = client.post("/api/subscribe", json={"email": "a@b.co"}, headers={"X-Forwarded-For": "198.51.100.5"})
    assert other.status_code == 200

    clock.now += 60_001
    resp = client.post("/api/subscribe", json={"email": "a@b.co"}, headers=headers)
    assert resp.status_code == 200


def test_sink_failure_returns_internal_error(client, sink):
    async def broken(event):
        raise ConnectionError("provider unreachable")

    sink.record = broken
    resp = client.post("/api/subscribe", json={"email": "a@b.co"})

    assert resp.status_code == 500
    assert resp.json() == {"ok": False, "error": "internal_error"}


def test_oversized_body_rejected(client, sink):
    resp = client.post(
        "/api/subscribe",
        content=b"email=" + b"a" * 20_000,
        headers={"Content-Type": "application/x-www-form-urlencoded"},
    )

    assert resp.status_code == 413
    assert resp.json()["error"] == "payload_too_large"
    assert sink.events == []
