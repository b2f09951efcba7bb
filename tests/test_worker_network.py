"""Tests for the httpx-backed worker network."""

import httpx
import pytest
import respx

from edge.app.worker import CacheMode, FetchRequest, HttpxNetwork, NetworkError

ORIGIN = "https://alkindix.com"


@pytest.mark.asyncio
@respx.mock
async def test_fetch_returns_snapshot():
    respx.get(f"{ORIGIN}/styles.css").mock(
        return_value=httpx.Response(200, content=b"body{}", headers={"Content-Type": "text/css"})
    )
    network = HttpxNetwork()

    response = await network.fetch(FetchRequest(url=f"{ORIGIN}/styles.css"))
    await network.aclose()

    assert response.status == 200
    assert response.ok is True
    assert response.body == b"body{}"
    assert response.headers["content-type"] == "text/css"


@pytest.mark.asyncio
@respx.mock
async def test_reload_mode_bypasses_http_caches():
    route = respx.get(f"{ORIGIN}/").mock(return_value=httpx.Response(200, content=b"home"))
    network = HttpxNetwork()

    await network.fetch(FetchRequest(url=f"{ORIGIN}/", cache=CacheMode.RELOAD))
    await network.aclose()

    sent = route.calls.last.request
    assert sent.headers["Cache-Control"] == "no-cache"
    assert sent.headers["Pragma"] == "no-cache"


@pytest.mark.asyncio
@respx.mock
async def test_default_mode_sends_no_cache_headers():
    route = respx.get(f"{ORIGIN}/main.js").mock(return_value=httpx.Response(200))
    network = HttpxNetwork()

    await network.fetch(FetchRequest(url=f"{ORIGIN}/main.js"))
    await network.aclose()

    assert "pragma" not in route.calls.last.request.headers


@pytest.mark.asyncio
@respx.mock
async def test_http_error_status_is_a_response():
    respx.get(f"{ORIGIN}/missing").mock(return_value=httpx.Response(404))
    network = HttpxNetwork()

    response = await network.fetch(FetchRequest(url=f"{ORIGIN}/missing"))
    await network.aclose()

    assert response.status == 404
    assert response.ok is False


@pytest.mark.asyncio
@respx.mock
async def test_transport_error_becomes_network_error():
    respx.get(f"{ORIGIN}/").mock(side_effect=httpx.ConnectError("offline"))
    network = HttpxNetwork()

    with pytest.raises(NetworkError) as exc_info:
        await network.fetch(FetchRequest(url=f"{ORIGIN}/"))
    await network.aclose()

    assert exc_info.value.url == f"{ORIGIN}/"
    assert exc_info.value.reason == "ConnectError"


@pytest.mark.asyncio
async def test_shared_client_is_not_closed():
    client = httpx.AsyncClient()
    network = HttpxNetwork(client=client)

    await network.aclose()

    assert client.is_closed is False
    await client.aclose()
