"""
Unit Tests for Proxy Routes
===========================

Tests for tileproxy/proxy/routes.py

Test Coverage:
--------------
1. Request validation (missing / invalid url parameter)
2. CORS headers on every response, OPTIONS preflight, 404 for other paths
3. Cache miss → upstream fetch and atomic cache write
4. Cache hit → served from disk with X-Cache: HIT, no upstream call
5. Credential-parameter normalization across sessions
6. Non-cacheable and non-2xx responses are never stored
7. Upstream failure handling (502, connection refused, SOCKS diagnostic)

Run tests:
----------
    pytest tileproxy/tests/test_proxy.py -v
"""

import asyncio
import hashlib
from typing import Any, AsyncIterator, Callable, Dict, List, Optional
from unittest.mock import patch
from urllib.parse import urlencode

import httpx
import pytest
from fastapi import status
from fastapi.testclient import TestClient

from tileproxy.config import Settings
from tileproxy.main import create_app
from tileproxy.proxy.cache import TileCache


ROOT_JSON = "https://tiles.example/root.json"
MESH_GLB = "https://tiles.example/files/mesh.glb"


# ============================================================================
# Fixtures
# ============================================================================

class TrackingStream(httpx.AsyncByteStream):
    """Upstream body that records whether the proxy closed it."""

    def __init__(self, chunks: List[bytes]):
        self.chunks = chunks
        self.closed = False

    async def __aiter__(self) -> AsyncIterator[bytes]:
        for chunk in self.chunks:
            yield chunk

    async def aclose(self) -> None:
        self.closed = True


class FakeUpstream:
    """
    Upstream origin served through httpx.MockTransport.

    Answers every request with the configured status, body and content type
    unless ``error`` is set, in which case the error is raised instead. A
    ``stream`` replaces the fixed body.
    """

    def __init__(self):
        self.calls: List[httpx.Request] = []
        self.status_code = 200
        self.body = b'{"root": {}}'
        self.stream: Optional[httpx.AsyncByteStream] = None
        self.content_type: Optional[str] = "application/json"
        self.error: Optional[Callable[[httpx.Request], Exception]] = None

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request)
        if self.error is not None:
            raise self.error(request)

        headers: Dict[str, str] = {}
        if self.content_type:
            headers["Content-Type"] = self.content_type
        if self.stream is not None:
            return httpx.Response(self.status_code, stream=self.stream, headers=headers)
        return httpx.Response(self.status_code, content=self.body, headers=headers)


@pytest.fixture
def upstream():
    return FakeUpstream()


@pytest.fixture
def mock_settings(tmp_path):
    """Create settings pointing the cache at a temporary directory"""
    return Settings(_env_file=None, CACHE_DIR=tmp_path / "tile-cache")


@pytest.fixture
def app(mock_settings, upstream):
    """Create test FastAPI application with a fake upstream"""
    app = create_app(mock_settings)

    app_state = app.state.app_state
    app_state.tile_cache.ensure_directory()
    app_state.upstream_client = httpx.AsyncClient(
        transport=httpx.MockTransport(upstream.handler)
    )

    return app


@pytest.fixture
def client(app):
    """Create test client"""
    return TestClient(app)


@pytest.fixture
def cache_dir(mock_settings):
    return mock_settings.CACHE_DIR


def proxy_get(client: TestClient, url: str):
    return client.get("/proxy", params={"url": url})


def assert_cors(response):
    assert response.headers["access-control-allow-origin"] == "*"
    assert response.headers["access-control-allow-methods"] == "GET,OPTIONS"


def proxy_scope(url: str) -> Dict[str, Any]:
    """
    Build a raw ASGI scope for GET /proxy.

    spec_version 2.3 makes Starlette watch ``receive`` for http.disconnect
    while it streams, which is how a real server reports a client abort.
    """
    return {
        "type": "http",
        "asgi": {"version": "3.0", "spec_version": "2.3"},
        "http_version": "1.1",
        "method": "GET",
        "scheme": "http",
        "path": "/proxy",
        "raw_path": b"/proxy",
        "root_path": "",
        "query_string": urlencode({"url": url}).encode(),
        "headers": [(b"host", b"testserver")],
        "client": ("127.0.0.1", 50000),
        "server": ("testserver", 80),
    }


# ============================================================================
# Request Validation Tests
# ============================================================================

def test_missing_url_param_rejected(client, upstream):
    response = client.get("/proxy")

    assert response.status_code == status.HTTP_400_BAD_REQUEST
    assert response.text == "Missing url param"
    assert response.headers["content-type"].startswith("text/plain")
    assert_cors(response)
    assert upstream.calls == []


@pytest.mark.parametrize("bad_url", ["not-a-url", "ftp://tiles.example/root.json", "/root.json"])
def test_invalid_url_param_rejected(client, upstream, bad_url):
    response = proxy_get(client, bad_url)

    assert response.status_code == status.HTTP_400_BAD_REQUEST
    assert response.text == "Invalid url param"
    assert upstream.calls == []


def test_unknown_path_returns_404(client):
    response = client.get("/tiles")

    assert response.status_code == status.HTTP_404_NOT_FOUND
    assert response.text == "Not Found"
    assert_cors(response)


def test_options_preflight(client):
    """Test that OPTIONS /proxy answers 200 with an empty body"""
    response = client.options("/proxy")

    assert response.status_code == status.HTTP_200_OK
    assert response.content == b""
    assert_cors(response)


# ============================================================================
# Cache Miss / Hit Tests
# ============================================================================

def test_manifest_miss_then_hit(client, upstream, cache_dir):
    """
    Test the manifest round trip:
    - First request fetches upstream and stores json:<normalized url>
    - Second request is served from disk with X-Cache: HIT
    """
    first = proxy_get(client, ROOT_JSON)

    assert first.status_code == status.HTTP_200_OK
    assert first.content == upstream.body
    assert first.headers["x-cache"] == "MISS"
    assert_cors(first)
    assert len(upstream.calls) == 1

    expected_name = hashlib.sha1(f"json:{ROOT_JSON}".encode()).hexdigest()
    assert [p.name for p in cache_dir.iterdir()] == [expected_name]
    assert (cache_dir / expected_name).read_bytes() == upstream.body

    second = proxy_get(client, ROOT_JSON)

    assert second.status_code == status.HTTP_200_OK
    assert second.content == upstream.body
    assert second.headers["x-cache"] == "HIT"
    assert second.headers["content-type"] == "application/json; charset=utf-8"
    assert second.headers["content-length"] == str(len(upstream.body))
    assert_cors(second)
    assert len(upstream.calls) == 1


def test_mesh_hit_across_sessions(client, upstream, cache_dir):
    """Test that a mesh fetched under one session is a hit under another"""
    upstream.body = b"glTF-binary-payload"
    upstream.content_type = "model/gltf-binary"

    first = proxy_get(client, f"{MESH_GLB}?key=AAA&session=one")
    second = proxy_get(client, f"{MESH_GLB}?session=two&key=BBB")

    assert first.headers["x-cache"] == "MISS"
    assert second.headers["x-cache"] == "HIT"
    assert second.content == b"glTF-binary-payload"
    assert len(upstream.calls) == 1
    assert len(list(cache_dir.iterdir())) == 1


def test_upstream_request_keeps_credentials(client, upstream):
    """Test that key/session are stripped from the cache key only, not upstream"""
    proxy_get(client, f"{MESH_GLB}?key=AAA&session=one")

    sent = upstream.calls[0].url
    assert sent.params["key"] == "AAA"
    assert sent.params["session"] == "one"


def test_upstream_content_type_forwarded(client, upstream):
    upstream.body = b"\x89PNG"
    upstream.content_type = "image/png"

    response = proxy_get(client, "https://tiles.example/v1/2dtiles/1/2/3")

    assert response.headers["content-type"] == "image/png"
    assert response.content == b"\x89PNG"


def test_text_content_type_forwarded_without_added_charset(client, upstream):
    upstream.body = b"Map data 2024"
    upstream.content_type = "text/plain"

    response = proxy_get(client, "https://tiles.example/v1/copyright")

    assert response.headers["content-type"] == "text/plain"
    assert response.text == "Map data 2024"


def test_missing_upstream_content_type_not_invented(client, upstream):
    upstream.content_type = None

    response = proxy_get(client, "https://tiles.example/v1/2dtiles/1/2/3")

    assert "content-type" not in response.headers


def test_non_cacheable_path_bypasses_cache(client, upstream, cache_dir):
    """Test that non .glb/.json assets are always fetched and never stored"""
    upstream.content_type = "image/png"

    first = proxy_get(client, "https://tiles.example/tiles/0/0/0.png")
    second = proxy_get(client, "https://tiles.example/tiles/0/0/0.png")

    assert first.status_code == second.status_code == status.HTTP_200_OK
    assert "x-cache" not in first.headers
    assert len(upstream.calls) == 2
    assert list(cache_dir.iterdir()) == []


def test_error_response_is_forwarded_not_cached(client, upstream, cache_dir):
    """Test that a non-2xx upstream status is passed through and never stored"""
    upstream.status_code = 403
    upstream.body = b"session expired"
    upstream.content_type = "text/plain"

    response = proxy_get(client, MESH_GLB)

    assert response.status_code == status.HTTP_403_FORBIDDEN
    assert response.text == "session expired"
    assert list(cache_dir.iterdir()) == []

    upstream.status_code = 200
    upstream.body = b"mesh"
    retry = proxy_get(client, MESH_GLB)

    assert retry.headers["x-cache"] == "MISS"
    assert len(upstream.calls) == 2


def test_manifest_and_mesh_stored_separately(client, upstream, cache_dir):
    proxy_get(client, ROOT_JSON)
    proxy_get(client, MESH_GLB)

    assert len(list(cache_dir.iterdir())) == 2


def test_cache_stat_failure_falls_through_to_upstream(client, upstream):
    """Test that a local cache I/O error is logged and the asset fetched"""
    proxy_get(client, ROOT_JSON)

    with patch.object(TileCache, "lookup", side_effect=PermissionError("denied")):
        response = proxy_get(client, ROOT_JSON)

    assert response.status_code == status.HTTP_200_OK
    assert response.headers["x-cache"] == "MISS"
    assert len(upstream.calls) == 2


def test_cache_hit_read_failure_spares_later_requests(client, upstream, cache_dir):
    """
    Test a hit whose file cannot be read after the stat:
    - The failing request is aborted with the read error
    - The next request for the asset is refetched and served
    """
    proxy_get(client, ROOT_JSON)
    entry = next(cache_dir.iterdir())
    entry_stat = entry.stat()
    entry.unlink()

    with patch.object(TileCache, "lookup", return_value=entry_stat):
        with pytest.raises(FileNotFoundError):
            proxy_get(client, ROOT_JSON)

    response = proxy_get(client, ROOT_JSON)

    assert response.status_code == status.HTTP_200_OK
    assert response.headers["x-cache"] == "MISS"
    assert response.content == upstream.body
    assert len(upstream.calls) == 2


# ============================================================================
# Client Disconnect Tests
# ============================================================================

@pytest.mark.asyncio
async def test_disconnect_before_first_chunk_releases_everything(app, upstream, cache_dir):
    """
    Test a client abort while the response headers are still being sent:
    - The cache temp file is removed
    - The upstream response is closed
    """
    upstream.stream = TrackingStream([b'{"root": ', b"{}}"])
    sent: List[Dict[str, Any]] = []

    async def receive():
        return {"type": "http.disconnect"}

    async def send(message):
        sent.append(message)
        await asyncio.sleep(0.05)

    await app(proxy_scope(ROOT_JSON), receive, send)

    assert [m for m in sent if m["type"] == "http.response.body"] == []
    assert list(cache_dir.iterdir()) == []
    assert upstream.stream.closed is True


@pytest.mark.asyncio
async def test_disconnect_mid_body_releases_everything(app, upstream, cache_dir):
    """Test a client abort after the first body chunk has been sent"""
    upstream.stream = TrackingStream([b"glTF", b"-rest-of-mesh"])
    upstream.content_type = "model/gltf-binary"
    first_chunk_sent = asyncio.Event()
    bodies: List[bytes] = []

    async def receive():
        await first_chunk_sent.wait()
        return {"type": "http.disconnect"}

    async def send(message):
        if message["type"] == "http.response.body":
            bodies.append(message["body"])
            first_chunk_sent.set()
            await asyncio.sleep(0.05)

    await app(proxy_scope(MESH_GLB), receive, send)

    assert bodies == [b"glTF"]
    assert list(cache_dir.iterdir()) == []
    assert upstream.stream.closed is True


def test_completed_miss_closes_upstream(client, upstream, cache_dir):
    upstream.stream = TrackingStream([b"glTF", b"-rest-of-mesh"])

    response = proxy_get(client, MESH_GLB)

    assert response.content == b"glTF-rest-of-mesh"
    assert upstream.stream.closed is True
    assert len(list(cache_dir.iterdir())) == 1


# ============================================================================
# Upstream Failure Tests
# ============================================================================

def test_upstream_connect_error_returns_502(client, upstream, cache_dir):
    upstream.error = lambda request: httpx.ConnectTimeout("timed out", request=request)

    response = proxy_get(client, ROOT_JSON)

    assert response.status_code == status.HTTP_502_BAD_GATEWAY
    assert response.text == "Upstream request error"
    assert_cors(response)
    assert list(cache_dir.iterdir()) == []


def test_upstream_connection_refused_reported(client, upstream):
    upstream.error = lambda request: httpx.ConnectError(
        "[Errno 111] Connection refused", request=request
    )

    response = proxy_get(client, ROOT_JSON)

    assert response.status_code == status.HTTP_502_BAD_GATEWAY
    assert response.text == "Upstream request error: cannot reach upstream (connection refused)"


def test_socks_tunnel_refusal_reported(tmp_path, upstream):
    """Test the tunnel-specific diagnostic when the SOCKS proxy refuses"""
    settings = Settings(
        _env_file=None,
        CACHE_DIR=tmp_path / "tile-cache",
        SOCKS_PROXY="socks5h://127.0.0.1:10808",
    )
    app = create_app(settings)
    app.state.app_state.tile_cache.ensure_directory()
    app.state.app_state.upstream_client = httpx.AsyncClient(
        transport=httpx.MockTransport(upstream.handler)
    )
    upstream.error = lambda request: httpx.ConnectError(
        "[Errno 111] Connection refused", request=request
    )

    response = proxy_get(TestClient(app), ROOT_JSON)

    assert response.status_code == status.HTTP_502_BAD_GATEWAY
    assert "SOCKS proxy" in response.text

    plain_http = proxy_get(TestClient(app), "http://tiles.example/root.json")

    assert "cannot reach upstream" in plain_http.text


# ============================================================================
# Lifespan Tests
# ============================================================================

def test_lifespan_creates_cache_dir_and_client(tmp_path):
    """Test that startup creates the cache directory and upstream client"""
    settings = Settings(_env_file=None, CACHE_DIR=tmp_path / "new" / "cache")
    app = create_app(settings)

    with TestClient(app):
        assert settings.CACHE_DIR.is_dir()
        assert app.state.app_state.upstream_client is not None

    assert app.state.app_state.upstream_client is None
