"""
Proxy Routes - Cached Tile Forwarding
=====================================

This module implements the caching proxy endpoint that front-end tile
renderers call instead of the tile provider.

Request Flow:
-------------
1. Validate the ``url`` query parameter (400 if missing or invalid)
2. Classify the upstream path: .glb meshes and .json tilesets are cacheable
3. Derive the cache key with credential parameters stripped
4. Cache hit: stream the file with X-Cache: HIT
5. Cache miss: stream the upstream body to the client while writing it to a
   temp file that is atomically renamed into the cache when complete
6. Non-cacheable paths are always fetched and never stored

Endpoints:
----------
- GET /proxy?url=<upstream URL>: Proxied or cached asset
- OPTIONS /proxy: CORS preflight
"""

import logging
from typing import Dict, Optional

import httpx
from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response, status
from fastapi.responses import FileResponse

from ..config import Settings
from ..models import AssetKind
from .cache import CONTENT_TYPES, TileCache, cache_key, classify_asset
from .upstream import UpstreamStreamingResponse, is_connection_refused, uses_tunnel

logger = logging.getLogger(__name__)

# Create router
proxy_router = APIRouter()

CORS_HEADERS: Dict[str, str] = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET,OPTIONS",
}


# ============================================================================
# Dependencies
# ============================================================================

def _get_app_state(request: Request):
    if not hasattr(request.app.state, "app_state"):
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Proxy not initialized",
        )
    return request.app.state.app_state


def get_tile_cache(request: Request) -> TileCache:
    """
    Dependency to get the tile cache from app state.
    """
    return _get_app_state(request).tile_cache


def get_upstream_client(request: Request) -> httpx.AsyncClient:
    """
    Dependency to get the upstream HTTP client from app state.
    """
    client = _get_app_state(request).upstream_client
    if client is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Upstream client not available",
        )
    return client


def get_proxy_settings(request: Request) -> Settings:
    return _get_app_state(request).settings


# ============================================================================
# Helpers
# ============================================================================

def parse_upstream_url(raw_url: Optional[str]) -> httpx.URL:
    """
    Validate the ``url`` query parameter.

    Raises:
        HTTPException: 400 if the parameter is missing or not an absolute
            http(s) URL
    """
    if not raw_url:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing url param",
        )

    try:
        target = httpx.URL(raw_url)
    except (httpx.InvalidURL, TypeError, ValueError):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid url param",
        )

    if target.scheme not in ("http", "https") or not target.host:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid url param",
        )

    return target


def serve_cached(
    cache: TileCache,
    key: str,
    kind: AssetKind,
) -> Optional[FileResponse]:
    """
    Build a streaming response for a cache hit.

    Returns None on a miss, or if the entry cannot be inspected (logged, so
    the request falls through to the upstream fetch).
    """
    try:
        stat_result = cache.lookup(key)
    except OSError as e:
        logger.error(f"Cache read exception for {key}: {e}")
        return None

    if stat_result is None:
        return None

    cache_path = cache.path_for(key)
    logger.info("Cache hit", extra={"cache_path": str(cache_path)})

    return FileResponse(
        cache_path,
        stat_result=stat_result,
        media_type=CONTENT_TYPES[kind],
        headers={**CORS_HEADERS, "X-Cache": "HIT"},
    )


def upstream_failure(exc: httpx.HTTPError, tunneled: bool, socks_proxy: Optional[str]) -> HTTPException:
    """
    Map an upstream connection failure to a 502 with a diagnostic message.
    """
    if is_connection_refused(exc):
        if tunneled:
            logger.error(
                f"Upstream request error: cannot connect via SOCKS proxy {socks_proxy} - {exc}"
            )
            detail = "Upstream request error: cannot connect via SOCKS proxy (connection refused)"
        else:
            logger.error(f"Upstream request error: connection refused - {exc}")
            detail = "Upstream request error: cannot reach upstream (connection refused)"
    else:
        logger.error(f"Upstream request error: {exc}")
        detail = "Upstream request error"

    return HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=detail)


# ============================================================================
# Proxy Endpoints
# ============================================================================

@proxy_router.options("/proxy")
async def proxy_preflight() -> Response:
    """CORS preflight; empty 200 response."""
    return Response(status_code=status.HTTP_200_OK, headers=CORS_HEADERS)


@proxy_router.get("/proxy")
async def proxy_tile(
    url: Optional[str] = Query(default=None, description="Upstream asset URL"),
    cache: TileCache = Depends(get_tile_cache),
    client: httpx.AsyncClient = Depends(get_upstream_client),
    settings: Settings = Depends(get_proxy_settings),
):
    """
    Serve an upstream tile asset, from the local cache when possible.

    Returns:
        FileResponse on a cache hit, StreamingResponse otherwise

    Raises:
        HTTPException: 400 for a bad ``url``, 502 for upstream failures
    """
    target = parse_upstream_url(url)
    logger.info("Proxy request", extra={"target_url": str(target)})

    kind = classify_asset(target.path)
    key: Optional[str] = None

    if kind is not None:
        key = cache_key(str(target), kind)
        logger.debug("Cache key computed", extra={"cache_key": key, "kind": kind.value})

        cached = serve_cached(cache, key, kind)
        if cached is not None:
            return cached

    tunneled = uses_tunnel(target, settings.SOCKS_PROXY)
    if tunneled:
        logger.debug(f"Using SOCKS proxy {settings.SOCKS_PROXY}")

    try:
        upstream_request = client.build_request("GET", target)
        upstream = await client.send(upstream_request, stream=True)
    except (httpx.InvalidURL, httpx.UnsupportedProtocol):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid url param",
        )
    except httpx.HTTPError as e:
        raise upstream_failure(e, tunneled, settings.SOCKS_PROXY)

    try:
        writer = None
        if key is not None and upstream.is_success:
            writer = await cache.open_writer(key)
    except BaseException:
        await upstream.aclose()
        raise

    headers = dict(CORS_HEADERS)
    if kind is not None:
        headers["X-Cache"] = "MISS"
    # forwarded verbatim; media_type would append a charset to text/* types
    content_type = upstream.headers.get("content-type")
    if content_type is not None:
        headers["Content-Type"] = content_type

    return UpstreamStreamingResponse(
        upstream,
        writer,
        status_code=upstream.status_code,
        headers=headers,
    )
