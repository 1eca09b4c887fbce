"""
Upstream Tile Fetching
======================

httpx client construction and streaming helpers for the proxy's outbound leg.
HTTPS upstream calls go through the SOCKS tunnel when SOCKS_PROXY is set;
plain HTTP is always dialed directly.
"""

import errno
import logging
from typing import AsyncIterator, Optional

import httpx
from fastapi.responses import StreamingResponse
from starlette.types import Receive, Scope, Send

from ..config import Settings
from .cache import CacheWriter

logger = logging.getLogger(__name__)


def create_upstream_client(settings: Settings) -> httpx.AsyncClient:
    """
    Create the shared upstream HTTP client.

    Args:
        settings: Application settings (SOCKS_PROXY, UPSTREAM_TIMEOUT_SECONDS)

    Returns:
        Configured httpx.AsyncClient
    """
    mounts = {}
    if settings.SOCKS_PROXY:
        mounts["https://"] = httpx.AsyncHTTPTransport(proxy=settings.SOCKS_PROXY)

    return httpx.AsyncClient(
        mounts=mounts,
        timeout=httpx.Timeout(settings.UPSTREAM_TIMEOUT_SECONDS, connect=10.0),
    )


def uses_tunnel(url: httpx.URL, socks_proxy: Optional[str]) -> bool:
    return bool(socks_proxy) and url.scheme == "https"


def is_connection_refused(exc: BaseException) -> bool:
    """
    Detect a refused TCP connection anywhere in an exception chain.
    """
    seen = set()
    current: Optional[BaseException] = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        if isinstance(current, ConnectionRefusedError):
            return True
        if isinstance(current, OSError) and current.errno == errno.ECONNREFUSED:
            return True
        if "ECONNREFUSED" in str(current) or "Connection refused" in str(current):
            return True
        current = current.__cause__ or current.__context__
    return False


async def relay_upstream(
    upstream: httpx.Response,
    writer: Optional[CacheWriter] = None,
) -> AsyncIterator[bytes]:
    """
    Stream an upstream body to the client, teeing it into the cache.

    Each chunk is written to the cache temp file before it is yielded. The
    entry is committed only after the whole body has arrived; every other
    exit discards the temp file and closes the upstream response. An
    iterator that never starts cleans up nothing, so callers serve it
    through UpstreamStreamingResponse.

    Raises:
        httpx.HTTPError: If the upstream fails mid-body (aborts the client
            connection, since headers are already sent)
    """
    try:
        async for chunk in upstream.aiter_bytes():
            if writer is not None:
                await writer.write(chunk)
            yield chunk

        if writer is not None:
            await writer.commit()
    except httpx.HTTPError as e:
        logger.error(f"Upstream response error: {e}")
        raise
    finally:
        if writer is not None:
            await writer.discard()
        await upstream.aclose()


class UpstreamStreamingResponse(StreamingResponse):
    """
    StreamingResponse that relays an upstream body and owns its cleanup.

    Starlette cancels the body iterator when the client disconnects, and an
    iterator cancelled before its first chunk never runs its ``finally``.
    The response therefore releases the cache writer and the upstream
    response itself once it has been served, whatever the outcome.
    """

    def __init__(
        self,
        upstream: httpx.Response,
        writer: Optional[CacheWriter] = None,
        **kwargs,
    ):
        super().__init__(relay_upstream(upstream, writer), **kwargs)
        self.upstream = upstream
        self.writer = writer

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        try:
            await super().__call__(scope, receive, send)
        finally:
            await self.release()

    async def release(self) -> None:
        # no-op for a committed writer and an already closed response
        if self.writer is not None:
            await self.writer.discard()
        await self.upstream.aclose()
