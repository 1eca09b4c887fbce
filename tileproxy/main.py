"""
FastAPI Tile Proxy Application Factory
======================================

This is the main entry point for the caching proxy that sits between tile
renderers and the cloud tile provider.

Architecture:
    Renderer → Tile Proxy (this service) → disk cache | Tile Provider

Routers:
    - /proxy : Cached or proxied upstream asset (GET), CORS preflight (OPTIONS)

Environment Variables:
    - PORT: Listening port (default: 8080)
    - HOST: Bind address (default: 0.0.0.0)
    - CACHE_DIR: Cache directory (default: tile-cache)
    - SOCKS_PROXY: Optional SOCKS tunnel for upstream HTTPS (e.g. socks5h://127.0.0.1:10808)
    - UPSTREAM_TIMEOUT_SECONDS: Upstream request timeout (default: 30)
    - LOG_LEVEL: Logging level (default: INFO)

Running the Service:
    Development:
        uvicorn tileproxy.main:create_app --factory --reload --port 8080

    Installed:
        tileproxy
"""

import logging
import sys
from contextlib import asynccontextmanager
from typing import Optional

import httpx
import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import PlainTextResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from .config import Settings, get_settings
from .proxy.cache import TileCache
from .proxy.routes import CORS_HEADERS, proxy_router
from .proxy.upstream import create_upstream_client


def setup_logging(log_level: str = "INFO") -> None:
    """
    Configure structured logging for the application.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format='{"timestamp": "%(asctime)s", "level": "%(levelname)s", "logger": "%(name)s", "message": "%(message)s", "module": "%(module)s", "function": "%(funcName)s"}',
        handlers=[logging.StreamHandler(sys.stdout)]
    )


class AppState:
    """
    Application state container.

    Holds the shared resources used by the proxy routes.
    """
    def __init__(self, settings: Settings):
        self.settings = settings
        self.tile_cache = TileCache(settings.CACHE_DIR)
        self.upstream_client: Optional[httpx.AsyncClient] = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Startup:
        - Create the cache directory
        - Open the shared upstream HTTP client

    Shutdown:
        - Close the upstream HTTP client
    """
    app_state: AppState = app.state.app_state
    settings = app_state.settings
    logger = logging.getLogger("tileproxy.main")

    app_state.tile_cache.ensure_directory()
    app_state.upstream_client = create_upstream_client(settings)

    logger.info(
        "Tile proxy started",
        extra={
            "port": settings.PORT,
            "cache_dir": str(settings.CACHE_DIR),
            "socks_proxy": settings.SOCKS_PROXY,
        }
    )

    yield

    await app_state.upstream_client.aclose()
    app_state.upstream_client = None
    logger.info("Tile proxy shutdown complete")


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """
    Application factory function.

    Args:
        settings: Settings to use (loaded from the environment if omitted)

    Returns:
        FastAPI: Configured application instance
    """
    settings = settings or get_settings()

    app = FastAPI(
        title="Tile Proxy",
        description="Caching proxy for session-authenticated map tiles",
        version="1.0.0",
        lifespan=lifespan,
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )
    app.state.app_state = AppState(settings)

    app.include_router(proxy_router, tags=["Tile Proxy"])

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> PlainTextResponse:
        headers = {**CORS_HEADERS, **(exc.headers or {})}
        return PlainTextResponse(str(exc.detail), status_code=exc.status_code, headers=headers)

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> PlainTextResponse:
        """
        Log unhandled errors and answer with a plain-text 500.
        """
        logger = logging.getLogger("tileproxy.main")
        logger.error(
            f"Unhandled exception: {str(exc)}",
            extra={
                "path": request.url.path,
                "method": request.method,
                "exception_type": type(exc).__name__
            },
            exc_info=True
        )
        return PlainTextResponse("Internal server error", status_code=500, headers=CORS_HEADERS)

    return app


def run() -> None:
    """Console entry point: serve the proxy with uvicorn."""
    settings = get_settings()
    setup_logging(settings.LOG_LEVEL)

    uvicorn.run(
        create_app(settings),
        host=settings.HOST,
        port=settings.PORT,
        log_level=settings.LOG_LEVEL.lower(),
    )


if __name__ == "__main__":
    run()
