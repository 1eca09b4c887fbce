"""
Proxy Package
=============

Caching proxy for tile provider assets.

Main Components:
----------------
- routes.py: FastAPI router with the /proxy endpoint
- cache.py: Cache key normalization and the atomic on-disk store
- upstream.py: Upstream httpx client and streaming tee into the cache

Usage:
------
    from tileproxy.proxy import proxy_router
    app.include_router(proxy_router)
"""

from .routes import proxy_router

__all__ = ["proxy_router"]
