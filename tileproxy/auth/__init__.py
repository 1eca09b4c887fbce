"""
Authentication Package
======================

Session-authenticated access to the tile provider.

Main Components:
----------------
- session.py: SessionAuthClient with shared, single-flight token refresh
- utils.py: URL credential helpers and session token extraction

Usage:
------
    from tileproxy.auth import SessionAuthClient
"""

from .session import SessionAuthClient, SessionAuthError
from .utils import get_session_token

__all__ = ["SessionAuthClient", "SessionAuthError", "get_session_token"]
