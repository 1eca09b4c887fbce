"""
Session token utilities for the tile provider.

This module handles:
- Applying the API key and session token to provider URLs
- Wrapping provider URLs for an intermediary proxy endpoint
- Extracting the session token from auth endpoint responses
"""

from typing import Any, Dict, List, Optional
from urllib.parse import parse_qs, urlsplit

import httpx


KEY_PARAM = "key"
SESSION_PARAM = "session"


# =============================================================================
# URL Construction
# =============================================================================

def apply_credentials(
    url: str,
    api_key: str,
    session_token: Optional[str] = None
) -> httpx.URL:
    """
    Set the API key and, if present, the session token on a provider URL.

    Existing ``key``/``session`` parameters are replaced, never duplicated.

    Args:
        url: Provider URL
        api_key: Long-lived API key
        session_token: Current session token, if one is held

    Returns:
        URL carrying the credentials as query parameters
    """
    target = httpx.URL(url).copy_set_param(KEY_PARAM, api_key)
    if session_token:
        target = target.copy_set_param(SESSION_PARAM, session_token)
    return target


def route_through_proxy(target: httpx.URL, proxy_url: Optional[str]) -> httpx.URL:
    """
    Wrap ``target`` as the ``url`` parameter of a call to ``proxy_url``.

    Returns ``target`` unchanged when no proxy endpoint is configured.
    """
    if not proxy_url:
        return target
    return httpx.URL(proxy_url).copy_set_param("url", str(target))


# =============================================================================
# Token Extraction
# =============================================================================

def get_session_token(payload: Any) -> Optional[str]:
    """
    Extract the session token from an auth endpoint response.

    2D map tiles sessions answer with ``{"session": "..."}``. 3D tiles answer
    with a tileset manifest whose content URIs embed the session parameter.

    Args:
        payload: Decoded JSON response; anything but an object yields None

    Returns:
        Session token, or None if the response does not carry one

    Example:
        >>> get_session_token({"session": "abc"})
        'abc'
        >>> get_session_token({"root": {"content": {"uri": "mesh.glb?session=xyz"}}})
        'xyz'
    """
    if not isinstance(payload, dict):
        return None

    if SESSION_PARAM in payload:
        return payload[SESSION_PARAM]

    root = payload.get("root")
    if not isinstance(root, dict):
        return None
    return find_manifest_session(root)


def find_manifest_session(root: Dict[str, Any]) -> Optional[str]:
    """
    Walk a tileset tree depth-first and return the first embedded session.

    Nodes are visited in document order. The walk stops at the first node
    whose ``content.uri`` carries a ``session`` query parameter.
    """
    stack: List[Dict[str, Any]] = [root]

    while stack:
        tile = stack.pop()

        content = tile.get("content")
        if isinstance(content, dict) and content.get("uri"):
            token = _session_from_uri(content["uri"])
            if token:
                return token

        children = tile.get("children") or []
        stack.extend(
            child for child in reversed(children) if isinstance(child, dict)
        )

    return None


def _session_from_uri(uri: str) -> Optional[str]:
    values = parse_qs(urlsplit(uri).query).get(SESSION_PARAM)
    return values[0] if values else None
