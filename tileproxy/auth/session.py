"""
Session-Authenticated Tile Client
=================================

Fetches tile provider assets that require a short-lived session token on top
of a long-lived API key. Supports both the 2D map tiles API (token issued by a
createSession POST) and the 3D tiles API (token embedded in the root tileset).

Concurrency Model:
------------------
All callers share one session. When no token is held, the first caller starts
a refresh task and every other caller awaits that same task, so concurrent
load produces exactly one round trip to the auth endpoint. The task reference
is cleared on success and on failure, so a failed refresh never wedges later
callers.

Usage:
------
    async with SessionAuthClient(api_key, auto_refresh_token=True) as tiles:
        response = await tiles.fetch("https://tile.googleapis.com/v1/2dtiles/0/0/0")
"""

import asyncio
import logging
from typing import Any, Dict, Optional, Union

import httpx

from ..config import Settings
from ..models import AuthEndpointKind, SessionOptions
from .utils import apply_credentials, get_session_token, route_through_proxy

logger = logging.getLogger(__name__)


MAP_TILES_SESSION_URL = "https://tile.googleapis.com/v1/createSession"
TILES_3D_ROOT_URL = "https://tile.googleapis.com/v1/3dtiles/root.json"

AUTH_URLS = {
    AuthEndpointKind.MAP_TILES_2D: MAP_TILES_SESSION_URL,
    AuthEndpointKind.TILES_3D: TILES_3D_ROOT_URL,
}


# =============================================================================
# Exceptions
# =============================================================================

class SessionAuthError(Exception):
    """Raised when the provider refuses to issue a session token."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


# =============================================================================
# Client
# =============================================================================

class SessionAuthClient:
    """
    Fetch client that authenticates every request against the tile provider.

    Attributes:
        api_key: Long-lived provider API key
        endpoint_kind: Which session endpoint this client uses
        session_token: Current session token (None until established)
        session_options: Body of the 2D createSession request
        auto_refresh_token: Refresh and retry once on a 4xx response
        proxy_url: Optional endpoint that wraps every call as ?url=<real url>
    """

    def __init__(
        self,
        api_key: str,
        endpoint_kind: AuthEndpointKind = AuthEndpointKind.MAP_TILES_2D,
        session_options: Optional[Union[SessionOptions, Dict[str, Any]]] = None,
        auto_refresh_token: bool = False,
        proxy_url: Optional[str] = None,
        auth_url: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        if not api_key:
            raise ValueError("api_key is required")

        self.api_key = api_key
        self.endpoint_kind = AuthEndpointKind(endpoint_kind)
        self.session_options = session_options
        self.auto_refresh_token = auto_refresh_token
        self.proxy_url = proxy_url
        self.auth_url = auth_url or AUTH_URLS[self.endpoint_kind]
        self.session_token: Optional[str] = None

        self._refresh_task: Optional[asyncio.Task] = None
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient()

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        endpoint_kind: AuthEndpointKind = AuthEndpointKind.MAP_TILES_2D,
        **kwargs: Any,
    ) -> "SessionAuthClient":
        """
        Build a client from the TILES_* settings.

        Raises:
            ValueError: If TILES_API_KEY is not configured
        """
        if not settings.TILES_API_KEY:
            raise ValueError("TILES_API_KEY is not configured")

        kwargs.setdefault("auto_refresh_token", settings.TILES_AUTO_REFRESH)
        kwargs.setdefault("proxy_url", settings.TILES_PROXY_URL)
        return cls(settings.TILES_API_KEY, endpoint_kind=endpoint_kind, **kwargs)

    @property
    def is_map_tiles_session(self) -> bool:
        return self.endpoint_kind is AuthEndpointKind.MAP_TILES_2D

    @property
    def refresh_in_flight(self) -> bool:
        return self._refresh_task is not None

    # -------------------------------------------------------------------------
    # Fetch
    # -------------------------------------------------------------------------

    async def fetch(
        self,
        url: str,
        method: str = "GET",
        headers: Optional[Dict[str, str]] = None,
        **kwargs: Any,
    ) -> httpx.Response:
        """
        Send an authenticated request to the tile provider.

        Flow:
        1. 2D sessions without a token refresh first (joining any refresh
           already in flight)
        2. Apply key/session parameters, wrap through proxy_url if configured
        3. On a 4xx with auto_refresh_token, refresh once and resend once
        4. 3D sessions without a token read it from the first successful body

        Args:
            url: Provider URL to fetch
            method: HTTP method
            headers: Extra request headers (also forwarded to the auth call)
            **kwargs: Passed through to httpx.AsyncClient.request

        Returns:
            The provider response (body already read)

        Raises:
            SessionAuthError: If a required refresh fails
            httpx.HTTPError: On transport failures of the data request
        """
        if self.session_token is None and self.is_map_tiles_session:
            await self.refresh_token(headers=headers)
        elif self._refresh_task is not None:
            await asyncio.shield(self._refresh_task)

        target = apply_credentials(url, self.api_key, self.session_token)
        response = await self._client.request(
            method,
            route_through_proxy(target, self.proxy_url),
            headers=headers,
            **kwargs,
        )

        if response.is_client_error and self.auto_refresh_token:
            logger.info(
                "Tile request rejected, refreshing session and retrying once",
                extra={"status_code": response.status_code},
            )
            await self.refresh_token(headers=headers)

            target = apply_credentials(url, self.api_key, self.session_token)
            response = await self._client.request(
                method,
                route_through_proxy(target, self.proxy_url),
                headers=headers,
                **kwargs,
            )

        if (
            self.session_token is None
            and not self.is_map_tiles_session
            and response.is_success
        ):
            # 3D tiles hand out the session inside the first root tileset
            try:
                self.session_token = get_session_token(response.json())
            except ValueError:
                logger.debug("First 3D tiles response is not JSON, session not set")

        return response

    # -------------------------------------------------------------------------
    # Token Refresh
    # -------------------------------------------------------------------------

    async def refresh_token(self, headers: Optional[Dict[str, str]] = None) -> Any:
        """
        Fetch a new session token, joining any refresh already in flight.

        Returns:
            Decoded auth endpoint response

        Raises:
            SessionAuthError: If the auth endpoint fails or answers non-2xx
        """
        if self._refresh_task is None:
            self._refresh_task = asyncio.create_task(self._perform_refresh(headers))

        # shield: a cancelled caller must not cancel the shared refresh
        return await asyncio.shield(self._refresh_task)

    async def _perform_refresh(self, headers: Optional[Dict[str, str]]) -> Any:
        try:
            auth_url = httpx.URL(self.auth_url).copy_set_param("key", self.api_key)
            request_headers = dict(headers or {})
            request_kwargs: Dict[str, Any] = {}

            if self.is_map_tiles_session:
                method = "POST"
                request_headers["Content-Type"] = "application/json"
                request_kwargs["json"] = self._session_request_body()
            else:
                method = "GET"

            logger.debug(
                "Refreshing tile session",
                extra={"endpoint_kind": self.endpoint_kind.value},
            )

            try:
                response = await self._client.request(
                    method,
                    route_through_proxy(auth_url, self.proxy_url),
                    headers=request_headers,
                    **request_kwargs,
                )
            except httpx.HTTPError as e:
                logger.error(f"Session refresh request failed: {e}")
                raise SessionAuthError(f"Session refresh request failed: {e}") from e

            if not response.is_success:
                logger.error(
                    f"Session refresh rejected with status {response.status_code}"
                )
                raise SessionAuthError(
                    f"Failed to load session with error code {response.status_code}",
                    status_code=response.status_code,
                )

            try:
                payload = response.json()
            except ValueError as e:
                raise SessionAuthError("Session endpoint returned invalid JSON") from e

            self.session_token = get_session_token(payload)
            logger.info(
                "Tile session refreshed",
                extra={"has_token": self.session_token is not None},
            )
            return payload
        finally:
            self._refresh_task = None

    def _session_request_body(self) -> Optional[Dict[str, Any]]:
        if isinstance(self.session_options, SessionOptions):
            return self.session_options.to_request_body()
        return self.session_options

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def aclose(self) -> None:
        """Close the underlying HTTP client if this instance created it."""
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "SessionAuthClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()
