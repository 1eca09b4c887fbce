"""
Configuration module for the tile caching proxy.

This module uses Pydantic Settings to load and validate environment variables
for the proxy listener, the on-disk tile cache, the optional SOCKS tunnel used
for upstream HTTPS calls, and the session-authenticated tile client.

Environment variables are loaded from .env file or system environment.
"""

from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    """

    # =========================================================================
    # Proxy Server Configuration
    # =========================================================================

    HOST: str = Field(
        default="0.0.0.0",
        description="Host to bind the proxy server",
    )

    PORT: int = Field(
        default=8080,
        description="Port to bind the proxy server",
        ge=1,
        le=65535,
    )

    LOG_LEVEL: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )

    # =========================================================================
    # Tile Cache Configuration
    # =========================================================================

    CACHE_DIR: Path = Field(
        default=Path("tile-cache"),
        description="Directory holding one file per cached tile asset",
    )

    # =========================================================================
    # Upstream Configuration
    # =========================================================================

    SOCKS_PROXY: Optional[str] = Field(
        None,
        description="SOCKS tunnel for upstream HTTPS calls (e.g. socks5h://127.0.0.1:10808)",
    )

    UPSTREAM_TIMEOUT_SECONDS: float = Field(
        default=30.0,
        description="Timeout applied to upstream tile requests",
        gt=0,
    )

    # =========================================================================
    # Session-Authenticated Tile Client
    # =========================================================================

    TILES_API_KEY: Optional[str] = Field(
        None,
        description="Tile provider API key used by SessionAuthClient.from_settings",
    )

    TILES_AUTO_REFRESH: bool = Field(
        default=False,
        description="Refresh the session token and retry once on a 4xx response",
    )

    TILES_PROXY_URL: Optional[str] = Field(
        None,
        description="Endpoint that wraps provider calls as ?url=<real url> (e.g. http://localhost:8080/proxy)",
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # =========================================================================
    # Validators
    # =========================================================================

    @field_validator("LOG_LEVEL")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """
        Validate LOG_LEVEL is a standard logging level name.

        Raises:
            ValueError: If the level is unknown
        """
        allowed_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        level = v.strip().upper()
        if level not in allowed_levels:
            raise ValueError(
                f"LOG_LEVEL must be one of {allowed_levels}, got: {v}"
            )
        return level

    @field_validator("SOCKS_PROXY")
    @classmethod
    def validate_socks_proxy(cls, v: Optional[str]) -> Optional[str]:
        """
        Validate the SOCKS tunnel URL scheme.

        An empty string disables the tunnel.

        Raises:
            ValueError: If the URL is not a socks5/socks5h URL
        """
        if v is None or not v.strip():
            return None

        v = v.strip()
        scheme = v.split("://", 1)[0].lower() if "://" in v else ""
        if scheme not in ("socks5", "socks5h"):
            raise ValueError(
                f"Invalid SOCKS_PROXY: '{v}'. "
                "Expected format: 'socks5h://host:port'"
            )
        return v

    @field_validator("TILES_PROXY_URL")
    @classmethod
    def validate_proxy_url(cls, v: Optional[str]) -> Optional[str]:
        if v is None or not v.strip():
            return None
        return v.strip()


# =============================================================================
# Settings Singleton
# =============================================================================

@lru_cache()
def get_settings() -> Settings:
    """
    Get or create a singleton Settings instance.

    Cached so that the settings are loaded only once during the application
    lifecycle.

    Raises:
        ValidationError: If environment variables are invalid.
    """
    return Settings()
