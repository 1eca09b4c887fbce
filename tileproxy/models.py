"""
Shared Data Models
==================

Enums and Pydantic models shared by the session-authenticated tile client
and the caching proxy.
"""

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class AuthEndpointKind(str, Enum):
    """Which provider session endpoint a SessionAuthClient talks to."""

    MAP_TILES_2D = "map_tiles_2d"
    TILES_3D = "tiles_3d"


class AssetKind(str, Enum):
    """
    Cacheable upstream asset kinds.

    The value doubles as the path suffix used to classify a request.
    """

    MESH = "glb"
    MANIFEST = "json"


class SessionOptions(BaseModel):
    """
    Request body for a 2D map tiles createSession call.

    Only the commonly used fields are declared; anything else the provider
    accepts is passed through unchanged.
    """

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    map_type: str = Field(
        default="roadmap",
        alias="mapType",
        description="Base map type (roadmap, satellite, terrain, streetview)",
    )

    language: str = Field(
        default="en-US",
        description="IETF language tag for labels",
    )

    region: str = Field(
        default="US",
        description="CLDR region identifier",
    )

    image_format: Optional[str] = Field(
        default=None,
        alias="imageFormat",
        description="Tile image format (png or jpeg)",
    )

    scale: Optional[str] = Field(
        default=None,
        description="Label scale factor (scaleFactor1x, scaleFactor2x, scaleFactor4x)",
    )

    high_dpi: Optional[bool] = Field(
        default=None,
        alias="highDpi",
    )

    layer_types: Optional[List[str]] = Field(
        default=None,
        alias="layerTypes",
    )

    styles: Optional[List[Dict[str, Any]]] = None

    def to_request_body(self) -> Dict[str, Any]:
        """Serialize using the provider's camelCase field names."""
        return self.model_dump(by_alias=True, exclude_none=True)
