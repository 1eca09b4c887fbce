"""
Tile Proxy
==========

Session-authenticated tile provider client and a local caching proxy for
immutable tile assets (tileset manifests and binary meshes).
"""

__version__ = "1.0.0"
