# src/satellite_node/api/v1/__init__.py
"""Version 1 API endpoints."""

from .endpoints import satellite_router

__all__ = [
    "satellite_router",
]
