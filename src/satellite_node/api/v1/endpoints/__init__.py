# src/satellite_node/api/v1/endpoints/__init__.py
"""API endpoint modules for version 1."""

from .satellite import router as satellite_router

__all__ = [
    "satellite_router",
]
