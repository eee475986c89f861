# src/satellite_node/schemas/__init__.py
"""
Pydantic schemas for API request models.
"""

from .satellite import CacheClearRequest, CommandRequest, UpdatesRequest

__all__ = [
    "CacheClearRequest",
    "CommandRequest",
    "UpdatesRequest",
]
