"""Request bodies accepted by the satellite API."""
from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field


class CommandRequest(BaseModel):
    """A remote command and its parameters."""

    command: str = Field(..., min_length=1, description="Allow-listed command name.")
    parameters: dict[str, Any] = Field(default_factory=dict)


class UpdatesRequest(BaseModel):
    """Update records pushed by the hub.

    Records stay untyped so that malformed entries reach the dispatcher and
    are reported per record instead of failing the whole request.
    """

    updates: list[Any] = Field(default_factory=list)


class CacheClearRequest(BaseModel):
    """Selector for ``DELETE /cache``; with no selector the default tags are flushed."""

    tags: list[str] | None = None
    keys: list[str] | None = None
    all: bool = False
