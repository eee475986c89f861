"""Apply update records pushed by the hub.

Records arrive either inside a sync response or through ``POST /updates``.
Each record is handled on its own: an unknown type or bad payload becomes an
:class:`Err` in the batch result and the remaining records still run.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from typing import Any

from satellite_node.services.outcomes import Err, Ok, Outcome
from satellite_node.services.state_store import StateStore

logger = logging.getLogger(__name__)

CONFIG_OVERRIDE_PREFIX = "config:override:"
DEFAULT_CACHE_TAGS = ("satellite", "sync", "hub")

UpdateHandler = Callable[[Mapping[str, Any]], Any]


@dataclass(frozen=True)
class UpdateOutcome:
    """Result of applying one update record."""

    type: str
    outcome: Outcome

    @property
    def ok(self) -> bool:
        return self.outcome.ok

    def as_dict(self) -> dict[str, Any]:
        if isinstance(self.outcome, Ok):
            return {"type": self.type, "success": True, "result": self.outcome.value}
        return {"type": self.type, "success": False, "error": self.outcome.reason}


class UpdateDispatcher:
    """Route update records to handlers by exact type name."""

    def __init__(self, store: StateStore, *, cache_ttl: int | None = None) -> None:
        self.store = store
        self.cache_ttl = cache_ttl
        self._handlers: dict[str, UpdateHandler] = {
            "config_update": self._apply_config_update,
            "cache_clear": self._apply_cache_clear,
            "tenant_update": self._acknowledge("tenant"),
            "user_update": self._acknowledge("user"),
        }

    @property
    def supported_types(self) -> list[str]:
        return sorted(self._handlers)

    def register(self, update_type: str, handler: UpdateHandler) -> None:
        """Add or replace the handler for ``update_type``."""
        self._handlers[update_type] = handler

    def dispatch(self, updates: Iterable[Any]) -> list[UpdateOutcome]:
        """Apply every record and return one outcome per record, in order."""
        outcomes = [self._dispatch_one(record) for record in updates]
        failures = [outcome for outcome in outcomes if not outcome.ok]
        if failures:
            logger.warning(
                "%d of %d update(s) failed: %s",
                len(failures),
                len(outcomes),
                ", ".join(f"{item.type}: {item.as_dict()['error']}" for item in failures),
            )
        return outcomes

    def _dispatch_one(self, record: Any) -> UpdateOutcome:
        if not isinstance(record, Mapping):
            return UpdateOutcome("unknown", Err("update record must be an object"))

        update_type = record.get("type")
        if not isinstance(update_type, str) or not update_type:
            return UpdateOutcome("unknown", Err("update record has no type"))

        handler = self._handlers.get(update_type)
        if handler is None:
            return UpdateOutcome(update_type, Err(f"unknown update type: {update_type}"))

        data = record.get("data") or {}
        if not isinstance(data, Mapping):
            return UpdateOutcome(update_type, Err("update data must be an object"))

        try:
            return UpdateOutcome(update_type, Ok(handler(data)))
        except Exception as exc:
            logger.error("Update handler for %s failed: %s", update_type, exc, exc_info=True)
            return UpdateOutcome(update_type, Err(str(exc) or exc.__class__.__name__))

    def config_override(self, key: str) -> Any | None:
        """Return a runtime override previously pushed by the hub."""
        return self.store.get_json(f"{CONFIG_OVERRIDE_PREFIX}{key}")

    def _apply_config_update(self, data: Mapping[str, Any]) -> dict[str, Any]:
        key = data.get("key")
        if not isinstance(key, str) or not key:
            raise ValueError("config_update requires a non-empty 'key'")
        if "value" not in data:
            raise ValueError("config_update requires a 'value'")

        self.store.set_json(f"{CONFIG_OVERRIDE_PREFIX}{key}", data["value"], tags=("config",))
        logger.info("Stored configuration override for %s", key)
        return {"key": key, "updated": True}

    def _apply_cache_clear(self, data: Mapping[str, Any]) -> dict[str, Any]:
        return clear_cache(
            self.store,
            tags=data.get("tags"),
            keys=data.get("keys"),
            clear_all=bool(data.get("all")),
        )

    @staticmethod
    def _acknowledge(entity: str) -> UpdateHandler:
        def handler(data: Mapping[str, Any]) -> dict[str, Any]:
            logger.info("Received %s update for %s", entity, data.get("id", "<no id>"))
            return {"acknowledged": True, "entity": entity, "id": data.get("id")}

        return handler


def clear_cache(
    store: StateStore,
    *,
    tags: Iterable[str] | None = None,
    keys: Iterable[str] | None = None,
    clear_all: bool = False,
) -> dict[str, Any]:
    """Clear cache entries by tag, by key, or entirely.

    With no selector the default satellite tags are flushed.
    """
    if clear_all:
        store.flush()
        logger.info("Flushed the entire satellite cache")
        return {"cleared": "all"}

    if keys:
        key_list = [str(key) for key in keys]
        removed = store.delete(*key_list)
        return {"cleared": "keys", "keys": key_list, "removed": removed}

    tag_list = [str(tag) for tag in tags] if tags else list(DEFAULT_CACHE_TAGS)
    removed = store.flush_tags(tag_list)
    return {"cleared": "tags", "tags": tag_list, "removed": removed}
