"""Remote commands the hub may ask a satellite to run."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Mapping
from typing import Any

from satellite_node.services.health import HealthService
from satellite_node.services.hub import HubClient, HubConfigurationError
from satellite_node.services.metrics import MetricsReporter
from satellite_node.services.registration import RegistrationService
from satellite_node.services.state_store import StateStore
from satellite_node.services.sync import SyncOrchestrator
from satellite_node.services.updates import clear_cache

logger = logging.getLogger(__name__)

ALLOWED_COMMANDS = (
    "satellite:sync",
    "satellite:metrics",
    "satellite:register",
    "satellite:health",
    "cache:clear",
)


class CommandNotAllowedError(ValueError):
    """Raised for commands outside the allow-list."""


CommandHandler = Callable[[Mapping[str, Any]], Awaitable[dict[str, Any]]]


class CommandRunner:
    """Execute allow-listed commands against the satellite's services.

    Hub-backed services are optional; commands that need a missing one fail
    with :class:`HubConfigurationError`.
    """

    def __init__(
        self,
        store: StateStore,
        health: HealthService,
        *,
        hub: HubClient | None = None,
        sync: SyncOrchestrator | None = None,
        metrics: MetricsReporter | None = None,
        registration: RegistrationService | None = None,
    ) -> None:
        self.store = store
        self.health = health
        self.hub = hub
        self.sync = sync
        self.metrics = metrics
        self.registration = registration
        self._handlers: dict[str, CommandHandler] = {
            "satellite:sync": self._sync,
            "satellite:metrics": self._metrics,
            "satellite:register": self._register,
            "satellite:health": self._health,
            "cache:clear": self._cache_clear,
        }

    async def run(self, command: str, parameters: Mapping[str, Any] | None = None) -> dict[str, Any]:
        if command not in ALLOWED_COMMANDS:
            raise CommandNotAllowedError(f"Command not allowed: {command}")
        logger.info("Executing remote command %s", command)
        return await self._handlers[command](parameters or {})

    @staticmethod
    def _require(component: Any, name: str) -> Any:
        if component is None:
            raise HubConfigurationError(f"{name} is unavailable: hub connection is not configured")
        return component

    async def _sync(self, parameters: Mapping[str, Any]) -> dict[str, Any]:
        sync: SyncOrchestrator = self._require(self.sync, "Sync")
        dataset = parameters.get("dataset") or parameters.get("type")
        result = await sync.run(dataset, dry_run=bool(parameters.get("dry_run", False)))
        return result.as_dict()

    async def _metrics(self, parameters: Mapping[str, Any]) -> dict[str, Any]:
        metrics: MetricsReporter = self._require(self.metrics, "Metrics reporting")
        return {"sent": await metrics.push()}

    async def _register(self, parameters: Mapping[str, Any]) -> dict[str, Any]:
        registration: RegistrationService = self._require(self.registration, "Registration")
        result = await registration.register_satellite(force=bool(parameters.get("force", False)))
        if result is None:
            return {"registered": False, "reason": "registration is current"}
        return {
            "registered": True,
            "satellite_id": result.satellite_id,
            "status": result.status,
        }

    async def _health(self, parameters: Mapping[str, Any]) -> dict[str, Any]:
        hub: HubClient = self._require(self.hub, "Hub health check")
        report = await asyncio.to_thread(self.health.run_checks)
        hub_answer = await hub.health_check(report["checks"], status=report["status"])
        return {"local": report, "hub": hub_answer}

    async def _cache_clear(self, parameters: Mapping[str, Any]) -> dict[str, Any]:
        return await asyncio.to_thread(
            clear_cache,
            self.store,
            tags=parameters.get("tags"),
            keys=parameters.get("keys"),
            clear_all=bool(parameters.get("all", False)),
        )
