"""Assembly of the satellite's services.

Everything the HTTP layer, the scheduler and the CLI need is built once here
from an immutable :class:`Settings` object and handed around explicitly.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

import httpx

from satellite_node.core.settings import Settings
from satellite_node.services.auth_gate import AuthGate
from satellite_node.services.commands import CommandRunner
from satellite_node.services.health import HealthCheck, HealthService
from satellite_node.services.hub import HubClient, HubConfigurationError, load_hub_config
from satellite_node.services.metrics import MetricsCollector, MetricsReporter, SystemMetricsCollector
from satellite_node.services.rate_limit import FixedWindowRateLimiter
from satellite_node.services.registration import RegistrationService, capabilities_for
from satellite_node.services.scheduler import JobScheduler
from satellite_node.services.state_store import RedisStateStore, StateStore, build_state_store
from satellite_node.services.sync import LAST_SYNC_KEY, DatasetSource, SyncOrchestrator
from satellite_node.services.updates import UpdateDispatcher

logger = logging.getLogger(__name__)

SYNC_JOB = "sync"
METRICS_JOB = "metrics"


@dataclass
class SatelliteRuntime:
    """Container for the services of one satellite process."""

    settings: Settings
    store: StateStore
    auth_gate: AuthGate
    health: HealthService
    collector: MetricsCollector
    dispatcher: UpdateDispatcher
    scheduler: JobScheduler
    commands: CommandRunner
    hub: HubClient | None = None
    registration: RegistrationService | None = None
    sync: SyncOrchestrator | None = None
    metrics: MetricsReporter | None = None
    started_at: float = field(default_factory=time.time)
    _auto_register_task: asyncio.Task[None] | None = field(default=None, repr=False)

    def require_hub(self) -> HubClient:
        if self.hub is None:
            raise HubConfigurationError("Hub connection is not configured")
        return self.hub

    async def start(self) -> None:
        """Start scheduled jobs and kick off auto-registration."""
        if (
            self.registration is not None
            and self.settings.auto_register
            and self.settings.sync_enabled
        ):
            self._auto_register_task = asyncio.create_task(self.registration.auto_register())
        await self.scheduler.start()

    async def stop(self) -> None:
        if self._auto_register_task is not None and not self._auto_register_task.done():
            self._auto_register_task.cancel()
            await asyncio.gather(self._auto_register_task, return_exceptions=True)
        self._auto_register_task = None
        await self.scheduler.stop()
        if self.hub is not None:
            await self.hub.close()
        if isinstance(self.store, RedisStateStore):
            self.store.close()

    async def run_sync_job(self) -> None:
        if self.sync is not None:
            await self.sync.run()

    async def run_metrics_job(self) -> None:
        if self.metrics is not None:
            await self.metrics.push()

    def info(self) -> dict[str, Any]:
        settings = self.settings
        return {
            "name": settings.satellite_name,
            "type": settings.satellite_type,
            "version": settings.satellite_version,
            "url": settings.satellite_url,
            "api_prefix": settings.api_prefix,
            "capabilities": capabilities_for(settings),
            "features": {
                "sync": settings.sync_enabled,
                "metrics": settings.metrics_enabled,
                "health": settings.health_enabled,
                "auto_register": settings.auto_register,
            },
        }

    def status(self) -> dict[str, Any]:
        registration = self.registration.state() if self.registration else None
        return {
            "satellite": {
                "name": self.settings.satellite_name,
                "type": self.settings.satellite_type,
                "version": self.settings.satellite_version,
            },
            "hub_configured": self.hub is not None,
            "registration": registration.to_record() if registration else None,
            "checkpoints": {
                "last_sync": self.store.get_timestamp(LAST_SYNC_KEY),
                "last_metrics": self.metrics.last_pushed_at() if self.metrics else None,
                "datasets": (
                    {name: self.sync.checkpoint(name) for name in self.sync.datasets}
                    if self.sync
                    else {}
                ),
            },
            "jobs": self.scheduler.status(),
            "hub_calls": self.hub.get_metrics() if self.hub else None,
            "uptime_seconds": round(time.time() - self.started_at, 3),
        }


def build_runtime(
    settings: Settings,
    *,
    store: StateStore | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
    sources: Iterable[DatasetSource] = (),
    collector: MetricsCollector | None = None,
    health_checks: Mapping[str, HealthCheck] | None = None,
) -> SatelliteRuntime:
    """Wire every service from ``settings``.

    Raises:
        HubConfigurationError: If sync or metrics are enabled but the hub URL
            or credential is missing.
    """
    store = store or build_state_store(settings.redis_url, settings.cache_prefix)
    rate_limiter = FixedWindowRateLimiter(store, settings.rate_limit)
    auth_gate = AuthGate(
        enabled=settings.enabled,
        api_key=settings.hub_api_key,
        rate_limiter=rate_limiter,
        ip_whitelist=settings.ip_whitelist_rules,
    )
    if not settings.ip_whitelist_rules:
        logger.info("No IP allowlist configured; authenticated callers are accepted from any IP")

    health = HealthService(store, checks=health_checks)
    collector = collector or SystemMetricsCollector()
    dispatcher = UpdateDispatcher(store, cache_ttl=settings.cache_ttl)
    scheduler = JobScheduler(store)

    hub: HubClient | None = None
    registration: RegistrationService | None = None
    sync: SyncOrchestrator | None = None
    metrics: MetricsReporter | None = None

    if settings.hub_configured:
        hub = HubClient(load_hub_config(settings), transport=transport, dispatcher=dispatcher)
        registration = RegistrationService(settings, hub, store)
        sync = SyncOrchestrator(hub, store, sources, batch_size=settings.sync_batch_size)
        metrics = MetricsReporter(collector, hub, store)
    elif settings.hub_required:
        # Surfaces the missing variable names
        load_hub_config(settings)
    else:
        logger.warning("Hub connection is not configured; outbound features are unavailable")

    commands = CommandRunner(
        store, health, hub=hub, sync=sync, metrics=metrics, registration=registration
    )
    runtime = SatelliteRuntime(
        settings=settings,
        store=store,
        auth_gate=auth_gate,
        health=health,
        collector=collector,
        dispatcher=dispatcher,
        scheduler=scheduler,
        commands=commands,
        hub=hub,
        registration=registration,
        sync=sync,
        metrics=metrics,
    )

    if settings.sync_enabled and sync is not None:
        scheduler.add_job(SYNC_JOB, settings.sync_interval, runtime.run_sync_job)
    if settings.metrics_enabled and metrics is not None:
        scheduler.add_job(METRICS_JOB, settings.metrics_interval, runtime.run_metrics_job)
    return runtime
