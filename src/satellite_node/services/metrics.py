"""Local metrics collection and the periodic push to the hub."""

from __future__ import annotations

import asyncio
import logging
import os
import platform
import shutil
import socket
import time
from collections.abc import Callable
from typing import Any, Protocol

from satellite_node.services.hub import HubClient
from satellite_node.services.state_store import StateStore

logger = logging.getLogger(__name__)

METRICS_CHECKPOINT_KEY = "checkpoint:metrics"


class MetricsCollector(Protocol):
    def collect(self) -> dict[str, Any]:
        ...


class SystemMetricsCollector:
    """Host-level metrics plus any gauges registered by the embedding app."""

    def __init__(self, storage_path: str = ".", started_at: float | None = None) -> None:
        self.storage_path = storage_path
        self.started_at = started_at if started_at is not None else time.time()
        self._gauges: dict[str, Callable[[], Any]] = {}

    def add_gauge(self, name: str, func: Callable[[], Any]) -> None:
        self._gauges[name] = func

    def collect(self) -> dict[str, Any]:
        metrics: dict[str, Any] = {
            "system": {
                "hostname": socket.gethostname(),
                "platform": platform.platform(),
                "python_version": platform.python_version(),
                "pid": os.getpid(),
                "uptime_seconds": round(time.time() - self.started_at, 3),
            },
        }
        if hasattr(os, "getloadavg"):
            metrics["system"]["load_average"] = list(os.getloadavg())

        try:
            usage = shutil.disk_usage(self.storage_path)
        except OSError as exc:
            logger.warning("Could not read disk usage for %s: %s", self.storage_path, exc)
        else:
            metrics["disk"] = {
                "total": usage.total,
                "used": usage.used,
                "free": usage.free,
                "percent": round(usage.used / usage.total * 100, 2) if usage.total else 0.0,
            }

        gauges: dict[str, Any] = {}
        for name, func in self._gauges.items():
            try:
                gauges[name] = func()
            except Exception as exc:
                logger.warning("Gauge %s failed: %s", name, exc)
                gauges[name] = None
        if gauges:
            metrics["gauges"] = gauges
        return metrics


class MetricsReporter:
    """Collect metrics and push them to the hub, best-effort."""

    def __init__(
        self,
        collector: MetricsCollector,
        hub: HubClient,
        store: StateStore,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.collector = collector
        self.hub = hub
        self.store = store
        self._clock = clock

    def collect(self) -> dict[str, Any]:
        return self.collector.collect()

    def last_pushed_at(self) -> float | None:
        return self.store.get_timestamp(METRICS_CHECKPOINT_KEY)

    async def push(self) -> bool:
        """Send one snapshot; on acknowledgement, advance the metrics checkpoint."""
        collected_at = self._clock()
        metrics = self.collect()
        if not await self.hub.send_metrics(metrics):
            return False
        await asyncio.to_thread(self.store.advance, METRICS_CHECKPOINT_KEY, collected_at)
        logger.debug("Metrics pushed to hub")
        return True
