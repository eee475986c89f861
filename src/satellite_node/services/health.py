"""Local health checks for the satellite's ``/health`` endpoint."""

from __future__ import annotations

import logging
import shutil
import time
import uuid
from collections.abc import Callable, Mapping
from typing import Any

from satellite_node.services.state_store import StateStore, StateStoreError

logger = logging.getLogger(__name__)

HEALTHY = "healthy"
DEGRADED = "degraded"
UNHEALTHY = "unhealthy"
WARNING = "warning"
STORAGE_WARNING_PERCENT = 90.0
PROBE_KEY_PREFIX = "health:probe:"

HealthCheck = Callable[[], Mapping[str, Any]]


class HealthService:
    """Run named checks and fold them into one status.

    The overall status is ``healthy`` only when every check reports healthy;
    any other individual result makes it ``degraded``.
    """

    def __init__(
        self,
        store: StateStore,
        *,
        storage_path: str = ".",
        checks: Mapping[str, HealthCheck] | None = None,
    ) -> None:
        self.store = store
        self.storage_path = storage_path
        self._checks: dict[str, HealthCheck] = {
            "cache": self.check_cache,
            "storage": self.check_storage,
        }
        self._checks.update(checks or {})

    def add_check(self, name: str, check: HealthCheck) -> None:
        self._checks[name] = check

    def check_cache(self) -> dict[str, Any]:
        key = f"{PROBE_KEY_PREFIX}{uuid.uuid4().hex}"
        try:
            self.store.set(key, "ok", ttl=10)
            value = self.store.get(key)
            self.store.delete(key)
        except StateStoreError as exc:
            return {"status": UNHEALTHY, "message": f"Cache unavailable: {exc}"}
        if value != "ok":
            return {"status": UNHEALTHY, "message": "Cache read-back mismatch"}
        return {"status": HEALTHY, "message": "Cache is working"}

    def check_storage(self) -> dict[str, Any]:
        try:
            usage = shutil.disk_usage(self.storage_path)
        except OSError as exc:
            return {"status": UNHEALTHY, "message": f"Storage unavailable: {exc}"}
        percent = round(usage.used / usage.total * 100, 2) if usage.total else 0.0
        status = WARNING if percent > STORAGE_WARNING_PERCENT else HEALTHY
        return {"status": status, "usage_percent": percent}

    def run_checks(self) -> dict[str, Any]:
        """Run every check; a check that raises is reported as unhealthy."""
        started = time.monotonic()
        results: dict[str, Any] = {}
        for name, check in self._checks.items():
            try:
                results[name] = dict(check())
            except Exception as exc:
                logger.warning("Health check %s raised: %s", name, exc)
                results[name] = {"status": UNHEALTHY, "message": str(exc)}

        overall = HEALTHY if all(r.get("status") == HEALTHY for r in results.values()) else DEGRADED
        return {
            "status": overall,
            "checks": results,
            "duration_ms": round((time.monotonic() - started) * 1000, 2),
        }
