"""Satellite registration with the hub.

Registration is idempotent within a 24-hour window: once the hub accepted a
descriptor, further attempts are skipped until the stored timestamp is stale
or the caller forces a new registration.
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from collections.abc import Callable
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

from satellite_node.core.security import fingerprint
from satellite_node.core.settings import Settings
from satellite_node.services.hub import HubClient, HubError, RegistrationResult
from satellite_node.services.state_store import StateStore, StateStoreError

logger = logging.getLogger(__name__)

REGISTRATION_STATE_KEY = "registration:state"
REGISTRATION_LOCK_KEY = "lock:registration"
REGISTRATION_TTL = timedelta(hours=24)

BASE_CAPABILITIES = (
    "tenant_management",
    "user_sync",
    "metrics_reporting",
    "health_monitoring",
    "remote_commands",
    "cache_management",
    "sync_support",
)

TYPE_CAPABILITIES: dict[str, tuple[str, ...]] = {
    "logistik": ("order_management", "shipping_tracking"),
    "vinci": ("broker_management", "job_tracking"),
    "pixel": ("qr_generation", "scan_tracking"),
}


def capabilities_for(settings: Settings) -> list[str]:
    """Return the capability flags advertised for this satellite."""
    capabilities = list(BASE_CAPABILITIES)
    capabilities.extend(TYPE_CAPABILITIES.get(settings.satellite_type, ()))
    return capabilities


def build_descriptor(settings: Settings) -> dict[str, Any]:
    """Build the registration payload sent to the hub."""
    base_url = settings.satellite_url.rstrip("/")
    api_prefix = "/" + settings.api_prefix.strip("/")
    return {
        "name": settings.satellite_name,
        "type": settings.satellite_type,
        "version": settings.satellite_version,
        "url": settings.satellite_url,
        "api_endpoint": f"{base_url}{api_prefix}",
        "health_endpoint": f"{base_url}{api_prefix}/health",
        "metrics_enabled": settings.metrics_enabled,
        "sync_enabled": settings.sync_enabled,
        "capabilities": capabilities_for(settings),
    }


def descriptor_hash(descriptor: dict[str, Any]) -> str:
    return fingerprint(json.dumps(descriptor, sort_keys=True).encode("utf-8"))


@dataclass(frozen=True)
class RegistrationState:
    """What the satellite remembers about its last registration."""

    last_registered_at: datetime | None = None
    satellite_id: str | None = None
    status: str | None = None
    payload_hash: str | None = None

    def should_register(self, now: datetime, *, force: bool = False) -> bool:
        """True when forced, never registered, or the last registration is 24h old."""
        if force or self.last_registered_at is None:
            return True
        return now - self.last_registered_at >= REGISTRATION_TTL

    def to_record(self) -> dict[str, Any]:
        record = asdict(self)
        if self.last_registered_at is not None:
            record["last_registered_at"] = self.last_registered_at.isoformat()
        return record

    @classmethod
    def from_record(cls, record: Any) -> RegistrationState:
        if not isinstance(record, dict):
            return cls()
        registered_at = None
        raw = record.get("last_registered_at")
        if isinstance(raw, str):
            try:
                registered_at = datetime.fromisoformat(raw)
            except ValueError:
                logger.warning("Ignoring unparseable registration timestamp %r", raw)
            else:
                if registered_at.tzinfo is None:
                    registered_at = registered_at.replace(tzinfo=timezone.utc)
        return cls(
            last_registered_at=registered_at,
            satellite_id=record.get("satellite_id"),
            status=record.get("status"),
            payload_hash=record.get("payload_hash"),
        )


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class RegistrationService:
    """Decide when to register and persist the hub's answer."""

    def __init__(
        self,
        settings: Settings,
        hub: HubClient,
        store: StateStore,
        *,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.settings = settings
        self.hub = hub
        self.store = store
        self._clock = clock

    def state(self) -> RegistrationState:
        return RegistrationState.from_record(self.store.get_json(REGISTRATION_STATE_KEY))

    def should_register(self, force: bool = False) -> bool:
        return self.state().should_register(self._clock(), force=force)

    def descriptor(self) -> dict[str, Any]:
        return build_descriptor(self.settings)

    def _lock_ttl(self) -> int:
        config = self.hub.config
        per_attempt = config.timeout_seconds + config.retry_delay_seconds
        return int(per_attempt * config.retry_attempts) + 1

    async def register_satellite(self, force: bool = False) -> RegistrationResult | None:
        """Register with the hub unless a recent registration is still valid.

        The staleness check runs again once the lock is held, so a worker that
        waited on another worker's registration does not register twice.

        Returns:
            The hub's answer, or None when registration was not needed or
            another worker is registering right now.

        Raises:
            RegistrationError: If the hub call fails.
        """
        if not await asyncio.to_thread(self.should_register, force):
            logger.info("Satellite registration is current; skipping")
            return None

        token = uuid.uuid4().hex
        if not await asyncio.to_thread(
            self.store.add, REGISTRATION_LOCK_KEY, token, ttl=self._lock_ttl()
        ):
            logger.info("Registration already in progress elsewhere; skipping")
            return None

        try:
            if not await asyncio.to_thread(self.should_register, force):
                logger.info("Satellite was registered while waiting for the lock; skipping")
                return None

            descriptor = self.descriptor()
            result = await self.hub.register(descriptor)
            state = RegistrationState(
                last_registered_at=self._clock(),
                satellite_id=result.satellite_id,
                status=result.status,
                payload_hash=descriptor_hash(descriptor),
            )
            await asyncio.to_thread(self.store.set_json, REGISTRATION_STATE_KEY, state.to_record())
            return result
        finally:
            await asyncio.to_thread(self.store.delete_if_equals, REGISTRATION_LOCK_KEY, token)

    async def auto_register(self) -> None:
        """Boot-time registration; failures are logged, never raised."""
        try:
            await self.register_satellite()
        except (HubError, StateStoreError) as exc:
            logger.warning("Automatic satellite registration failed: %s", exc)
