"""Outbound client for the hub's satellite API.

This module provides the HubClient class that handles every call a satellite
makes to its hub. It includes:

- A single authenticated HTTP channel carrying the satellite's identity headers
- Bounded fixed-delay retries for must-succeed calls (register, health)
- Best-effort semantics for periodic pushes (metrics, sync)
- Dispatch of updates the hub returns in sync responses
- Per-endpoint call statistics for the status endpoint
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections import defaultdict
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

import httpx

from satellite_node.core.security import mask_secret
from satellite_node.core.settings import Settings

if TYPE_CHECKING:
    from satellite_node.services.updates import UpdateDispatcher

# Configure logger for this module
logger = logging.getLogger(__name__)

HUB_API_PATH = "/api/satellites"
HTTP_TOO_MANY_REQUESTS = 429
HTTP_INTERNAL_SERVER_ERROR = 500


class HubError(RuntimeError):
    """Base exception raised for hub-related failures."""


class HubConfigurationError(HubError):
    """Raised when the hub URL or credential is missing."""


class HubRequestError(HubError):
    """Raised when a single hub call fails.

    ``retryable`` is True for transport failures, timeouts, 429 and 5xx
    responses; any other error status is final.
    """

    def __init__(
        self, message: str, *, status_code: int | None = None, retryable: bool = False
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.retryable = retryable


class RegistrationError(HubError):
    """Raised when the hub does not accept a registration."""


class HealthCheckError(HubError):
    """Raised when the hub health call fails after all attempts."""


@dataclass
class HubCallMetrics:
    """Counters for calls made to the hub."""

    request_count: int = 0
    success_count: int = 0
    error_count: int = 0
    total_response_time: float = 0.0
    endpoint_counts: dict[str, int] = field(default_factory=lambda: defaultdict(int))
    error_counts_by_type: dict[str, int] = field(default_factory=lambda: defaultdict(int))
    last_error: str | None = None

    def record_request(
        self, endpoint: str, response_time: float, success: bool, error_type: str | None = None
    ) -> None:
        """Record a request metric."""
        self.request_count += 1
        self.total_response_time += response_time
        self.endpoint_counts[endpoint] += 1

        if success:
            self.success_count += 1
        else:
            self.error_count += 1
            if error_type:
                self.error_counts_by_type[error_type] += 1
                self.last_error = error_type

    def get_average_response_time(self) -> float:
        return self.total_response_time / self.request_count if self.request_count > 0 else 0.0

    def as_dict(self) -> dict[str, Any]:
        return {
            "request_count": self.request_count,
            "success_count": self.success_count,
            "error_count": self.error_count,
            "average_response_time": self.get_average_response_time(),
            "endpoint_counts": dict(self.endpoint_counts),
            "error_counts_by_type": dict(self.error_counts_by_type),
            "last_error": self.last_error,
        }


@dataclass(frozen=True)
class HubConfig:
    """Immutable configuration for hub calls."""

    hub_url: str
    api_key: str
    satellite_name: str
    satellite_type: str
    satellite_version: str
    timeout_seconds: float
    retry_attempts: int
    retry_delay_seconds: float
    verify_ssl: bool
    retry_best_effort: bool = False

    @property
    def base_url(self) -> str:
        return f"{self.hub_url.rstrip('/')}{HUB_API_PATH}"


@dataclass(frozen=True)
class RegistrationResult:
    """What the hub answered to a registration."""

    satellite_id: str | None
    status: str
    payload: Mapping[str, Any]


def load_hub_config(settings: Settings) -> HubConfig:
    """Build the hub configuration, failing loudly if the hub is not configured."""
    missing = [
        name
        for name, value in (("HUB_URL", settings.hub_url), ("HUB_API_KEY", settings.hub_api_key))
        if not value
    ]
    if missing:
        raise HubConfigurationError(
            f"Hub connection is not configured; set {', '.join(missing)}"
        )

    return HubConfig(
        hub_url=settings.hub_url or "",
        api_key=settings.hub_api_key or "",
        satellite_name=settings.satellite_name,
        satellite_type=settings.satellite_type,
        satellite_version=settings.satellite_version,
        timeout_seconds=float(settings.hub_timeout),
        retry_attempts=max(1, settings.hub_retry_attempts),
        retry_delay_seconds=max(0, settings.hub_retry_delay) / 1000.0,
        verify_ssl=settings.verify_ssl,
        retry_best_effort=settings.hub_retry_best_effort,
    )


def encode_payload(payload: Mapping[str, Any]) -> bytes:
    """Serialize a hub payload; dates, decimals and UUIDs become strings."""
    return json.dumps(payload, default=str).encode("utf-8")


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class HubClient:
    """HTTP client wrapper for the hub's satellite API."""

    def __init__(
        self,
        config: HubConfig,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        dispatcher: UpdateDispatcher | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.config = config
        self.dispatcher = dispatcher
        self._transport = transport
        self._sleep = sleep
        self._client: httpx.AsyncClient | None = None
        self._client_lock = asyncio.Lock()
        self._metrics = HubCallMetrics()

    async def _ensure_client(self) -> httpx.AsyncClient:
        async with self._client_lock:
            if self._client is None:
                self._client = httpx.AsyncClient(
                    base_url=self.config.base_url,
                    timeout=httpx.Timeout(self.config.timeout_seconds),
                    verify=self.config.verify_ssl,
                    headers=self._build_headers(),
                    transport=self._transport,
                )
                logger.debug(
                    "Opened hub channel to %s (key=%s)",
                    self.config.base_url,
                    mask_secret(self.config.api_key),
                )
        return self._client

    def _build_headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.config.api_key}",
            "Accept": "application/json",
            "Content-Type": "application/json",
            "User-Agent": f"satellite-node/{self.config.satellite_version}",
            "X-Satellite-Name": self.config.satellite_name,
            "X-Satellite-Type": self.config.satellite_type,
        }

    async def _post(self, path: str, payload: Mapping[str, Any]) -> httpx.Response:
        """Make one POST attempt and classify any failure."""
        client = await self._ensure_client()
        endpoint = f"POST {path}"
        start_time = time.monotonic()
        success = False
        error_type: str | None = None

        try:
            try:
                body = encode_payload(payload)
            except (TypeError, ValueError) as exc:
                error_type = "encoding_error"
                raise HubRequestError(f"Could not encode payload for {path}: {exc}") from exc
            response = await client.post(path, content=body)
            if response.status_code >= HTTP_INTERNAL_SERVER_ERROR or (
                response.status_code == HTTP_TOO_MANY_REQUESTS
            ):
                error_type = f"http_{response.status_code}"
                raise HubRequestError(
                    f"Hub responded with {response.status_code} for {path}",
                    status_code=response.status_code,
                    retryable=True,
                )
            if response.is_error:
                error_type = f"http_{response.status_code}"
                raise HubRequestError(
                    f"Hub rejected {path} with {response.status_code}",
                    status_code=response.status_code,
                )
            success = True
            return response
        except httpx.TimeoutException as exc:
            error_type = "timeout"
            raise HubRequestError(f"Hub request to {path} timed out", retryable=True) from exc
        except httpx.HTTPError as exc:
            error_type = "network_error"
            raise HubRequestError(f"Hub request to {path} failed: {exc}", retryable=True) from exc
        finally:
            self._metrics.record_request(
                endpoint, time.monotonic() - start_time, success, error_type
            )

    async def _post_with_retry(
        self, path: str, payload: Mapping[str, Any], attempts: int
    ) -> httpx.Response:
        """POST with up to ``attempts`` tries and a fixed delay between them."""
        attempts = max(1, attempts)
        for attempt in range(1, attempts + 1):
            try:
                return await self._post(path, payload)
            except HubRequestError as exc:
                if not exc.retryable or attempt >= attempts:
                    raise
                logger.warning(
                    "Hub call %s failed (attempt %d/%d): %s; retrying in %.2fs",
                    path,
                    attempt,
                    attempts,
                    exc,
                    self.config.retry_delay_seconds,
                )
                await self._sleep(self.config.retry_delay_seconds)
        raise HubRequestError(f"Hub call {path} was not attempted")  # pragma: no cover

    @property
    def _best_effort_attempts(self) -> int:
        return self.config.retry_attempts if self.config.retry_best_effort else 1

    async def register(self, descriptor: Mapping[str, Any]) -> RegistrationResult:
        """Register this satellite with the hub.

        Raises:
            RegistrationError: If the hub cannot be reached after all attempts,
                rejects the registration, or answers with a malformed body.
        """
        try:
            response = await self._post_with_retry(
                "/register", descriptor, self.config.retry_attempts
            )
        except HubRequestError as exc:
            logger.error("Satellite registration failed: %s", exc)
            raise RegistrationError(f"Registration failed: {exc}") from exc

        try:
            body = response.json()
        except ValueError as exc:
            raise RegistrationError("Registration response was not valid JSON") from exc
        if not isinstance(body, Mapping):
            raise RegistrationError("Registration response was not a JSON object")

        satellite_id = body.get("satellite_id") or body.get("id")
        result = RegistrationResult(
            satellite_id=str(satellite_id) if satellite_id is not None else None,
            status=str(body.get("status", "registered")),
            payload=body,
        )
        logger.info(
            "Satellite %s registered with hub (id=%s)",
            self.config.satellite_name,
            result.satellite_id,
        )
        return result

    async def send_metrics(self, metrics: Mapping[str, Any]) -> bool:
        """Push a metrics snapshot. Returns False instead of raising on failure."""
        payload = {
            "satellite_name": self.config.satellite_name,
            "timestamp": _utc_now_iso(),
            "metrics": dict(metrics),
        }
        try:
            await self._post_with_retry("/metrics", payload, self._best_effort_attempts)
        except HubError as exc:
            logger.warning("Failed to send metrics to hub: %s", exc)
            return False
        return True

    async def sync_data(self, records: Sequence[Any], dataset: str) -> bool:
        """Push one chunk of a dataset.

        Returns False instead of raising on failure. Updates carried in the
        hub's response are dispatched locally.
        """
        payload = {
            "type": dataset,
            "data": list(records),
            "timestamp": _utc_now_iso(),
        }
        try:
            response = await self._post_with_retry("/sync", payload, self._best_effort_attempts)
        except HubError as exc:
            logger.warning("Failed to sync %s with hub: %s", dataset, exc)
            return False

        await self._dispatch_response_updates(response, dataset)
        return True

    async def _dispatch_response_updates(self, response: httpx.Response, dataset: str) -> None:
        if self.dispatcher is None or not response.content:
            return
        try:
            body = response.json()
        except ValueError:
            logger.debug("Sync response for %s carried no JSON body", dataset)
            return
        if not isinstance(body, Mapping):
            return

        updates = body.get("updates")
        if not updates:
            return
        if not isinstance(updates, list):
            logger.warning("Ignoring malformed updates list in sync response for %s", dataset)
            return

        outcomes = await asyncio.to_thread(self.dispatcher.dispatch, updates)
        failed = sum(1 for outcome in outcomes if not outcome.ok)
        logger.info(
            "Applied %d hub update(s) from %s sync (%d failed)", len(outcomes), dataset, failed
        )

    async def health_check(
        self, checks: Mapping[str, Any] | None = None, *, status: str = "healthy"
    ) -> dict[str, Any]:
        """Report local health to the hub and return its answer.

        Raises:
            HealthCheckError: If the hub cannot be reached after all attempts.
        """
        payload = {
            "satellite_name": self.config.satellite_name,
            "status": status,
            "timestamp": _utc_now_iso(),
            "checks": dict(checks or {}),
        }
        try:
            response = await self._post_with_retry(
                "/health", payload, self.config.retry_attempts
            )
        except HubRequestError as exc:
            logger.error("Hub health check failed: %s", exc)
            raise HealthCheckError(f"Health check failed: {exc}") from exc

        try:
            body = response.json()
        except ValueError:
            body = {}
        return body if isinstance(body, dict) else {"response": body}

    def get_metrics(self) -> dict[str, Any]:
        """Return call statistics for the status endpoint."""
        return self._metrics.as_dict()

    async def close(self) -> None:
        """Clean up underlying HTTP client resources."""

        async with self._client_lock:
            if self._client is not None:
                await self._client.aclose()
                self._client = None
