# tests/conftest.py
from __future__ import annotations

import json
from collections.abc import Callable

import httpx
import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from satellite_node.core.settings import Settings
from satellite_node.main import create_app
from satellite_node.runtime import SatelliteRuntime, build_runtime
from satellite_node.services.hub import HubConfig
from satellite_node.services.state_store import InMemoryStateStore

HUB_URL = "https://hub.example.com"
API_KEY = "secret123"


class FakeClock:
    """Manually advanced clock for TTL and window tests."""

    def __init__(self, start: float = 1_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_settings(**overrides: object) -> Settings:
    values: dict[str, object] = {
        "hub_url": HUB_URL,
        "hub_api_key": API_KEY,
        "satellite_name": "test-satellite",
        "satellite_type": "logistik",
        "satellite_url": "https://satellite.example.com",
        "auto_register": False,
        "rate_limit": 100,
        "redis_url": None,
    }
    values.update(overrides)
    return Settings(**values)


def json_response(payload: object, status_code: int = 200) -> httpx.Response:
    return httpx.Response(status_code, content=json.dumps(payload).encode("utf-8"),
                          headers={"Content-Type": "application/json"})


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def store(clock: FakeClock) -> InMemoryStateStore:
    return InMemoryStateStore(clock=clock)


@pytest.fixture()
def settings() -> Settings:
    return make_settings()


@pytest.fixture()
def hub_config() -> HubConfig:
    return HubConfig(
        hub_url=HUB_URL,
        api_key=API_KEY,
        satellite_name="test-satellite",
        satellite_type="logistik",
        satellite_version="1.0.0",
        timeout_seconds=5.0,
        retry_attempts=3,
        retry_delay_seconds=0.25,
        verify_ssl=True,
    )


@pytest.fixture()
def hub_requests() -> list[httpx.Request]:
    return []


@pytest.fixture()
def hub_handler() -> Callable[[httpx.Request], httpx.Response]:
    """Default hub behaviour: accept everything, assign an id on register."""

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/register"):
            return json_response({"satellite_id": "sat-42", "status": "registered"})
        return json_response({"status": "ok"})

    return handler


@pytest.fixture()
def hub_transport(
    hub_requests: list[httpx.Request],
    hub_handler: Callable[[httpx.Request], httpx.Response],
) -> httpx.MockTransport:
    def recording_handler(request: httpx.Request) -> httpx.Response:
        hub_requests.append(request)
        return hub_handler(request)

    return httpx.MockTransport(recording_handler)


@pytest.fixture()
def runtime(
    settings: Settings, store: InMemoryStateStore, hub_transport: httpx.MockTransport
) -> SatelliteRuntime:
    return build_runtime(settings, store=store, transport=hub_transport)


@pytest.fixture()
def app(runtime: SatelliteRuntime) -> FastAPI:
    return create_app(runtime=runtime)


@pytest.fixture()
def client(app: FastAPI) -> TestClient:
    # No context manager: background jobs and auto-registration stay off
    return TestClient(app)


@pytest.fixture()
def auth_headers() -> dict[str, str]:
    return {"Authorization": f"Bearer {API_KEY}"}
