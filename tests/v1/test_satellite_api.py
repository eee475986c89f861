"""Tests for the authenticated satellite endpoints."""

import httpx
import pytest
from fastapi import status
from fastapi.testclient import TestClient

from satellite_node.main import create_app
from satellite_node.runtime import SatelliteRuntime, build_runtime
from satellite_node.services.hub import HubConfigurationError
from satellite_node.services.state_store import InMemoryStateStore
from tests.conftest import API_KEY, json_response, make_settings

PREFIX = "/api/satellite"


def make_client(transport: httpx.MockTransport, **overrides: object) -> TestClient:
    runtime = build_runtime(make_settings(**overrides), store=InMemoryStateStore(), transport=transport)
    return TestClient(create_app(runtime=runtime))


def test_missing_key_is_rejected(client: TestClient) -> None:
    r = client.get(f"{PREFIX}/info")
    assert r.status_code == status.HTTP_401_UNAUTHORIZED
    assert r.json() == {"detail": {"error": "API key required", "reason": "missing_key"}}
    assert r.headers["WWW-Authenticate"] == "Bearer"


def test_wrong_key_is_rejected(client: TestClient) -> None:
    r = client.get(f"{PREFIX}/info", headers={"X-API-Key": "secret124"})
    assert r.status_code == status.HTTP_401_UNAUTHORIZED
    assert r.json()["detail"]["reason"] == "invalid_key"


@pytest.mark.parametrize(
    "kwargs",
    [
        {"headers": {"Authorization": f"Bearer {API_KEY}"}},
        {"headers": {"X-API-Key": API_KEY}},
        {"params": {"api_key": API_KEY}},
    ],
)
def test_every_credential_location_is_accepted(client: TestClient, kwargs: dict) -> None:
    r = client.get(f"{PREFIX}/info", **kwargs)
    assert r.status_code == status.HTTP_200_OK


def test_disabled_satellite_answers_503_before_auth(hub_transport: httpx.MockTransport) -> None:
    client = make_client(hub_transport, enabled=False)

    r = client.get(f"{PREFIX}/info")

    assert r.status_code == status.HTTP_503_SERVICE_UNAVAILABLE
    assert r.json()["detail"]["reason"] == "disabled"


def test_rate_limit_rejects_after_limit(
    hub_transport: httpx.MockTransport, auth_headers: dict[str, str]
) -> None:
    client = make_client(hub_transport, rate_limit=2)

    codes = [client.get(f"{PREFIX}/info", headers=auth_headers).status_code for _ in range(3)]

    assert codes == [200, 200, 429]
    r = client.get(f"{PREFIX}/info", headers=auth_headers)
    assert r.headers["Retry-After"] == "60"
    assert r.json()["detail"]["reason"] == "rate_limited"


def test_ip_allowlist_uses_forwarded_address_behind_trusted_proxy(
    hub_transport: httpx.MockTransport, auth_headers: dict[str, str]
) -> None:
    client = make_client(hub_transport, ip_whitelist="10.0.0.0/8, 192.168.1.5", trust_proxy_headers=True)

    inside = client.get(f"{PREFIX}/info", headers={**auth_headers, "X-Forwarded-For": "10.4.5.6, 1.1.1.1"})
    exact = client.get(f"{PREFIX}/info", headers={**auth_headers, "X-Forwarded-For": "192.168.1.5"})
    outside = client.get(f"{PREFIX}/info", headers={**auth_headers, "X-Forwarded-For": "11.0.0.1"})

    assert inside.status_code == status.HTTP_200_OK
    assert exact.status_code == status.HTTP_200_OK
    assert outside.status_code == status.HTTP_403_FORBIDDEN
    assert outside.json()["detail"]["reason"] == "ip_denied"


def test_info_lists_type_capabilities(client: TestClient, auth_headers: dict[str, str]) -> None:
    r = client.get(f"{PREFIX}/info", headers=auth_headers)
    data = r.json()
    assert data["type"] == "logistik"
    assert "shipping_tracking" in data["capabilities"]
    assert data["features"]["sync"] is True


def test_status_reports_jobs_and_checkpoints(client: TestClient, auth_headers: dict[str, str]) -> None:
    r = client.get(f"{PREFIX}/status", headers=auth_headers)
    assert r.status_code == status.HTTP_200_OK
    data = r.json()
    assert set(data["jobs"]) == {"sync", "metrics"}
    assert data["checkpoints"]["last_sync"] is None
    assert data["hub_configured"] is True


def test_metrics_are_collected_without_push(
    client: TestClient, auth_headers: dict[str, str], hub_requests: list[httpx.Request]
) -> None:
    r = client.get(f"{PREFIX}/metrics", headers=auth_headers)
    assert r.status_code == status.HTTP_200_OK
    assert "system" in r.json()["metrics"]
    assert hub_requests == []


def test_health_reports_local_checks(client: TestClient, auth_headers: dict[str, str]) -> None:
    r = client.get(f"{PREFIX}/health", headers=auth_headers)
    assert r.status_code == status.HTTP_200_OK
    data = r.json()
    assert data["status"] in {"healthy", "degraded"}
    assert data["checks"]["cache"]["status"] == "healthy"
    assert "hub" not in data


def test_health_with_unreachable_hub_is_degraded(
    hub_requests: list[httpx.Request], auth_headers: dict[str, str]
) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        hub_requests.append(request)
        return json_response({"error": "bad request"}, status_code=400)

    client = make_client(httpx.MockTransport(handler))

    r = client.get(f"{PREFIX}/health", params={"include_hub": "true"}, headers=auth_headers)

    assert r.status_code == status.HTTP_200_OK
    assert r.json()["status"] == "degraded"
    assert r.json()["hub"]["status"] == "error"
    assert len(hub_requests) == 1


def test_health_can_be_disabled(hub_transport: httpx.MockTransport, auth_headers: dict[str, str]) -> None:
    client = make_client(hub_transport, health_enabled=False)
    assert client.get(f"{PREFIX}/health", headers=auth_headers).status_code == status.HTTP_404_NOT_FOUND


def test_disallowed_command_lists_allowed_ones(client: TestClient, auth_headers: dict[str, str]) -> None:
    r = client.post(f"{PREFIX}/commands", json={"command": "rm -rf"}, headers=auth_headers)
    assert r.status_code == status.HTTP_403_FORBIDDEN
    assert "cache:clear" in r.json()["detail"]["allowed_commands"]


def test_register_command_calls_hub(
    client: TestClient, auth_headers: dict[str, str], hub_requests: list[httpx.Request]
) -> None:
    r = client.post(
        f"{PREFIX}/commands", json={"command": "satellite:register"}, headers=auth_headers
    )

    assert r.status_code == status.HTTP_200_OK
    body = r.json()
    assert body["success"] is True
    assert body["result"]["satellite_id"] == "sat-42"
    assert hub_requests[0].url.path == "/api/satellites/register"
    assert hub_requests[0].headers["Authorization"] == f"Bearer {API_KEY}"

    status_body = client.get(f"{PREFIX}/status", headers=auth_headers).json()
    assert status_body["registration"]["satellite_id"] == "sat-42"


def test_sync_command_with_unknown_dataset_is_bad_request(
    client: TestClient, auth_headers: dict[str, str]
) -> None:
    r = client.post(
        f"{PREFIX}/commands",
        json={"command": "satellite:sync", "parameters": {"dataset": "invoices"}},
        headers=auth_headers,
    )
    assert r.status_code == status.HTTP_400_BAD_REQUEST


def test_hub_commands_without_hub_are_unavailable(
    hub_transport: httpx.MockTransport, auth_headers: dict[str, str]
) -> None:
    client = make_client(hub_transport, hub_url=None, sync_enabled=False, metrics_enabled=False)

    r = client.post(f"{PREFIX}/commands", json={"command": "satellite:metrics"}, headers=auth_headers)

    assert r.status_code == status.HTTP_503_SERVICE_UNAVAILABLE


def test_updates_are_applied_per_record(client: TestClient, auth_headers: dict[str, str]) -> None:
    r = client.post(
        f"{PREFIX}/updates",
        json={
            "updates": [
                {"type": "config_update", "data": {"key": "sync.batch", "value": 50}},
                {"type": "bogus"},
            ]
        },
        headers=auth_headers,
    )

    assert r.status_code == status.HTTP_200_OK
    body = r.json()
    assert body["success"] is False
    assert body["processed"] == 2
    assert body["failed"] == 1
    assert body["results"][0]["success"] is True


def test_delete_cache_by_tag(
    client: TestClient, runtime: SatelliteRuntime, auth_headers: dict[str, str]
) -> None:
    runtime.store.set("sync:users", "cached", tags=("sync",))
    runtime.store.set("other", "cached")

    r = client.request("DELETE", f"{PREFIX}/cache", json={"tags": ["sync"]}, headers=auth_headers)

    assert r.status_code == status.HTTP_200_OK
    assert r.json() == {"success": True, "cleared": "tags", "tags": ["sync"], "removed": 1}
    assert runtime.store.get("other") == "cached"


def test_root_is_public(client: TestClient) -> None:
    r = client.get("/")
    assert r.status_code == status.HTTP_200_OK
    assert r.json()["name"] == "test-satellite"


def test_missing_hub_is_fatal_when_sync_is_enabled() -> None:
    with pytest.raises(HubConfigurationError, match="HUB_URL"):
        create_app(make_settings(hub_url=None))


def test_malformed_update_entries_fail_per_record(client: TestClient, auth_headers: dict[str, str]) -> None:
    r = client.post(
        f"{PREFIX}/updates",
        json={"updates": [1, {"type": "tenant_update", "data": {"id": "t-1"}}, "x"]},
        headers=auth_headers,
    )

    assert r.status_code == status.HTTP_200_OK
    body = r.json()
    assert body["processed"] == 3
    assert body["failed"] == 2
    assert [item["success"] for item in body["results"]] == [False, True, False]
    assert body["results"][0] == {
        "type": "unknown", "success": False, "error": "update record must be an object",
    }
