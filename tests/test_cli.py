"""Tests for the satellite-node command line."""

import json

import httpx
import pytest

from satellite_node.runtime import build_runtime
from satellite_node.scripts import cli
from satellite_node.services.state_store import InMemoryStateStore
from tests.conftest import make_settings


@pytest.fixture
def patched_runtime(monkeypatch: pytest.MonkeyPatch, hub_transport: httpx.MockTransport):
    runtime = build_runtime(make_settings(), store=InMemoryStateStore(), transport=hub_transport)
    monkeypatch.setattr(cli, "build_runtime", lambda settings: runtime)
    return runtime


def test_parse_args_flags() -> None:
    args = cli.parse_args(["sync", "--type", "users", "--dry-run"])
    assert args.command == "sync"
    assert args.type == "users"
    assert args.dry_run is True

    args = cli.parse_args(["register", "--force"])
    assert args.force is True
    assert args.test is False


def test_metrics_show_prints_local_metrics(capsys: pytest.CaptureFixture[str]) -> None:
    assert cli.main(["metrics", "--show"]) == 0

    printed = json.loads(capsys.readouterr().out)
    assert "system" in printed


def test_missing_hub_configuration_exits_1(
    monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    monkeypatch.delenv("HUB_URL", raising=False)
    monkeypatch.delenv("HUB_API_KEY", raising=False)

    assert cli.main(["register"]) == 1
    assert "HUB_URL" in capsys.readouterr().err


def test_register_reports_assigned_id(
    patched_runtime, hub_requests: list[httpx.Request], capsys: pytest.CaptureFixture[str]
) -> None:
    assert cli.main(["register"]) == 0

    assert "registered as sat-42" in capsys.readouterr().out
    assert len(hub_requests) == 1


def test_sync_unknown_dataset_exits_1(patched_runtime, capsys: pytest.CaptureFixture[str]) -> None:
    assert cli.main(["sync", "--type", "invoices"]) == 1
    assert "unknown dataset" in capsys.readouterr().err


def test_sync_with_nothing_to_send_succeeds(
    patched_runtime, hub_requests: list[httpx.Request], capsys: pytest.CaptureFixture[str]
) -> None:
    assert cli.main(["sync"]) == 0

    assert json.loads(capsys.readouterr().out)["status"] == "success"
    assert hub_requests == []
