#!/usr/bin/env python3
"""
Satellite node command line.

Subcommands:
  register   register this satellite with the hub (--force, --test)
  sync       push datasets to the hub (--type NAME, --dry-run)
  metrics    collect metrics and push them (--show only prints them)
  health     run local checks and report them to the hub
  serve      run the HTTP API with uvicorn

Exit code:
  0 = command succeeded
  1 = configuration error or hub failure
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from collections.abc import Awaitable, Callable
from typing import Any

from satellite_node.core.logging_config import configure_logging
from satellite_node.core.settings import Settings, get_settings
from satellite_node.core.security import mask_secret
from satellite_node.runtime import SatelliteRuntime, build_runtime
from satellite_node.services.hub import HubConfigurationError, HubError
from satellite_node.services.metrics import SystemMetricsCollector
from satellite_node.services.sync import BatchStatus


def say(msg: str) -> None:
    print(f"[satellite] {msg}")


def fail(msg: str) -> None:
    print(f"[satellite][FAIL] {msg}", file=sys.stderr)


def dump(payload: Any) -> None:
    print(json.dumps(payload, indent=2, sort_keys=True, default=str))


def _print_config(settings: Settings) -> None:
    say(f"hub url:        {settings.hub_url or '<unset>'}")
    say(f"hub api key:    {mask_secret(settings.hub_api_key)}")
    say(f"satellite:      {settings.satellite_name} ({settings.satellite_type}) "
        f"v{settings.satellite_version}")
    say(f"satellite url:  {settings.satellite_url}")


async def _register(runtime: SatelliteRuntime, args: argparse.Namespace) -> int:
    registration = runtime.registration
    if registration is None:
        raise HubConfigurationError("Hub connection is not configured")

    if args.test:
        _print_config(runtime.settings)
        report = runtime.health.run_checks()
        answer = await runtime.require_hub().health_check(report["checks"], status=report["status"])
        say("hub connection OK")
        dump(answer)
        return 0

    result = await registration.register_satellite(force=args.force)
    if result is None:
        state = registration.state()
        say(f"registration is current (last registered {state.last_registered_at}); "
            "use --force to register again")
        return 0
    say(f"registered as {result.satellite_id or '<no id>'} (status: {result.status})")
    return 0


async def _sync(runtime: SatelliteRuntime, args: argparse.Namespace) -> int:
    if runtime.sync is None:
        raise HubConfigurationError("Hub connection is not configured")
    try:
        result = await runtime.sync.run(args.type, dry_run=args.dry_run)
    except KeyError:
        fail(f"unknown dataset {args.type!r}; known: {', '.join(runtime.sync.datasets) or 'none'}")
        return 1
    dump(result.as_dict())
    return 0 if result.status is BatchStatus.SUCCESS else 1


async def _metrics(runtime: SatelliteRuntime, args: argparse.Namespace) -> int:
    if runtime.metrics is None:
        raise HubConfigurationError("Hub connection is not configured")
    if await runtime.metrics.push():
        say("metrics sent to hub")
        return 0
    fail("hub did not accept metrics")
    return 1


async def _health(runtime: SatelliteRuntime, args: argparse.Namespace) -> int:
    report = runtime.health.run_checks()
    dump(report)
    if runtime.hub is None:
        return 0
    dump(await runtime.hub.health_check(report["checks"], status=report["status"]))
    return 0


COMMANDS: dict[str, Callable[[SatelliteRuntime, argparse.Namespace], Awaitable[int]]] = {
    "register": _register,
    "sync": _sync,
    "metrics": _metrics,
    "health": _health,
}


async def run_command(settings: Settings, args: argparse.Namespace) -> int:
    if args.command == "metrics" and args.show:
        # Local collection only; works without a hub connection
        dump(SystemMetricsCollector().collect())
        return 0

    runtime = build_runtime(settings)
    try:
        return await COMMANDS[args.command](runtime, args)
    finally:
        if runtime.hub is not None:
            await runtime.hub.close()


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(prog="satellite-node", description="Satellite node tools")
    sub = p.add_subparsers(dest="command", required=True)

    register = sub.add_parser("register", help="Register this satellite with the hub")
    register.add_argument("--force", action="store_true", help="Register even if current")
    register.add_argument("--test", action="store_true", help="Only test the hub connection")

    sync = sub.add_parser("sync", help="Push datasets to the hub")
    sync.add_argument("--type", default=None, help="Only sync this dataset")
    sync.add_argument("--dry-run", action="store_true", help="Collect without sending")

    metrics = sub.add_parser("metrics", help="Collect and push metrics")
    metrics.add_argument("--show", action="store_true", help="Print metrics, do not push")

    sub.add_parser("health", help="Run health checks")

    serve = sub.add_parser("serve", help="Run the HTTP API")
    serve.add_argument("--host", default="0.0.0.0")
    serve.add_argument("--port", type=int, default=8000)
    return p.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    settings = get_settings()
    configure_logging(settings.log_level)

    if args.command == "serve":
        import uvicorn

        uvicorn.run(
            "satellite_node.main:create_app", factory=True, host=args.host, port=args.port
        )
        return 0

    try:
        return asyncio.run(run_command(settings, args))
    except HubConfigurationError as exc:
        fail(f"configuration error: {exc}")
        return 1
    except HubError as exc:
        fail(str(exc))
        return 1


if __name__ == "__main__":
    sys.exit(main())
