"""Satellite endpoints exposed to the hub.

Every route in this module sits behind the satellite auth gate.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import JSONResponse

from satellite_node.api.v1.dependencies import RuntimeDep, require_satellite_auth
from satellite_node.schemas.satellite import CacheClearRequest, CommandRequest, UpdatesRequest
from satellite_node.services.commands import ALLOWED_COMMANDS, CommandNotAllowedError
from satellite_node.services.health import DEGRADED
from satellite_node.services.hub import HubConfigurationError, HubError
from satellite_node.services.updates import clear_cache

logger = logging.getLogger(__name__)

router = APIRouter(tags=["satellite"], dependencies=[Depends(require_satellite_auth)])


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@router.get("/health", response_model=None)
async def health(runtime: RuntimeDep, include_hub: bool = False) -> dict[str, Any] | JSONResponse:
    """Aggregate local health checks.

    Args:
        runtime: Satellite service container
        include_hub: Also report local health to the hub and include its answer

    Returns:
        ``healthy`` when every check passes, ``degraded`` otherwise; a 500
        with status ``error`` when the checks themselves could not run
    """
    if not runtime.settings.health_enabled:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Health endpoint disabled")

    try:
        report = await asyncio.to_thread(runtime.health.run_checks)
    except Exception as exc:
        logger.exception("Health aggregation failed")
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"status": "error", "error": str(exc), "timestamp": _now_iso()},
        )

    report["timestamp"] = _now_iso()
    report["satellite"] = runtime.settings.satellite_name
    if include_hub:
        try:
            hub = runtime.require_hub()
            report["hub"] = await hub.health_check(report["checks"], status=report["status"])
        except HubError as exc:
            report["hub"] = {"status": "error", "error": str(exc)}
            report["status"] = DEGRADED
    return report


@router.get("/status")
def get_status(runtime: RuntimeDep) -> dict[str, Any]:
    """Return registration state, checkpoints and job bookkeeping."""
    return runtime.status()


@router.get("/info")
async def get_info(runtime: RuntimeDep) -> dict[str, Any]:
    """Return the satellite descriptor and its capabilities."""
    return runtime.info()


@router.get("/metrics")
def get_metrics(runtime: RuntimeDep) -> dict[str, Any]:
    """Collect metrics once and return them without pushing to the hub."""
    return {"metrics": runtime.collector.collect(), "collected_at": _now_iso()}


@router.post("/commands")
async def run_command(body: CommandRequest, runtime: RuntimeDep) -> dict[str, Any]:
    """Run an allow-listed command.

    Args:
        body: Command name and parameters
        runtime: Satellite service container

    Returns:
        The command's result

    Raises:
        HTTPException: 403 for commands outside the allow-list, 400 for bad
            parameters, 503 when the hub is not configured, 502 when the hub
            call fails
    """
    try:
        result = await runtime.commands.run(body.command, body.parameters)
    except CommandNotAllowedError as exc:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"error": str(exc), "allowed_commands": list(ALLOWED_COMMANDS)},
        ) from exc
    except KeyError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"error": f"Invalid parameters: {exc.args[0] if exc.args else exc}"},
        ) from exc
    except HubConfigurationError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail={"error": str(exc)}
        ) from exc
    except HubError as exc:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY, detail={"error": str(exc)}
        ) from exc

    return {"success": True, "command": body.command, "result": result, "executed_at": _now_iso()}


@router.post("/updates")
def apply_updates(body: UpdatesRequest, runtime: RuntimeDep) -> dict[str, Any]:
    """Apply update records; each record succeeds or fails on its own."""
    outcomes = runtime.dispatcher.dispatch(body.updates)
    failed = sum(1 for outcome in outcomes if not outcome.ok)
    return {
        "success": failed == 0,
        "processed": len(outcomes),
        "failed": failed,
        "results": [outcome.as_dict() for outcome in outcomes],
    }


@router.delete("/cache")
def delete_cache(runtime: RuntimeDep, body: CacheClearRequest | None = None) -> dict[str, Any]:
    """Clear cache entries by tags, keys, or entirely."""
    selector = body or CacheClearRequest()
    result = clear_cache(
        runtime.store, tags=selector.tags, keys=selector.keys, clear_all=selector.all
    )
    return {"success": True, **result}
