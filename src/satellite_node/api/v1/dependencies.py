"""Shared API dependencies for satellite authentication and service access."""

import logging
from typing import Annotated

from fastapi import Depends, HTTPException, Request, status

from satellite_node.runtime import SatelliteRuntime
from satellite_node.services.auth_gate import AuthDecision, AuthReason
from satellite_node.services.rate_limit import DEFAULT_WINDOW_SECONDS
from satellite_node.services.state_store import StateStoreError

logger = logging.getLogger(__name__)


def get_runtime(request: Request) -> SatelliteRuntime:
    """Return the service container attached to the running app."""
    return request.app.state.runtime


RuntimeDep = Annotated[SatelliteRuntime, Depends(get_runtime)]


def get_client_ip(request: Request, trust_proxy_headers: bool = False) -> str:
    """Resolve the caller's IP address.

    Forwarding headers are only honoured when the satellite is configured to
    sit behind a trusted proxy; otherwise any client could spoof them.

    Args:
        request: Incoming request
        trust_proxy_headers: Whether X-Forwarded-For / X-Real-IP may be used

    Returns:
        Client IP address, or "unknown" if the transport reports none
    """
    if trust_proxy_headers:
        forwarded = request.headers.get("X-Forwarded-For")
        if forwarded:
            return forwarded.split(",")[0].strip()
        real_ip = request.headers.get("X-Real-IP")
        if real_ip:
            return real_ip.strip()

    if request.client and request.client.host:
        return request.client.host
    return "unknown"


def require_satellite_auth(request: Request, runtime: RuntimeDep) -> AuthDecision:
    """Run the auth gate for a satellite endpoint.

    Args:
        request: Incoming request
        runtime: Satellite service container

    Returns:
        The accepted decision, also stored on ``request.state``

    Raises:
        HTTPException: With the status and reason of the first failed check
    """
    client_ip = get_client_ip(request, runtime.settings.trust_proxy_headers)
    try:
        decision = runtime.auth_gate.evaluate(request.headers, request.query_params, client_ip)
    except StateStoreError as exc:
        logger.error("Auth gate could not reach the state store: %s", exc)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"error": "Satellite state store unavailable", "reason": "unavailable"},
        ) from exc

    if not decision.allowed:
        headers: dict[str, str] = {}
        if decision.reason is AuthReason.RATE_LIMITED:
            headers["Retry-After"] = str(DEFAULT_WINDOW_SECONDS)
        elif decision.reason in (AuthReason.MISSING_KEY, AuthReason.INVALID_KEY):
            headers["WWW-Authenticate"] = "Bearer"
        raise HTTPException(
            status_code=decision.status_code,
            detail={"error": decision.message, "reason": decision.reason.value},
            headers=headers or None,
        )

    request.state.satellite_authenticated = True
    request.state.auth_decision = decision
    return decision


SatelliteAuthDep = Annotated[AuthDecision, Depends(require_satellite_auth)]
