"""Inbound request authentication for satellite endpoints.

The gate runs a fixed sequence of checks and stops at the first failure:

1. feature flag (``disabled``)
2. credential presence (``missing_key``)
3. credential validity (``invalid_key``)
4. per-IP rate limit (``rate_limited``)
5. IP allowlist (``ip_denied``)

The order decides which reason a caller sees, and cheap checks run before
the ones that touch shared state.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum

from satellite_node.core.security import constant_time_equals, mask_secret
from satellite_node.services.cidr import ip_allowed
from satellite_node.services.rate_limit import FixedWindowRateLimiter

logger = logging.getLogger(__name__)

BEARER_PREFIX = "bearer "
API_KEY_HEADER = "x-api-key"
API_KEY_QUERY_PARAM = "api_key"


class AuthReason(str, Enum):
    """Why a request was accepted or rejected."""

    OK = "ok"
    DISABLED = "disabled"
    MISSING_KEY = "missing_key"
    INVALID_KEY = "invalid_key"
    RATE_LIMITED = "rate_limited"
    IP_DENIED = "ip_denied"


_REJECTIONS: dict[AuthReason, tuple[int, str]] = {
    AuthReason.DISABLED: (503, "Satellite API is disabled"),
    AuthReason.MISSING_KEY: (401, "API key required"),
    AuthReason.INVALID_KEY: (401, "Invalid API key"),
    AuthReason.RATE_LIMITED: (429, "Rate limit exceeded"),
    AuthReason.IP_DENIED: (403, "IP address not allowed"),
}


@dataclass(frozen=True)
class AuthDecision:
    """Outcome of evaluating one inbound request."""

    allowed: bool
    reason: AuthReason
    client_ip: str
    presented_key: str | None = field(default=None, repr=False)

    def __post_init__(self) -> None:
        if self.allowed != (self.reason is AuthReason.OK):
            raise ValueError("reason must be 'ok' exactly when the request is allowed")

    @property
    def status_code(self) -> int:
        if self.allowed:
            return 200
        return _REJECTIONS[self.reason][0]

    @property
    def message(self) -> str:
        if self.allowed:
            return "Authenticated"
        return _REJECTIONS[self.reason][1]

    @property
    def masked_key(self) -> str:
        return mask_secret(self.presented_key)


def extract_credential(
    headers: Mapping[str, str],
    query_params: Mapping[str, str],
) -> str | None:
    """Find the caller's credential.

    Precedence: ``Authorization: Bearer``, then ``X-API-Key``, then the
    ``api_key`` query parameter. Empty values count as absent.
    """
    lowered = {name.lower(): value for name, value in headers.items()}

    authorization = lowered.get("authorization", "")
    if authorization[: len(BEARER_PREFIX)].lower() == BEARER_PREFIX:
        token = authorization[len(BEARER_PREFIX):].strip()
        if token:
            return token

    header_key = lowered.get(API_KEY_HEADER, "").strip()
    if header_key:
        return header_key

    query_key = (query_params.get(API_KEY_QUERY_PARAM) or "").strip()
    return query_key or None


class AuthGate:
    """Evaluate inbound requests against the satellite's access policy."""

    def __init__(
        self,
        *,
        enabled: bool,
        api_key: str | None,
        rate_limiter: FixedWindowRateLimiter,
        ip_whitelist: Sequence[str] = (),
    ) -> None:
        self.enabled = enabled
        self._api_key = api_key
        self.rate_limiter = rate_limiter
        self.ip_whitelist = list(ip_whitelist)

    def evaluate(
        self,
        headers: Mapping[str, str],
        query_params: Mapping[str, str],
        client_ip: str,
    ) -> AuthDecision:
        """Run every check in order and return the first failure, or ``ok``."""
        if not self.enabled:
            return self._reject(AuthReason.DISABLED, client_ip)

        presented = extract_credential(headers, query_params)
        if presented is None:
            return self._reject(AuthReason.MISSING_KEY, client_ip)

        if not constant_time_equals(presented, self._api_key):
            return self._reject(AuthReason.INVALID_KEY, client_ip, presented)

        if not self.rate_limiter.allow(client_ip):
            return self._reject(AuthReason.RATE_LIMITED, client_ip, presented)

        if not ip_allowed(client_ip, self.ip_whitelist):
            return self._reject(AuthReason.IP_DENIED, client_ip, presented)

        return AuthDecision(True, AuthReason.OK, client_ip, presented)

    def _reject(
        self, reason: AuthReason, client_ip: str, presented: str | None = None
    ) -> AuthDecision:
        logger.warning(
            "Rejected satellite request from %s: %s (key=%s)",
            client_ip,
            reason.value,
            mask_secret(presented),
        )
        return AuthDecision(False, reason, client_ip, presented)
