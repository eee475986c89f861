"""Credential helpers shared by the auth gate and the hub client."""
from __future__ import annotations

import hashlib
import hmac

VISIBLE_SECRET_CHARS = 4


def constant_time_equals(presented: str | None, secret: str | None) -> bool:
    """Compare a presented credential against the configured secret.

    Args:
        presented: Credential supplied by the caller.
        secret: Configured shared secret.

    Returns:
        True only when both values are non-empty and identical. An empty or
        unset secret never validates anything.
    """
    if not secret or not presented:
        return False
    return hmac.compare_digest(presented.encode("utf-8"), secret.encode("utf-8"))


def mask_secret(value: str | None) -> str:
    """Return a log-safe rendering of a secret."""
    if not value:
        return "<unset>"
    if len(value) <= VISIBLE_SECRET_CHARS * 2:
        return "*" * len(value)
    return f"{value[:VISIBLE_SECRET_CHARS]}...{value[-VISIBLE_SECRET_CHARS:]}"


def fingerprint(payload: bytes) -> str:
    """Return a SHA-256 hex digest used for change detection."""
    return hashlib.sha256(payload).hexdigest()
