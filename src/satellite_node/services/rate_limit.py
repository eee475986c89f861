"""Fixed-window request limiting for inbound satellite calls."""

from __future__ import annotations

import logging

from satellite_node.services.state_store import StateStore

logger = logging.getLogger(__name__)

DEFAULT_WINDOW_SECONDS = 60
KEY_PREFIX = "ratelimit"


class FixedWindowRateLimiter:
    """Per-client counter over fixed 60-second windows.

    A window starts with the first accepted request from a client and ends
    ``window_seconds`` later, at which point the counter disappears from the
    store. A rejected request does not touch the counter; since the counter
    already sits at the limit, retries cannot buy extra budget.

    A ``limit`` of zero or less turns limiting off entirely.
    """

    def __init__(
        self,
        store: StateStore,
        limit: int,
        window_seconds: int = DEFAULT_WINDOW_SECONDS,
    ) -> None:
        self.store = store
        self.limit = limit
        self.window_seconds = window_seconds
        if not self.enabled:
            logger.warning("Inbound rate limiting is disabled (limit=%s)", limit)

    @property
    def enabled(self) -> bool:
        return self.limit > 0

    def allow(self, client_key: str) -> bool:
        """Count one request for ``client_key``; return False if over the limit."""
        if not self.enabled:
            return True

        accepted, count = self.store.increment_within_limit(
            f"{KEY_PREFIX}:{client_key}", self.limit, self.window_seconds
        )
        if not accepted:
            logger.debug("Rate limit reached for %s (%s/%s)", client_key, count, self.limit)
        return accepted
