"""Shared key-value state for rate windows, checkpoints and locks.

Every piece of mutable state that several requests or timer ticks can race on
(rate-limit counters, registration state, sync checkpoints, job locks) lives
behind :class:`StateStore`. Compound read-modify-write operations are exposed
as single atomic methods so callers never implement check-then-act themselves.

Two implementations are provided:

- :class:`InMemoryStateStore` for single-process deployments and tests
- :class:`RedisStateStore` for state shared between processes or hosts
"""

from __future__ import annotations

import json
import logging
import time
from abc import ABC, abstractmethod
from collections import defaultdict
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from threading import Lock
from typing import Any

import redis

logger = logging.getLogger(__name__)


class StateStoreError(RuntimeError):
    """Raised when the backing store cannot be reached."""


class StateStore(ABC):
    """Atomic key-value operations used by the satellite core."""

    @abstractmethod
    def get(self, key: str) -> str | None:
        """Return the value stored at ``key`` or None."""

    @abstractmethod
    def set(
        self,
        key: str,
        value: str,
        *,
        ttl: int | None = None,
        tags: Iterable[str] = (),
    ) -> None:
        """Store ``value``; ``ttl`` in seconds, ``tags`` for group flushes."""

    @abstractmethod
    def add(self, key: str, value: str, *, ttl: int | None = None) -> bool:
        """Store ``value`` only if ``key`` is absent. Returns True if stored."""

    @abstractmethod
    def delete(self, *keys: str) -> int:
        """Delete keys and return how many existed."""

    @abstractmethod
    def delete_if_equals(self, key: str, value: str) -> bool:
        """Delete ``key`` only while it still holds ``value``, in one atomic step."""

    @abstractmethod
    def increment_within_limit(self, key: str, limit: int, window_seconds: int) -> tuple[bool, int]:
        """Increment the counter at ``key`` unless it already reached ``limit``.

        The read, the comparison and the increment are one atomic step. The
        first increment of a fresh counter sets its expiry to
        ``window_seconds`` from now.

        Returns:
            ``(accepted, count)`` where ``count`` is the counter value after
            the call.
        """

    @abstractmethod
    def advance(self, key: str, timestamp: float) -> bool:
        """Move the timestamp at ``key`` forward to ``timestamp``.

        Returns False, leaving the stored value untouched, when the stored
        timestamp is already at or beyond ``timestamp``.
        """

    @abstractmethod
    def flush_tags(self, tags: Iterable[str]) -> int:
        """Delete every key stored under any of ``tags``."""

    @abstractmethod
    def flush(self) -> None:
        """Delete every key owned by this store."""

    @abstractmethod
    def ping(self) -> bool:
        """Return True if the store answers."""

    def get_json(self, key: str) -> Any | None:
        raw = self.get(key)
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except ValueError:
            logger.warning("Discarding undecodable JSON value at %s", key)
            return None

    def set_json(
        self,
        key: str,
        value: Any,
        *,
        ttl: int | None = None,
        tags: Iterable[str] = (),
    ) -> None:
        self.set(key, json.dumps(value, sort_keys=True, default=str), ttl=ttl, tags=tags)

    def get_timestamp(self, key: str) -> float | None:
        raw = self.get(key)
        if raw is None:
            return None
        try:
            return float(raw)
        except ValueError:
            return None


DEFAULT_SWEEP_INTERVAL = 60.0
REDIS_SOCKET_TIMEOUT = 5.0


@dataclass
class _Entry:
    value: str
    expires_at: float | None = None


class InMemoryStateStore(StateStore):
    """Process-local store guarded by a single lock.

    Expiry is evaluated against ``clock``, which defaults to
    :func:`time.monotonic` and can be replaced in tests. Reads drop the
    expired entry they hit; writes also purge every expired entry at most
    once per ``sweep_interval`` seconds, so keys that are never read again
    do not accumulate.
    """

    def __init__(
        self,
        clock: Callable[[], float] | None = None,
        *,
        sweep_interval: float = DEFAULT_SWEEP_INTERVAL,
    ) -> None:
        self._clock = clock or time.monotonic
        self._lock = Lock()
        self._data: dict[str, _Entry] = {}
        self._tags: dict[str, set[str]] = defaultdict(set)
        self.sweep_interval = sweep_interval
        self._last_sweep = self._clock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)

    def purge_expired(self) -> int:
        """Drop every expired entry and return how many were removed."""
        with self._lock:
            return self._purge(self._clock())

    def _purge(self, now: float) -> int:
        expired = [
            key
            for key, entry in self._data.items()
            if entry.expires_at is not None and entry.expires_at <= now
        ]
        for key in expired:
            del self._data[key]
        if expired:
            for tag in list(self._tags):
                self._tags[tag].difference_update(expired)
                if not self._tags[tag]:
                    del self._tags[tag]
        self._last_sweep = now
        return len(expired)

    def _maybe_sweep(self) -> None:
        now = self._clock()
        if now - self._last_sweep >= self.sweep_interval:
            self._purge(now)

    def _live(self, key: str) -> _Entry | None:
        entry = self._data.get(key)
        if entry is None:
            return None
        if entry.expires_at is not None and entry.expires_at <= self._clock():
            del self._data[key]
            return None
        return entry

    def _expiry(self, ttl: int | None) -> float | None:
        if ttl is None or ttl <= 0:
            return None
        return self._clock() + ttl

    def get(self, key: str) -> str | None:
        with self._lock:
            entry = self._live(key)
            return entry.value if entry else None

    def set(
        self,
        key: str,
        value: str,
        *,
        ttl: int | None = None,
        tags: Iterable[str] = (),
    ) -> None:
        with self._lock:
            self._maybe_sweep()
            self._data[key] = _Entry(value, self._expiry(ttl))
            for tag in tags:
                self._tags[tag].add(key)

    def add(self, key: str, value: str, *, ttl: int | None = None) -> bool:
        with self._lock:
            self._maybe_sweep()
            if self._live(key) is not None:
                return False
            self._data[key] = _Entry(value, self._expiry(ttl))
            return True

    def delete_if_equals(self, key: str, value: str) -> bool:
        with self._lock:
            entry = self._live(key)
            if entry is None or entry.value != value:
                return False
            del self._data[key]
            return True

    def delete(self, *keys: str) -> int:
        removed = 0
        with self._lock:
            for key in keys:
                if self._live(key) is not None:
                    removed += 1
                self._data.pop(key, None)
        return removed

    def increment_within_limit(self, key: str, limit: int, window_seconds: int) -> tuple[bool, int]:
        with self._lock:
            self._maybe_sweep()
            entry = self._live(key)
            count = int(entry.value) if entry else 0
            if count >= limit:
                return False, count

            count += 1
            if entry is None:
                entry = _Entry(str(count), self._expiry(window_seconds))
                self._data[key] = entry
            else:
                entry.value = str(count)
            return True, count

    def advance(self, key: str, timestamp: float) -> bool:
        with self._lock:
            entry = self._live(key)
            if entry is not None:
                try:
                    if float(entry.value) >= timestamp:
                        return False
                except ValueError:
                    pass
            self._data[key] = _Entry(repr(float(timestamp)))
            return True

    def flush_tags(self, tags: Iterable[str]) -> int:
        removed = 0
        with self._lock:
            for tag in tags:
                for key in self._tags.pop(tag, set()):
                    if self._data.pop(key, None) is not None:
                        removed += 1
        return removed

    def flush(self) -> None:
        with self._lock:
            self._data.clear()
            self._tags.clear()

    def ping(self) -> bool:
        return True


# KEYS[1] = counter, ARGV[1] = limit, ARGV[2] = window seconds
_INCREMENT_WITHIN_LIMIT = """
local current = tonumber(redis.call('GET', KEYS[1]) or '0')
if current >= tonumber(ARGV[1]) then
    return {0, current}
end
current = redis.call('INCR', KEYS[1])
if current == 1 then
    redis.call('EXPIRE', KEYS[1], tonumber(ARGV[2]))
end
return {1, current}
"""

# KEYS[1] = checkpoint, ARGV[1] = candidate timestamp
_ADVANCE = """
local current = redis.call('GET', KEYS[1])
if current and tonumber(current) and tonumber(current) >= tonumber(ARGV[1]) then
    return 0
end
redis.call('SET', KEYS[1], ARGV[1])
return 1
"""

# KEYS[1] = lock, ARGV[1] = owner token
_DELETE_IF_EQUALS = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
    return redis.call('DEL', KEYS[1])
end
return 0
"""

_SCAN_BATCH = 500


class RedisStateStore(StateStore):
    """Store backed by Redis; compound operations run as Lua scripts."""

    def __init__(
        self,
        url: str | None = None,
        *,
        prefix: str = "satellite",
        client: redis.Redis | None = None,
    ) -> None:
        if client is None:
            if not url:
                raise StateStoreError("A Redis URL is required for RedisStateStore")
            client = redis.Redis.from_url(
                url,
                decode_responses=True,
                socket_timeout=REDIS_SOCKET_TIMEOUT,
                socket_connect_timeout=REDIS_SOCKET_TIMEOUT,
            )
        self._redis = client
        self._prefix = prefix
        self._increment_script = self._redis.register_script(_INCREMENT_WITHIN_LIMIT)
        self._advance_script = self._redis.register_script(_ADVANCE)
        self._delete_if_equals_script = self._redis.register_script(_DELETE_IF_EQUALS)

    def _key(self, key: str) -> str:
        return f"{self._prefix}:{key}"

    def _tag_key(self, tag: str) -> str:
        return f"{self._prefix}:tag:{tag}"

    def get(self, key: str) -> str | None:
        try:
            value = self._redis.get(self._key(key))
        except redis.RedisError as exc:
            raise StateStoreError(f"Redis GET failed: {exc}") from exc
        if isinstance(value, bytes):
            return value.decode("utf-8")
        return value

    def set(
        self,
        key: str,
        value: str,
        *,
        ttl: int | None = None,
        tags: Iterable[str] = (),
    ) -> None:
        full_key = self._key(key)
        try:
            pipe = self._redis.pipeline()
            pipe.set(full_key, value, ex=ttl if ttl and ttl > 0 else None)
            for tag in tags:
                pipe.sadd(self._tag_key(tag), full_key)
            pipe.execute()
        except redis.RedisError as exc:
            raise StateStoreError(f"Redis SET failed: {exc}") from exc

    def add(self, key: str, value: str, *, ttl: int | None = None) -> bool:
        try:
            stored = self._redis.set(
                self._key(key), value, nx=True, ex=ttl if ttl and ttl > 0 else None
            )
        except redis.RedisError as exc:
            raise StateStoreError(f"Redis SET NX failed: {exc}") from exc
        return bool(stored)

    def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        try:
            return int(self._redis.delete(*(self._key(key) for key in keys)))
        except redis.RedisError as exc:
            raise StateStoreError(f"Redis DEL failed: {exc}") from exc

    def delete_if_equals(self, key: str, value: str) -> bool:
        try:
            result = self._delete_if_equals_script(keys=[self._key(key)], args=[value])
        except redis.RedisError as exc:
            raise StateStoreError(f"Redis compare-and-delete failed: {exc}") from exc
        return bool(int(result))

    def increment_within_limit(self, key: str, limit: int, window_seconds: int) -> tuple[bool, int]:
        try:
            accepted, count = self._increment_script(
                keys=[self._key(key)], args=[int(limit), int(window_seconds)]
            )
        except redis.RedisError as exc:
            raise StateStoreError(f"Redis rate-limit script failed: {exc}") from exc
        return bool(int(accepted)), int(count)

    def advance(self, key: str, timestamp: float) -> bool:
        try:
            result = self._advance_script(keys=[self._key(key)], args=[repr(float(timestamp))])
        except redis.RedisError as exc:
            raise StateStoreError(f"Redis advance script failed: {exc}") from exc
        return bool(int(result))

    def flush_tags(self, tags: Iterable[str]) -> int:
        removed = 0
        try:
            for tag in tags:
                tag_key = self._tag_key(tag)
                members = list(self._redis.smembers(tag_key))
                if members:
                    removed += int(self._redis.delete(*members))
                self._redis.delete(tag_key)
        except redis.RedisError as exc:
            raise StateStoreError(f"Redis tag flush failed: {exc}") from exc
        return removed

    def flush(self) -> None:
        try:
            batch: list[str] = []
            for key in self._redis.scan_iter(match=f"{self._prefix}:*", count=_SCAN_BATCH):
                batch.append(key)
                if len(batch) >= _SCAN_BATCH:
                    self._redis.delete(*batch)
                    batch.clear()
            if batch:
                self._redis.delete(*batch)
        except redis.RedisError as exc:
            raise StateStoreError(f"Redis flush failed: {exc}") from exc

    def ping(self) -> bool:
        try:
            return bool(self._redis.ping())
        except redis.RedisError:
            logger.warning("Redis ping failed", exc_info=True)
            return False

    def close(self) -> None:
        self._redis.close()


def build_state_store(redis_url: str | None, prefix: str) -> StateStore:
    """Return a Redis store when a URL is configured, else an in-memory one."""
    if redis_url:
        logger.info("Using Redis state store with prefix %r", prefix)
        return RedisStateStore(redis_url, prefix=prefix)
    logger.info("Using in-memory state store; state is not shared between processes")
    return InMemoryStateStore()
