# src/satellite_node/services/__init__.py
"""Core services of a satellite node."""

from .auth_gate import AuthDecision, AuthGate, AuthReason
from .hub import HubClient, HubError
from .rate_limit import FixedWindowRateLimiter
from .registration import RegistrationService
from .scheduler import JobScheduler
from .state_store import InMemoryStateStore, RedisStateStore, StateStore
from .sync import SyncOrchestrator

__all__ = [
    "AuthDecision", "AuthGate", "AuthReason",
    "FixedWindowRateLimiter",
    "HubClient", "HubError",
    "InMemoryStateStore", "RedisStateStore", "StateStore",
    "JobScheduler",
    "RegistrationService",
    "SyncOrchestrator",
]
