# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
Storage backends for titles, members and reservations.

Available backends:
- BaseBackend: Abstract base class defining the backend interface
- MemoryBackend: In-memory backend for single-process deployments and tests
- RedisBackend: Redis-based backend for distributed deployments (requires redis extra)

Supporting types:
- HealthCheckResult: Structured result from backend health checks
- MoveResult: Outcome of a guarded title counter move
- HoldResult, HoldOutcome: Outcome of placing a new hold
- StatusChange, TransitionResult: A status change and its combined outcome

Note: RedisBackend is lazily imported to avoid requiring the redis package
when only using MemoryBackend.
"""

from typing import TYPE_CHECKING, Any, cast

from librosync.backends.base import (
    TRANSITION_FIELDS,
    BaseBackend,
    HealthCheckResult,
    HoldOutcome,
    HoldResult,
    MoveResult,
    StatusChange,
    TransitionResult,
)
from librosync.backends.memory import MemoryBackend
from librosync.exceptions import ConfigurationError

# Lazy imports for optional redis backend
if TYPE_CHECKING:
    from librosync.backends.redis import RedisBackend

__all__ = [
    "TRANSITION_FIELDS",
    "BaseBackend",
    "HealthCheckResult",
    "HoldOutcome",
    "HoldResult",
    "MemoryBackend",
    "MoveResult",
    "RedisBackend",
    "StatusChange",
    "TransitionResult",
    "create_backend",
]


def create_backend(name: str = "memory", **kwargs: Any) -> BaseBackend:
    """
    Create a backend by name.

    Args:
        name: "memory" or "redis"
        **kwargs: Passed to the backend constructor

    Raises:
        ConfigurationError: If the name is unknown
    """
    normalized = name.strip().lower()
    if normalized == "memory":
        return MemoryBackend(**kwargs)
    if normalized == "redis":
        from librosync.backends.redis import RedisBackend

        return RedisBackend(**kwargs)
    raise ConfigurationError(
        f"Unknown backend '{name}'. Expected one of: memory, redis"
    )


def __getattr__(name: str) -> type:
    """Lazy import for optional redis backend components."""
    if name == "RedisBackend":
        try:
            from librosync.backends import redis as redis_module

            return cast(type, redis_module.RedisBackend)
        except ImportError as e:  # pragma: no cover
            raise ImportError(  # pragma: no cover
                f"'{name}' requires the 'redis' extra. "
                "Install with: pip install librosync[redis]"
            ) from e
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
