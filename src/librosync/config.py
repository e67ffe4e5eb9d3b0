# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
Reservation engine configuration.

All windows, limits and cooldown stages are configuration rather than
constants. Durations are ``timedelta`` values; loop intervals and timeouts
are plain seconds, matching ``asyncio`` APIs.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass, fields
from datetime import timedelta
from typing import Any

from .exceptions import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_COOLDOWN_STAGES: tuple[timedelta, ...] = (
    timedelta(minutes=1),
    timedelta(minutes=5),
    timedelta(minutes=30),
)


@dataclass
class ReservationConfig:
    """
    Configuration for the reservation engine and its background jobs.

    Example:
        >>> config = ReservationConfig(max_active_reservations=2)
        >>> config.hold_window
        datetime.timedelta(seconds=3600)
    """

    # === Reservation Policy ===

    max_active_reservations: int = 1
    """Maximum reservations a member may hold that count toward the limit."""

    hold_window: timedelta = timedelta(hours=1)
    """How long a hold waits for pickup before it expires."""

    borrow_window: timedelta = timedelta(days=3)
    """Default loan period applied on approval when no due date is given."""

    cooldown_stages: tuple[timedelta, ...] = DEFAULT_COOLDOWN_STAGES
    """Cooldown duration per abandonment count; the last stage repeats."""

    allow_duplicate_holds: bool = False
    """Allow a member to hold more than one active reservation per title."""

    approved_counts_as_active: bool = True
    """Whether an approved (borrowed) reservation still counts toward the limit."""

    reclaim_on_create: bool = True
    """Run the expired-hold reclaim pass inline before each create."""

    inline_reclaim_limit: int = 20
    """Most expired holds reclaimed inline before one create."""

    # === Background Jobs ===

    sweep_interval: float = 60.0
    """Seconds between expiry sweeps when the sweeper runs in the background."""

    enable_reminders: bool = True
    """Emit an expiring-soon event once per hold during sweeps."""

    reminder_horizon: timedelta = timedelta(minutes=10)
    """How far ahead of expiry the reminder is sent."""

    reconciliation_interval: float | None = None
    """Seconds between background reconciliation runs (None disables the loop)."""

    # === Failure Handling ===

    request_timeout: float = 10.0
    """Time budget in seconds for member-facing operations."""

    max_retries: int = 3
    """Attempts for idempotent backend primitives on connection errors."""

    retry_backoff_base: float = 0.05
    """Initial backoff in seconds between retries."""

    retry_backoff_max: float = 1.0
    """Maximum backoff in seconds between retries."""

    notification_timeout: float = 5.0
    """Time budget in seconds for delivering one event to the sink."""

    # === Metrics and Monitoring ===

    metrics_enabled: bool = True
    """Enable metrics collection."""

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        if self.max_active_reservations < 1:
            raise ConfigurationError("max_active_reservations must be at least 1")
        if self.inline_reclaim_limit < 1:
            raise ConfigurationError("inline_reclaim_limit must be at least 1")
        if self.hold_window <= timedelta(0):
            raise ConfigurationError("hold_window must be positive")
        if self.borrow_window <= timedelta(0):
            raise ConfigurationError("borrow_window must be positive")
        self.cooldown_stages = tuple(self.cooldown_stages)
        if not self.cooldown_stages:
            raise ConfigurationError("cooldown_stages must not be empty")
        if any(stage <= timedelta(0) for stage in self.cooldown_stages):
            raise ConfigurationError("cooldown_stages must all be positive")
        if self.sweep_interval <= 0:
            raise ConfigurationError("sweep_interval must be positive")
        if self.reminder_horizon < timedelta(0):
            raise ConfigurationError("reminder_horizon must not be negative")
        if self.reconciliation_interval is not None and self.reconciliation_interval <= 0:
            raise ConfigurationError("reconciliation_interval must be positive")
        if self.request_timeout <= 0:
            raise ConfigurationError("request_timeout must be positive")
        if self.max_retries < 1:
            raise ConfigurationError("max_retries must be at least 1")
        if self.retry_backoff_base < 0 or self.retry_backoff_max < self.retry_backoff_base:
            raise ConfigurationError(
                "retry backoff must satisfy 0 <= retry_backoff_base <= retry_backoff_max"
            )
        if self.notification_timeout <= 0:
            raise ConfigurationError("notification_timeout must be positive")

    @classmethod
    def from_env(
        cls,
        prefix: str = "LIBROSYNC_",
        environ: Mapping[str, str] | None = None,
        **overrides: Any,
    ) -> ReservationConfig:
        """
        Build a configuration from environment variables.

        Each field maps to ``<prefix><FIELD_NAME>``, for example
        ``LIBROSYNC_HOLD_WINDOW=1800``. Durations are given in seconds,
        cooldown stages as a comma-separated list of seconds, booleans as
        ``1/0``, ``true/false`` or ``yes/no``. Keyword ``overrides`` win over
        the environment.

        Raises:
            ConfigurationError: If a variable cannot be parsed
        """
        env = os.environ if environ is None else environ
        values: dict[str, Any] = {}
        for f in fields(cls):
            raw = env.get(f"{prefix}{f.name.upper()}")
            if raw is None or f.name in overrides:
                continue
            default = f.default
            try:
                values[f.name] = _parse_env_value(f.name, raw, default)
            except ValueError as e:
                raise ConfigurationError(
                    f"Invalid value for {prefix}{f.name.upper()}: {raw!r}"
                ) from e
        values.update(overrides)
        if values:
            logger.debug(f"Configuration overrides: {sorted(values)}")
        return cls(**values)


_TRUE = ("1", "true", "yes", "on")
_FALSE = ("0", "false", "no", "off")


def _parse_env_value(name: str, raw: str, default: Any) -> Any:
    raw = raw.strip()
    if isinstance(default, bool):
        lowered = raw.lower()
        if lowered in _TRUE:
            return True
        if lowered in _FALSE:
            return False
        raise ValueError(f"not a boolean: {raw}")
    if isinstance(default, timedelta):
        return timedelta(seconds=float(raw))
    if isinstance(default, tuple):
        return tuple(
            timedelta(seconds=float(part)) for part in raw.split(",") if part.strip()
        )
    if isinstance(default, int):
        return int(raw)
    if name == "reconciliation_interval":
        return None if raw.lower() in ("", "none", "off") else float(raw)
    return float(raw)


__all__ = ["DEFAULT_COOLDOWN_STAGES", "ReservationConfig"]
