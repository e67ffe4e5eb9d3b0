# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
Escalating cooldown for members who abandon holds.

The policy is plain data plus pure functions, so it can be unit tested
without a backend and swapped through configuration.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta

from ..exceptions import ConfigurationError


@dataclass(frozen=True)
class CooldownPolicy:
    """
    Maps the number of abandoned holds to a cooldown duration.

    The n-th abandonment (1-based) uses ``stages[n - 1]``; once past the
    end of the table the last stage repeats.

    Example:
        >>> policy = CooldownPolicy()
        >>> policy.duration_for(2)
        datetime.timedelta(seconds=300)
        >>> policy.duration_for(9)
        datetime.timedelta(seconds=1800)
    """

    stages: tuple[timedelta, ...] = (
        timedelta(minutes=1),
        timedelta(minutes=5),
        timedelta(minutes=30),
    )

    def __post_init__(self) -> None:
        if not self.stages:
            raise ConfigurationError("CooldownPolicy requires at least one stage")
        if any(stage <= timedelta(0) for stage in self.stages):
            raise ConfigurationError("Cooldown stages must be positive")
        object.__setattr__(self, "stages", tuple(self.stages))

    @classmethod
    def flat(cls, duration: timedelta) -> CooldownPolicy:
        """A policy that applies the same cooldown to every abandonment."""
        return cls(stages=(duration,))

    def duration_for(self, attempt: int) -> timedelta:
        if attempt < 1:
            raise ValueError(f"attempt must be >= 1, got {attempt}")
        return self.stages[min(attempt - 1, len(self.stages) - 1)]

    def compute_cooldown(self, attempt: int, now: datetime) -> datetime:
        """Return the cooldown end for the ``attempt``-th abandonment at ``now``."""
        return now + self.duration_for(attempt)

    def schedule(self, now: datetime) -> tuple[datetime, ...]:
        """Cooldown end at ``now`` for every stage, in attempt order."""
        return tuple(
            self.compute_cooldown(attempt, now)
            for attempt in range(1, len(self.stages) + 1)
        )


def remaining_seconds(until: datetime | None, now: datetime) -> int:
    """Whole seconds left until ``until``, rounded up; 0 when not in the future."""
    if until is None or until <= now:
        return 0
    return math.ceil((until - now).total_seconds())


__all__ = ["CooldownPolicy", "remaining_seconds"]
