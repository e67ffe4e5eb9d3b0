# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""Member record types."""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any

from ._codec import decode_datetime, decode_int, decode_str, encode_datetime


class StandingStatus(str, Enum):
    """Account standing, resolved by the identity collaborator.

    Only ACTIVE members may create reservations.
    """

    PENDING = "Pending"
    ACTIVE = "Active"
    INACTIVE = "Inactive"
    BLOCKED = "Blocked"


@dataclass
class Member:
    """
    The reservation-relevant slice of a community member.

    Attributes:
        id: Member identifier
        standing: Eligibility gate for new reservations
        active_reservations: Denormalized count of this member's reservations
            that still count toward the limit
        cooldown_until: End of the current abandonment penalty, if any
        failed_attempts: Number of holds this member let expire
        version: Bumped by every write to ``active_reservations``
    """

    id: str
    standing: StandingStatus = StandingStatus.ACTIVE
    active_reservations: int = 0
    cooldown_until: datetime | None = None
    failed_attempts: int = 0
    version: int = 0

    def cooldown_active(self, now: datetime) -> bool:
        return self.cooldown_until is not None and self.cooldown_until > now

    def to_mapping(self) -> dict[str, str]:
        return {
            "id": self.id,
            "standing": self.standing.value,
            "active_reservations": str(self.active_reservations),
            "cooldown_until": encode_datetime(self.cooldown_until),
            "failed_attempts": str(self.failed_attempts),
            "version": str(self.version),
        }

    @classmethod
    def from_mapping(cls, data: dict[Any, Any]) -> "Member":
        data = {decode_str(k): v for k, v in data.items()}
        return cls(
            id=decode_str(data.get("id")),
            standing=StandingStatus(
                decode_str(data.get("standing")) or StandingStatus.PENDING.value
            ),
            active_reservations=decode_int(data.get("active_reservations")),
            cooldown_until=decode_datetime(data.get("cooldown_until")),
            failed_attempts=decode_int(data.get("failed_attempts")),
            version=decode_int(data.get("version")),
        )


__all__ = ["Member", "StandingStatus"]
