# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
Domain events emitted to the notification collaborator.

Events are immutable and carry everything a real-time client needs to
refresh its view, so sinks never have to read back from storage.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, ClassVar

from .reservation import Reservation, ReservationStatus
from .title import TitleCounters


@dataclass(frozen=True)
class DomainEvent:
    """Base class for all emitted events."""

    name: ClassVar[str] = "domainEvent"
    occurred_at: datetime = field(
        default_factory=lambda: datetime.now(timezone.utc), kw_only=True
    )

    def to_payload(self) -> dict[str, Any]:
        return {"event": self.name, "occurredAt": self.occurred_at.isoformat()}


@dataclass(frozen=True)
class ReservationCreated(DomainEvent):
    name: ClassVar[str] = "reservationCreated"

    reservation: Reservation
    counters: TitleCounters

    def to_payload(self) -> dict[str, Any]:
        payload = super().to_payload()
        payload["reservation"] = self.reservation.to_dict()
        payload["titleCounters"] = self.counters.to_dict()
        return payload


@dataclass(frozen=True)
class ReservationUpdated(DomainEvent):
    """Emitted after every status transition, including expiry."""

    name: ClassVar[str] = "reservationUpdated"

    reservation: Reservation
    status: ReservationStatus
    counters: TitleCounters

    def to_payload(self) -> dict[str, Any]:
        payload = super().to_payload()
        payload["reservation"] = self.reservation.to_dict()
        payload["status"] = self.status.value
        payload["titleCounters"] = self.counters.to_dict()
        return payload


@dataclass(frozen=True)
class ReservationExpiringSoon(DomainEvent):
    name: ClassVar[str] = "reservationExpiringSoon"

    reservation: Reservation

    def to_payload(self) -> dict[str, Any]:
        payload = super().to_payload()
        payload["reservation"] = self.reservation.to_dict()
        payload["expiresAt"] = self.reservation.expires_at.isoformat()
        return payload


@dataclass(frozen=True)
class InventoryReconciled(DomainEvent):
    """Emitted when reconciliation rewrote a title's counters."""

    name: ClassVar[str] = "inventoryReconciled"

    before: TitleCounters
    after: TitleCounters

    def to_payload(self) -> dict[str, Any]:
        payload = super().to_payload()
        payload["before"] = self.before.to_dict()
        payload["titleCounters"] = self.after.to_dict()
        return payload


__all__ = [
    "DomainEvent",
    "InventoryReconciled",
    "ReservationCreated",
    "ReservationExpiringSoon",
    "ReservationUpdated",
]
