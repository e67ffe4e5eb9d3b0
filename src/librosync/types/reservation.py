# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
Reservation record and its lifecycle state machine.

Lifecycle:

    reserved --approve--> approved --return--> completed
    reserved --decline--> declined
    reserved --cancel---> cancelled
    reserved --expire---> expired
    approved --lose-----> lost

``reserved`` is the only initial state. ``approved`` is the only
intermediate state. Everything else is terminal.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any

from ._codec import (
    decode_bool,
    decode_datetime,
    decode_str,
    encode_bool,
    encode_datetime,
)


class ReservationStatus(str, Enum):
    RESERVED = "reserved"
    APPROVED = "approved"
    DECLINED = "declined"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    COMPLETED = "completed"
    LOST = "lost"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @property
    def is_active(self) -> bool:
        """Whether a reservation in this status still occupies a copy."""
        return self in (ReservationStatus.RESERVED, ReservationStatus.APPROVED)


class ReservationEvent(str, Enum):
    """Events that drive the lifecycle."""

    APPROVE = "approve"
    DECLINE = "decline"
    CANCEL = "cancel"
    EXPIRE = "expire"
    RETURN = "return"
    LOSE = "lose"


TERMINAL_STATUSES = frozenset(
    {
        ReservationStatus.DECLINED,
        ReservationStatus.CANCELLED,
        ReservationStatus.EXPIRED,
        ReservationStatus.COMPLETED,
        ReservationStatus.LOST,
    }
)

TRANSITIONS: dict[tuple[ReservationStatus, ReservationEvent], ReservationStatus] = {
    (ReservationStatus.RESERVED, ReservationEvent.APPROVE): ReservationStatus.APPROVED,
    (ReservationStatus.RESERVED, ReservationEvent.DECLINE): ReservationStatus.DECLINED,
    (ReservationStatus.RESERVED, ReservationEvent.CANCEL): ReservationStatus.CANCELLED,
    (ReservationStatus.RESERVED, ReservationEvent.EXPIRE): ReservationStatus.EXPIRED,
    (ReservationStatus.APPROVED, ReservationEvent.RETURN): ReservationStatus.COMPLETED,
    (ReservationStatus.APPROVED, ReservationEvent.LOSE): ReservationStatus.LOST,
}

# Each target status is reached by exactly one event
EVENT_FOR_TARGET: dict[ReservationStatus, ReservationEvent] = {
    target: event for (_, event), target in TRANSITIONS.items()
}


def next_status(
    current: ReservationStatus, event: ReservationEvent
) -> ReservationStatus | None:
    """Return the status ``event`` leads to from ``current``, or None if illegal."""
    return TRANSITIONS.get((current, event))


def source_status(event: ReservationEvent) -> ReservationStatus:
    """Return the only status from which ``event`` is legal."""
    for (source, candidate), _ in TRANSITIONS.items():
        if candidate is event:
            return source
    raise ValueError(f"Unknown reservation event: {event}")


@dataclass
class Reservation:
    """
    A member's claim on one copy of a title.

    ``title_id``, ``member_id`` and ``reserved_at`` never change after
    creation. ``status`` and the date fields only change through the
    transitions in ``TRANSITIONS``.

    Attributes:
        id: Reservation identifier
        title_id: Reserved title
        member_id: Owning member
        status: Lifecycle status
        reserved_at: Creation time
        expires_at: Pickup deadline for the hold
        due_date: Return deadline, set on approval
        approved_at: Approval time
        returned_at: Return time
        closed_at: Time the reservation reached a terminal status
        cancelled_reason: Free-text reason recorded on cancel/decline
        reminder_sent: Whether the expiring-soon reminder went out
    """

    id: str
    title_id: str
    member_id: str
    reserved_at: datetime
    expires_at: datetime
    status: ReservationStatus = ReservationStatus.RESERVED
    due_date: datetime | None = None
    approved_at: datetime | None = None
    returned_at: datetime | None = None
    closed_at: datetime | None = None
    cancelled_reason: str | None = None
    reminder_sent: bool = False

    def to_mapping(self) -> dict[str, str]:
        return {
            "id": self.id,
            "title_id": self.title_id,
            "member_id": self.member_id,
            "status": self.status.value,
            "reserved_at": encode_datetime(self.reserved_at),
            "expires_at": encode_datetime(self.expires_at),
            "due_date": encode_datetime(self.due_date),
            "approved_at": encode_datetime(self.approved_at),
            "returned_at": encode_datetime(self.returned_at),
            "closed_at": encode_datetime(self.closed_at),
            "cancelled_reason": self.cancelled_reason or "",
            "reminder_sent": encode_bool(self.reminder_sent),
        }

    @classmethod
    def from_mapping(cls, data: dict[Any, Any]) -> "Reservation":
        data = {decode_str(k): v for k, v in data.items()}
        reserved_at = decode_datetime(data.get("reserved_at"))
        expires_at = decode_datetime(data.get("expires_at"))
        if reserved_at is None or expires_at is None:
            raise ValueError(f"Reservation {data.get('id')!r} is missing timestamps")
        return cls(
            id=decode_str(data.get("id")),
            title_id=decode_str(data.get("title_id")),
            member_id=decode_str(data.get("member_id")),
            status=ReservationStatus(decode_str(data.get("status"))),
            reserved_at=reserved_at,
            expires_at=expires_at,
            due_date=decode_datetime(data.get("due_date")),
            approved_at=decode_datetime(data.get("approved_at")),
            returned_at=decode_datetime(data.get("returned_at")),
            closed_at=decode_datetime(data.get("closed_at")),
            cancelled_reason=decode_str(data.get("cancelled_reason")) or None,
            reminder_sent=decode_bool(data.get("reminder_sent")),
        )

    def to_dict(self) -> dict[str, Any]:
        """API-facing representation."""
        return {
            "id": self.id,
            "titleId": self.title_id,
            "memberId": self.member_id,
            "status": self.status.value,
            "reservedAt": self.reserved_at.isoformat(),
            "expiresAt": self.expires_at.isoformat(),
            "dueDate": self.due_date.isoformat() if self.due_date else None,
            "approvedAt": self.approved_at.isoformat() if self.approved_at else None,
            "returnedAt": self.returned_at.isoformat() if self.returned_at else None,
            "cancelledReason": self.cancelled_reason,
        }


__all__ = [
    "EVENT_FOR_TARGET",
    "TERMINAL_STATUSES",
    "TRANSITIONS",
    "Reservation",
    "ReservationEvent",
    "ReservationStatus",
    "next_status",
    "source_status",
]
