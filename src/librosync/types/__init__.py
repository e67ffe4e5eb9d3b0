# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
Core record types for the reservation engine.

Exports:
    Title, TitleCounters, CounterField, DisplayStatus: Title inventory
    Member, StandingStatus: Member eligibility and counters
    Reservation, ReservationStatus, ReservationEvent: Reservation lifecycle
    Domain events: ReservationCreated, ReservationUpdated,
        ReservationExpiringSoon, InventoryReconciled
"""

from .events import (
    DomainEvent,
    InventoryReconciled,
    ReservationCreated,
    ReservationExpiringSoon,
    ReservationUpdated,
)
from .member import Member, StandingStatus
from .reservation import (
    EVENT_FOR_TARGET,
    TERMINAL_STATUSES,
    TRANSITIONS,
    Reservation,
    ReservationEvent,
    ReservationStatus,
    next_status,
    source_status,
)
from .title import (
    CounterField,
    DisplayStatus,
    Title,
    TitleCounters,
    derive_display_status,
)

__all__ = [
    "EVENT_FOR_TARGET",
    "TERMINAL_STATUSES",
    "TRANSITIONS",
    "CounterField",
    "DisplayStatus",
    "DomainEvent",
    "InventoryReconciled",
    "Member",
    "Reservation",
    "ReservationCreated",
    "ReservationEvent",
    "ReservationExpiringSoon",
    "ReservationStatus",
    "ReservationUpdated",
    "StandingStatus",
    "Title",
    "TitleCounters",
    "derive_display_status",
    "next_status",
    "source_status",
]
