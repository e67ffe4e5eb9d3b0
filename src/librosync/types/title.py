# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
Title (book record) types and copy counters.

A Title owns four copy counters whose sum always equals ``total_copies``.
Counters only ever change through paired moves (one counter down, another
up), see ``librosync.inventory.ledger``.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any

from ._codec import decode_int, decode_str


class CounterField(str, Enum):
    """The four copy counters of a title, named as they are persisted."""

    AVAILABLE = "available_count"
    RESERVED = "reserved_count"
    BORROWED = "borrowed_count"
    LOST = "lost_count"


class DisplayStatus(str, Enum):
    """Derived, non-authoritative status shown to members."""

    AVAILABLE = "Available"
    UNAVAILABLE = "Unavailable"
    RESERVED = "Reserved"
    BORROWED = "Borrowed"
    LOST = "Lost"


@dataclass(frozen=True)
class TitleCounters:
    """Immutable snapshot of a title's counters, carried in domain events."""

    title_id: str
    total_copies: int
    available_count: int
    reserved_count: int
    borrowed_count: int
    lost_count: int

    @property
    def display_status(self) -> DisplayStatus:
        return derive_display_status(
            self.available_count,
            self.reserved_count,
            self.borrowed_count,
            self.lost_count,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "titleId": self.title_id,
            "totalCopies": self.total_copies,
            "availableCount": self.available_count,
            "reservedCount": self.reserved_count,
            "borrowedCount": self.borrowed_count,
            "lostCount": self.lost_count,
            "displayStatus": self.display_status.value,
        }


def derive_display_status(
    available: int, reserved: int, borrowed: int, lost: int
) -> DisplayStatus:
    """
    Project counters onto a single display status.

    Precedence is Lost > Borrowed > Reserved > Available/Unavailable.
    """
    if lost > 0:
        return DisplayStatus.LOST
    if borrowed > 0:
        return DisplayStatus.BORROWED
    if reserved > 0:
        return DisplayStatus.RESERVED
    if available > 0:
        return DisplayStatus.AVAILABLE
    return DisplayStatus.UNAVAILABLE


@dataclass
class Title:
    """
    A lendable title with a finite pool of physical copies.

    Attributes:
        id: Title identifier
        total_copies: Authoritative capacity
        available_count: Copies on the shelf
        reserved_count: Copies held for a member, not yet picked up
        borrowed_count: Copies out on loan
        lost_count: Copies permanently removed from rotation
        name: Optional human-readable title
        version: Bumped by every counter write; reconciliation overwrites
            the counters only if it is unchanged since they were read
    """

    id: str
    total_copies: int
    available_count: int = 0
    reserved_count: int = 0
    borrowed_count: int = 0
    lost_count: int = 0
    name: str = ""
    version: int = 0

    def __post_init__(self) -> None:
        for attr in (
            "total_copies",
            "available_count",
            "reserved_count",
            "borrowed_count",
            "lost_count",
        ):
            if getattr(self, attr) < 0:
                raise ValueError(f"{attr} must be >= 0")

    @classmethod
    def with_copies(cls, title_id: str, copies: int, name: str = "") -> "Title":
        """Create a title with every copy available."""
        return cls(
            id=title_id,
            total_copies=copies,
            available_count=copies,
            name=name,
        )

    @property
    def accounted_copies(self) -> int:
        return (
            self.available_count
            + self.reserved_count
            + self.borrowed_count
            + self.lost_count
        )

    @property
    def is_consistent(self) -> bool:
        """Whether the counters add up to ``total_copies``."""
        return self.accounted_copies == self.total_copies

    @property
    def display_status(self) -> DisplayStatus:
        return derive_display_status(
            self.available_count,
            self.reserved_count,
            self.borrowed_count,
            self.lost_count,
        )

    def get_counter(self, counter: CounterField) -> int:
        return int(getattr(self, counter.value))

    def counters(self) -> TitleCounters:
        return TitleCounters(
            title_id=self.id,
            total_copies=self.total_copies,
            available_count=self.available_count,
            reserved_count=self.reserved_count,
            borrowed_count=self.borrowed_count,
            lost_count=self.lost_count,
        )

    def to_mapping(self) -> dict[str, str]:
        return {
            "id": self.id,
            "name": self.name,
            "total_copies": str(self.total_copies),
            CounterField.AVAILABLE.value: str(self.available_count),
            CounterField.RESERVED.value: str(self.reserved_count),
            CounterField.BORROWED.value: str(self.borrowed_count),
            CounterField.LOST.value: str(self.lost_count),
            "version": str(self.version),
        }

    @classmethod
    def from_mapping(cls, data: dict[Any, Any]) -> "Title":
        data = {decode_str(k): v for k, v in data.items()}
        return cls(
            id=decode_str(data.get("id")),
            name=decode_str(data.get("name")),
            total_copies=decode_int(data.get("total_copies")),
            available_count=decode_int(data.get(CounterField.AVAILABLE.value)),
            reserved_count=decode_int(data.get(CounterField.RESERVED.value)),
            borrowed_count=decode_int(data.get(CounterField.BORROWED.value)),
            lost_count=decode_int(data.get(CounterField.LOST.value)),
            version=decode_int(data.get("version")),
        )


__all__ = [
    "CounterField",
    "DisplayStatus",
    "Title",
    "TitleCounters",
    "derive_display_status",
]
