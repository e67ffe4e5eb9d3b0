# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
Base Backend for LibroSync

This module provides the BaseBackend abstract class that defines the storage
contract shared by all backend implementations.

Every method that changes a counter or a reservation status is a single
atomic step in the concrete backend (a lock-guarded block in memory, a Lua
script in Redis). Higher layers compose these steps and never read-modify-write
a counter themselves.

A new hold is stored together with its copy and member counters in one step
(``place_hold``), so at no point does a reserved copy exist without its
reservation record. A status change is stored together with its copy move
and member count (``transition_reservation``), so reconciliation never sees
one without the other. Reconciliation overwrites are conditional on the
record ``version`` it read.
"""

import abc
import logging
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any

from ..types import (
    CounterField,
    Member,
    Reservation,
    ReservationStatus,
    Title,
)

logger = logging.getLogger(__name__)

# Reservation fields a status transition may rewrite. ``title_id``,
# ``member_id`` and ``reserved_at`` are immutable and ``reminder_sent`` is
# owned by ``mark_reminder_sent``.
TRANSITION_FIELDS: tuple[str, ...] = (
    "status",
    "expires_at",
    "due_date",
    "approved_at",
    "returned_at",
    "closed_at",
    "cancelled_reason",
)


@dataclass
class HealthCheckResult:
    """
    Structured health check result for backend monitoring.

    Attributes:
        healthy: Whether the backend is operational
        backend_type: Type of backend (e.g., 'redis', 'memory')
        namespace: Backend namespace
        error: Error message if unhealthy
        metadata: Additional backend-specific information
    """

    healthy: bool
    backend_type: str
    namespace: str
    error: str | None = None
    metadata: dict[str, Any] | None = None


@dataclass
class MoveResult:
    """
    Outcome of a guarded counter move.

    Attributes:
        applied: False when the source counter was already zero
        title: Title snapshot taken atomically after the move
    """

    applied: bool
    title: Title


class HoldOutcome(str, Enum):
    """How an attempt to place a hold ended."""

    PLACED = "placed"
    NO_COPIES = "no_copies"
    LIMIT_REACHED = "limit_reached"


@dataclass
class HoldResult:
    """
    Outcome of ``place_hold``.

    Attributes:
        outcome: Whether the hold was stored, or which guard refused it
        title: Title snapshot taken atomically with the attempt
        active_reservations: The member's active count after the attempt
    """

    outcome: HoldOutcome
    title: Title
    active_reservations: int

    @property
    def placed(self) -> bool:
        return self.outcome is HoldOutcome.PLACED


@dataclass(frozen=True)
class StatusChange:
    """
    A reservation status change to write with ``transition_reservation``.

    Attributes:
        original: The reservation as last read; its status is the expected one
        updated: The reservation as it should be written
        member_delta: Change to the owner's active count (guarded at zero)
    """

    original: Reservation
    updated: Reservation
    member_delta: int = 0

    @property
    def expected(self) -> ReservationStatus:
        return self.original.status

    def reversed(self, member_adjusted: bool = True) -> "StatusChange":
        """The change that puts ``original`` back."""
        return StatusChange(
            original=self.updated,
            updated=self.original,
            member_delta=-self.member_delta if member_adjusted else 0,
        )


@dataclass
class TransitionResult:
    """
    Outcome of ``transition_reservation``.

    Attributes:
        written: False when the stored status differed; nothing changed then
        moved: Whether the requested copy move was applied
        member_adjusted: Whether the requested member delta was applied
        title: Title snapshot taken in the same step (None without a move)
    """

    written: bool
    moved: bool = False
    member_adjusted: bool = False
    title: Title | None = None


class BaseBackend(abc.ABC):
    """
    An abstract base class that defines the common interface for all backend
    implementations in LibroSync.

    Subclasses must implement all abstract methods. Lookups of unknown records
    return None; guarded mutations on unknown records raise the matching
    ``*NotFoundError``.
    """

    def __init__(self, namespace: str = "librosync"):
        """
        Initialize the backend with a namespace for isolation.

        Args:
            namespace: Namespace for isolating data across different instances
        """
        self.namespace = namespace

    # ==========================================================================
    # Titles
    # ==========================================================================

    @abc.abstractmethod
    async def upsert_title(self, title: Title) -> None:
        """Create or fully replace a title record."""
        pass

    @abc.abstractmethod
    async def get_title(self, title_id: str) -> Title | None:
        pass

    @abc.abstractmethod
    async def list_title_ids(self) -> list[str]:
        pass

    @abc.abstractmethod
    async def move_copy(
        self, title_id: str, source: CounterField, target: CounterField
    ) -> MoveResult:
        """
        Atomically move one copy between two counters of a title.

        If ``source > 0`` then ``source -= 1``, ``target += 1`` and
        ``version += 1`` in one indivisible step; otherwise nothing changes
        and ``applied`` is False.

        Raises:
            TitleNotFoundError: If the title does not exist
        """
        pass

    @abc.abstractmethod
    async def overwrite_title_counters(
        self,
        title_id: str,
        available: int,
        reserved: int,
        borrowed: int,
        lost: int,
        expected_version: int | None = None,
    ) -> Title:
        """
        Replace all four counters of a title and bump its version.
        Reconciliation only.

        Args:
            expected_version: If given, write only while the stored version
                still equals it

        Raises:
            TitleNotFoundError: If the title does not exist
            ConcurrentUpdateError: If the stored version differs
        """
        pass

    # ==========================================================================
    # Members
    # ==========================================================================

    @abc.abstractmethod
    async def upsert_member(self, member: Member) -> None:
        pass

    @abc.abstractmethod
    async def get_member(self, member_id: str) -> Member | None:
        pass

    @abc.abstractmethod
    async def list_member_ids(self) -> list[str]:
        pass

    @abc.abstractmethod
    async def set_active_reservations(
        self, member_id: str, value: int, expected_version: int | None = None
    ) -> None:
        """
        Overwrite a member's active count and bump its version.
        Reconciliation only.

        Raises:
            MemberNotFoundError: If the member does not exist
            ConcurrentUpdateError: If ``expected_version`` is given and the
                stored version differs
        """
        pass

    @abc.abstractmethod
    async def record_abandonment(
        self, member_id: str, schedule: Sequence[datetime]
    ) -> tuple[int, datetime]:
        """
        Count an abandoned hold and extend the cooldown, in one step.

        Increments ``failed_attempts`` to ``n``, then moves ``cooldown_until``
        to ``schedule[min(n, len(schedule)) - 1]`` unless a later cooldown is
        already stored.

        Args:
            schedule: Cooldown end for the 1st, 2nd, ... abandonment; the last
                entry repeats

        Returns:
            The new attempt count and the cooldown end in effect

        Raises:
            MemberNotFoundError: If the member does not exist
        """
        pass

    # ==========================================================================
    # Reservations
    # ==========================================================================

    @abc.abstractmethod
    async def place_hold(
        self, reservation: Reservation, member_limit: int | None = None
    ) -> HoldResult:
        """
        Atomically store a new ``reserved`` reservation with its counters.

        In one indivisible step: if the member is below ``member_limit`` and
        the title has an available copy, move one copy from available to
        reserved, store ``reservation`` with its index entries and add one to
        the member's active count. Otherwise nothing changes. The member
        limit is checked first.

        Raises:
            TitleNotFoundError: If the title does not exist
            MemberNotFoundError: If the member does not exist
        """
        pass

    @abc.abstractmethod
    async def withdraw_hold(self, reservation: Reservation) -> bool:
        """
        Atomically undo ``place_hold``. Compensation only.

        If the reservation is stored and still ``reserved``, remove it with
        its index entries, move one copy from reserved back to available and
        take one off the member's active count (each counter only when above
        zero).

        Returns:
            True if a hold was withdrawn, False if there was none to withdraw
        """
        pass

    @abc.abstractmethod
    async def get_reservation(self, reservation_id: str) -> Reservation | None:
        pass

    @abc.abstractmethod
    async def transition_reservation(
        self,
        change: StatusChange,
        move: tuple[CounterField, CounterField] | None = None,
    ) -> TransitionResult:
        """
        Compare-and-set a reservation's status, with its counters, in one step.

        Writes the ``TRANSITION_FIELDS`` of ``change.updated`` only if the
        stored status still equals ``change.expected``. In the same step, and
        only if that write happens:

        - ``move`` (source, target) moves one copy of the reservation's title
          unless the source counter is already zero
        - ``change.member_delta`` is added to the owner's active count unless
          that would go below zero
        - the title and member versions are bumped, since the reservation
          counts toward both

        Raises:
            ReservationNotFoundError: If the reservation does not exist
            TitleNotFoundError: If ``move`` is given and the title does not exist
            MemberNotFoundError: If a member delta is given and the member
                does not exist
        """
        pass

    @abc.abstractmethod
    async def list_reservations(
        self,
        member_id: str | None = None,
        title_id: str | None = None,
        status: ReservationStatus | None = None,
    ) -> list[Reservation]:
        """Return reservations matching every given filter, in no particular order."""
        pass

    @abc.abstractmethod
    async def find_expired_holds(self, now: datetime) -> list[Reservation]:
        """Return ``reserved`` reservations whose ``expires_at`` is before ``now``."""
        pass

    @abc.abstractmethod
    async def find_holds_expiring_before(self, deadline: datetime) -> list[Reservation]:
        """Return ``reserved`` reservations with ``expires_at <= deadline``."""
        pass

    @abc.abstractmethod
    async def mark_reminder_sent(self, reservation_id: str) -> bool:
        """
        Set the reminder flag if it is not set yet.

        Returns:
            True only for the caller that set the flag
        """
        pass

    async def count_reservations_by_status(
        self, title_id: str
    ) -> dict[ReservationStatus, int]:
        """Count a title's reservations per status."""
        counts = dict.fromkeys(ReservationStatus, 0)
        for reservation in await self.list_reservations(title_id=title_id):
            counts[reservation.status] += 1
        return counts

    # ==========================================================================
    # Lifecycle
    # ==========================================================================

    @abc.abstractmethod
    async def health_check(self) -> HealthCheckResult:
        pass

    @abc.abstractmethod
    async def clear(self) -> None:
        """Remove every record in this backend's namespace."""
        pass

    async def close(self) -> None:
        """Release connections and other resources."""
        return None
