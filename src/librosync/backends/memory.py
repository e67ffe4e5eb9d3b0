# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
MemoryBackend for LibroSync

This module provides an in-memory backend implementation that doesn't require Redis.
Perfect for testing, development, and single-process applications.
"""

import asyncio
import dataclasses
import logging
from collections.abc import Sequence
from datetime import datetime

from ..exceptions import (
    ConcurrentUpdateError,
    MemberNotFoundError,
    ReservationNotFoundError,
    TitleNotFoundError,
)
from ..types import (
    CounterField,
    Member,
    Reservation,
    ReservationStatus,
    Title,
)
from .base import (
    TRANSITION_FIELDS,
    BaseBackend,
    HealthCheckResult,
    HoldOutcome,
    HoldResult,
    MoveResult,
    StatusChange,
    TransitionResult,
)

logger = logging.getLogger(__name__)


class MemoryBackend(BaseBackend):
    """
    An in-memory backend implementation for LibroSync.

    This backend provides a simple, Redis-free implementation suitable for:
    - Testing and development
    - Single-process applications

    Key Features:
    - Pure in-memory dict-based storage
    - Async-safe operations using asyncio.Lock
    - Records are copied on the way in and out, so callers never share
      mutable state with the store

    Note:
        This backend is NOT suitable for:
        - Multi-process applications
        - Distributed systems
    """

    def __init__(self, namespace: str = "librosync_memory") -> None:
        """
        Initialize the in-memory backend.

        Args:
            namespace: Namespace for key isolation (for compatibility)
        """
        super().__init__(namespace)

        self._titles: dict[str, Title] = {}
        self._members: dict[str, Member] = {}
        self._reservations: dict[str, Reservation] = {}

        # Async lock for atomic guarded mutations
        self._lock = asyncio.Lock()

        logger.debug(f"Initialized MemoryBackend with namespace '{namespace}'")

    # ==========================================================================
    # Titles
    # ==========================================================================

    async def upsert_title(self, title: Title) -> None:
        async with self._lock:
            self._titles[title.id] = dataclasses.replace(title)

    async def get_title(self, title_id: str) -> Title | None:
        async with self._lock:
            title = self._titles.get(title_id)
            return dataclasses.replace(title) if title else None

    async def list_title_ids(self) -> list[str]:
        async with self._lock:
            return list(self._titles)

    async def move_copy(
        self, title_id: str, source: CounterField, target: CounterField
    ) -> MoveResult:
        async with self._lock:
            title = self._titles.get(title_id)
            if title is None:
                raise TitleNotFoundError(title_id)

            applied = title.get_counter(source) > 0
            if applied:
                setattr(title, source.value, title.get_counter(source) - 1)
                setattr(title, target.value, title.get_counter(target) + 1)
                title.version += 1
            return MoveResult(applied=applied, title=dataclasses.replace(title))

    async def overwrite_title_counters(
        self,
        title_id: str,
        available: int,
        reserved: int,
        borrowed: int,
        lost: int,
        expected_version: int | None = None,
    ) -> Title:
        async with self._lock:
            title = self._titles.get(title_id)
            if title is None:
                raise TitleNotFoundError(title_id)
            if expected_version is not None and title.version != expected_version:
                raise ConcurrentUpdateError(
                    f"Title {title_id} is at version {title.version}, "
                    f"expected {expected_version}"
                )
            title.available_count = available
            title.reserved_count = reserved
            title.borrowed_count = borrowed
            title.lost_count = lost
            title.version += 1
            return dataclasses.replace(title)

    # ==========================================================================
    # Members
    # ==========================================================================

    async def upsert_member(self, member: Member) -> None:
        async with self._lock:
            self._members[member.id] = dataclasses.replace(member)

    async def get_member(self, member_id: str) -> Member | None:
        async with self._lock:
            member = self._members.get(member_id)
            return dataclasses.replace(member) if member else None

    async def list_member_ids(self) -> list[str]:
        async with self._lock:
            return list(self._members)

    def _require_member_locked(self, member_id: str) -> Member:
        member = self._members.get(member_id)
        if member is None:
            raise MemberNotFoundError(member_id)
        return member

    async def set_active_reservations(
        self, member_id: str, value: int, expected_version: int | None = None
    ) -> None:
        async with self._lock:
            member = self._require_member_locked(member_id)
            if expected_version is not None and member.version != expected_version:
                raise ConcurrentUpdateError(
                    f"Member {member_id} is at version {member.version}, "
                    f"expected {expected_version}"
                )
            member.active_reservations = value
            member.version += 1

    async def record_abandonment(
        self, member_id: str, schedule: Sequence[datetime]
    ) -> tuple[int, datetime]:
        async with self._lock:
            member = self._require_member_locked(member_id)
            member.failed_attempts += 1
            candidate = schedule[min(member.failed_attempts, len(schedule)) - 1]
            if member.cooldown_until is None or member.cooldown_until < candidate:
                member.cooldown_until = candidate
            return member.failed_attempts, member.cooldown_until

    # ==========================================================================
    # Reservations
    # ==========================================================================

    async def place_hold(
        self, reservation: Reservation, member_limit: int | None = None
    ) -> HoldResult:
        async with self._lock:
            title = self._titles.get(reservation.title_id)
            if title is None:
                raise TitleNotFoundError(reservation.title_id)
            member = self._require_member_locked(reservation.member_id)

            if member_limit is not None and member.active_reservations >= member_limit:
                outcome = HoldOutcome.LIMIT_REACHED
            elif title.available_count <= 0:
                outcome = HoldOutcome.NO_COPIES
            else:
                outcome = HoldOutcome.PLACED
                title.available_count -= 1
                title.reserved_count += 1
                title.version += 1
                member.active_reservations += 1
                member.version += 1
                self._reservations[reservation.id] = dataclasses.replace(reservation)

            return HoldResult(
                outcome=outcome,
                title=dataclasses.replace(title),
                active_reservations=member.active_reservations,
            )

    async def withdraw_hold(self, reservation: Reservation) -> bool:
        async with self._lock:
            stored = self._reservations.get(reservation.id)
            if stored is None or stored.status is not ReservationStatus.RESERVED:
                return False
            del self._reservations[reservation.id]

            title = self._titles.get(stored.title_id)
            if title is not None and title.reserved_count > 0:
                title.reserved_count -= 1
                title.available_count += 1
                title.version += 1

            member = self._members.get(stored.member_id)
            if member is not None and member.active_reservations > 0:
                member.active_reservations -= 1
                member.version += 1
            return True

    async def get_reservation(self, reservation_id: str) -> Reservation | None:
        async with self._lock:
            reservation = self._reservations.get(reservation_id)
            return dataclasses.replace(reservation) if reservation else None

    async def transition_reservation(
        self,
        change: StatusChange,
        move: tuple[CounterField, CounterField] | None = None,
    ) -> TransitionResult:
        updated = change.updated
        async with self._lock:
            stored = self._reservations.get(updated.id)
            if stored is None:
                raise ReservationNotFoundError(updated.id)
            title = self._titles.get(updated.title_id)
            if move is not None and title is None:
                raise TitleNotFoundError(updated.title_id)
            member = self._members.get(updated.member_id)
            if change.member_delta and member is None:
                raise MemberNotFoundError(updated.member_id)

            snapshot = dataclasses.replace(title) if title and move else None
            if stored.status is not change.expected:
                return TransitionResult(written=False, title=snapshot)
            for name in TRANSITION_FIELDS:
                setattr(stored, name, getattr(updated, name))

            moved = False
            if title is not None and move is not None:
                source, target = move
                moved = title.get_counter(source) > 0
                if moved:
                    setattr(title, source.value, title.get_counter(source) - 1)
                    setattr(title, target.value, title.get_counter(target) + 1)

            adjusted = False
            if member is not None and change.member_delta:
                proposed = member.active_reservations + change.member_delta
                adjusted = proposed >= 0
                if adjusted:
                    member.active_reservations = proposed

            # The reservation counts toward both records
            if title is not None:
                title.version += 1
            if member is not None:
                member.version += 1

            return TransitionResult(
                written=True,
                moved=moved,
                member_adjusted=adjusted,
                title=dataclasses.replace(title) if title and move else None,
            )

    async def list_reservations(
        self,
        member_id: str | None = None,
        title_id: str | None = None,
        status: ReservationStatus | None = None,
    ) -> list[Reservation]:
        async with self._lock:
            return [
                dataclasses.replace(r)
                for r in self._reservations.values()
                if (member_id is None or r.member_id == member_id)
                and (title_id is None or r.title_id == title_id)
                and (status is None or r.status is status)
            ]

    async def find_expired_holds(self, now: datetime) -> list[Reservation]:
        async with self._lock:
            return [
                dataclasses.replace(r)
                for r in self._reservations.values()
                if r.status is ReservationStatus.RESERVED and r.expires_at < now
            ]

    async def find_holds_expiring_before(self, deadline: datetime) -> list[Reservation]:
        async with self._lock:
            return [
                dataclasses.replace(r)
                for r in self._reservations.values()
                if r.status is ReservationStatus.RESERVED and r.expires_at <= deadline
            ]

    async def mark_reminder_sent(self, reservation_id: str) -> bool:
        async with self._lock:
            reservation = self._reservations.get(reservation_id)
            if reservation is None:
                raise ReservationNotFoundError(reservation_id)
            if reservation.reminder_sent:
                return False
            reservation.reminder_sent = True
            return True

    # ==========================================================================
    # Lifecycle
    # ==========================================================================

    async def health_check(self) -> HealthCheckResult:
        """Perform a health check on the backend."""
        async with self._lock:
            return HealthCheckResult(
                healthy=True,
                backend_type="memory",
                namespace=self.namespace,
                metadata={
                    "titles_count": len(self._titles),
                    "members_count": len(self._members),
                    "reservations_count": len(self._reservations),
                },
            )

    async def clear(self) -> None:
        async with self._lock:
            self._titles.clear()
            self._members.clear()
            self._reservations.clear()
