# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
Reservation store: persistence of reservation records and their status.

``prepare_transition`` validates an event against the lifecycle table and
builds the updated record. The write is a compare-and-set on the expected
current status, made together with the copy move by the inventory ledger.
Of two concurrent transitions on one reservation exactly one is written; the
other gets the error from ``lost_race``.
"""

import dataclasses
import logging
import uuid
from datetime import datetime, timedelta
from typing import Any

from ..backends.base import BaseBackend
from ..exceptions import InvalidTransitionError, ReservationNotFoundError
from ..retry import RetryPolicy
from ..types import (
    EVENT_FOR_TARGET,
    Reservation,
    ReservationEvent,
    ReservationStatus,
    next_status,
)

logger = logging.getLogger(__name__)


def _newest_first(reservations: list[Reservation]) -> list[Reservation]:
    return sorted(reservations, key=lambda r: (r.reserved_at, r.id), reverse=True)


class ReservationStore:
    """CRUD and guarded status transitions for reservations."""

    def __init__(self, backend: BaseBackend, retry: RetryPolicy | None = None) -> None:
        self._backend = backend
        self._retry = retry or RetryPolicy()

    def new_hold(
        self,
        title_id: str,
        member_id: str,
        now: datetime,
        hold_window: timedelta,
    ) -> Reservation:
        """Build a ``reserved`` reservation expiring ``hold_window`` from now.

        Nothing is stored; ``InventoryLedger.try_reserve_copy`` writes the
        record together with its copy.
        """
        return Reservation(
            id=uuid.uuid4().hex,
            title_id=title_id,
            member_id=member_id,
            reserved_at=now,
            expires_at=now + hold_window,
        )

    async def get(self, reservation_id: str) -> Reservation:
        reservation = await self._retry.call(
            self._backend.get_reservation, reservation_id, operation="get_reservation"
        )
        if reservation is None:
            raise ReservationNotFoundError(reservation_id)
        return reservation

    def prepare_transition(
        self,
        reservation: Reservation,
        event: ReservationEvent,
        now: datetime,
        **changes: Any,
    ) -> Reservation:
        """
        Validate ``event`` against the lifecycle and build the updated record.

        Nothing is written here; the caller stores the result with
        ``transition_reservation``, which re-checks the status atomically.

        Args:
            reservation: The reservation as last read by the caller
            event: Lifecycle event to apply
            now: Transition time, recorded as ``closed_at`` on terminal states
            **changes: Extra field values to write (e.g. ``due_date``)

        Raises:
            InvalidTransitionError: If the event is illegal from the current status
        """
        target = next_status(reservation.status, event)
        if target is None:
            raise InvalidTransitionError(
                reservation.id, reservation.status.value, _target_name(event)
            )

        if target.is_terminal:
            changes.setdefault("closed_at", now)
        return dataclasses.replace(reservation, status=target, **changes)

    async def lost_race(
        self, reservation: Reservation, target: ReservationStatus
    ) -> InvalidTransitionError:
        """Build the error for a status compare-and-set that another writer won."""
        current = await self.get(reservation.id)
        logger.info(
            f"Lost transition race on reservation {reservation.id}: "
            f"expected '{reservation.status.value}', found '{current.status.value}'"
        )
        return InvalidTransitionError(reservation.id, current.status.value, target.value)

    async def list_for_member(self, member_id: str) -> list[Reservation]:
        """A member's reservations, newest first."""
        reservations = await self._retry.call(
            self._backend.list_reservations,
            member_id=member_id,
            operation="list_reservations",
        )
        return _newest_first(reservations)

    async def list_all(self, status: ReservationStatus | None = None) -> list[Reservation]:
        """All reservations, optionally filtered by status, newest first."""
        reservations = await self._retry.call(
            self._backend.list_reservations,
            status=status,
            operation="list_reservations",
        )
        return _newest_first(reservations)

    async def find_active(self, member_id: str, title_id: str) -> Reservation | None:
        """Return the member's reserved or approved reservation for a title, if any."""
        for reservation in await self.list_for_member(member_id):
            if reservation.title_id == title_id and reservation.status.is_active:
                return reservation
        return None

    async def find_expired(self, now: datetime) -> list[Reservation]:
        reservations = await self._retry.call(
            self._backend.find_expired_holds, now, operation="find_expired_holds"
        )
        return sorted(reservations, key=lambda r: r.expires_at)

    async def find_expiring_before(self, deadline: datetime) -> list[Reservation]:
        return await self._retry.call(
            self._backend.find_holds_expiring_before,
            deadline,
            operation="find_holds_expiring_before",
        )

    async def mark_reminder_sent(self, reservation_id: str) -> bool:
        return await self._backend.mark_reminder_sent(reservation_id)

    async def count_by_status(self, title_id: str) -> dict[ReservationStatus, int]:
        return await self._retry.call(
            self._backend.count_reservations_by_status,
            title_id,
            operation="count_reservations_by_status",
        )


def _target_name(event: ReservationEvent) -> str:
    for target, candidate in EVENT_FOR_TARGET.items():
        if candidate is event:
            return target.value
    return event.value


__all__ = ["ReservationStore"]
