# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
Inventory ledger: the only writer of title copy counters.

Every operation is one guarded move between two counters, executed as a
single atomic backend step, so ``available + reserved + borrowed + lost``
stays equal to ``total_copies`` whatever interleaving occurs.

    try_reserve_copy      available -> reserved   (stores the hold with it)
    release_to_available  reserved  -> available
    promote_to_borrowed   reserved  -> borrowed
    return_copy           borrowed  -> available
    mark_lost             borrowed  -> lost

Engine transitions pass a ``StatusChange`` to the move, and the reservation
status, the copy move and the member's active count are then written in one
backend step.

A move whose source counter is already zero changes nothing. It is logged
as drift and left to the reconciliation job.

``try_reserve_copy`` is the exception: the copy move, the reservation record
and the member's active count are written by one ``place_hold`` step, and
refused without any change when no copy is left or the member is at the
limit. ``withdraw_hold`` undoes that step.
"""

import logging
from dataclasses import dataclass
from typing import cast

from ..backends.base import BaseBackend, HoldOutcome, StatusChange
from ..exceptions import (
    NoCopiesAvailableError,
    ReservationLimitExceededError,
    TitleNotFoundError,
)
from ..observability.constants import LEDGER_DRIFT_TOTAL
from ..observability.protocols import MetricsCollectorProtocol
from ..retry import RetryPolicy
from ..types import CounterField, Reservation, Title, TitleCounters

logger = logging.getLogger(__name__)

# operation -> (source, target)
_MOVES: dict[str, tuple[CounterField, CounterField]] = {
    "release_to_available": (CounterField.RESERVED, CounterField.AVAILABLE),
    "promote_to_borrowed": (CounterField.RESERVED, CounterField.BORROWED),
    "return_copy": (CounterField.BORROWED, CounterField.AVAILABLE),
    "mark_lost": (CounterField.BORROWED, CounterField.LOST),
}


@dataclass(frozen=True)
class LedgerResult:
    """
    Result of a ledger operation.

    Attributes:
        operation: Ledger operation name
        applied: False when the move was skipped on a zero source counter
        title: Title snapshot taken atomically with the move
        written: False when the accompanying status change lost its
            compare-and-set; nothing changed then
        member_adjusted: Whether the accompanying member delta was applied
        change: The status change written with the move, if any
    """

    operation: str
    applied: bool
    title: Title
    written: bool = True
    member_adjusted: bool = False
    change: StatusChange | None = None

    @property
    def counters(self) -> TitleCounters:
        return self.title.counters()


class InventoryLedger:
    """Guarded counter moves for titles."""

    def __init__(
        self,
        backend: BaseBackend,
        retry: RetryPolicy | None = None,
        metrics: MetricsCollectorProtocol | None = None,
    ) -> None:
        self._backend = backend
        self._retry = retry or RetryPolicy()
        self._metrics = metrics

    async def get_title(self, title_id: str) -> Title:
        title = await self._retry.call(
            self._backend.get_title, title_id, operation="get_title"
        )
        if title is None:
            raise TitleNotFoundError(title_id)
        return title

    async def list_title_ids(self) -> list[str]:
        return await self._retry.call(
            self._backend.list_title_ids, operation="list_title_ids"
        )

    def _drift(self, operation: str, detail: str) -> None:
        logger.warning(
            f"Ledger drift on {operation}: {detail}, leaving it to reconciliation"
        )
        if self._metrics is not None:
            self._metrics.inc_counter(
                LEDGER_DRIFT_TOTAL, labels={"operation": operation}
            )

    async def _move(
        self,
        operation: str,
        title_id: str,
        source: CounterField,
        target: CounterField,
        change: StatusChange | None = None,
    ) -> LedgerResult:
        if change is None:
            moved = await self._backend.move_copy(title_id, source, target)
            result = LedgerResult(
                operation=operation, applied=moved.applied, title=moved.title
            )
        else:
            settled = await self._backend.transition_reservation(
                change, move=(source, target)
            )
            result = LedgerResult(
                operation=operation,
                applied=settled.moved,
                # Always present when a move is requested
                title=cast(Title, settled.title),
                written=settled.written,
                member_adjusted=settled.member_adjusted,
                change=change,
            )
            if not settled.written:
                return result
            if change.member_delta < 0 and not settled.member_adjusted:
                self._drift(
                    "release_slot",
                    f"member {change.updated.member_id} active_reservations is already 0",
                )

        if not result.applied:
            self._drift(operation, f"title {title_id} {source.value} is already 0")
        else:
            logger.debug(
                f"{operation} on title {title_id}: {source.value} -> {target.value}"
            )
        return result

    async def try_reserve_copy(
        self, hold: Reservation, member_limit: int | None = None
    ) -> LedgerResult:
        """
        Take one available copy into the reserved pool for ``hold``.

        The hold record and the member's active count are stored in the same
        atomic step, so a reserved copy never exists without its reservation.

        Raises:
            ReservationLimitExceededError: If the member is at ``member_limit``
            NoCopiesAvailableError: If no copy is available (nothing changes)
            TitleNotFoundError: If the title does not exist
            MemberNotFoundError: If the member does not exist
        """
        result = await self._backend.place_hold(hold, member_limit)
        if result.outcome is HoldOutcome.LIMIT_REACHED:
            raise ReservationLimitExceededError(hold.member_id, member_limit or 0)
        if result.outcome is HoldOutcome.NO_COPIES:
            raise NoCopiesAvailableError(hold.title_id)
        logger.debug(
            f"try_reserve_copy on title {hold.title_id}: stored hold {hold.id} "
            f"for member {hold.member_id}"
        )
        return LedgerResult(operation="try_reserve_copy", applied=True, title=result.title)

    async def withdraw_hold(self, hold: Reservation) -> bool:
        """Undo ``try_reserve_copy`` for a hold that is still open. Compensation only."""
        withdrawn = await self._backend.withdraw_hold(hold)
        if not withdrawn:
            logger.warning(
                f"Hold {hold.id} on title {hold.title_id} was not open, "
                f"nothing to withdraw"
            )
        return withdrawn

    async def release_to_available(
        self, title_id: str, change: StatusChange | None = None
    ) -> LedgerResult:
        return await self._move(
            "release_to_available",
            title_id,
            CounterField.RESERVED,
            CounterField.AVAILABLE,
            change,
        )

    async def promote_to_borrowed(
        self, title_id: str, change: StatusChange | None = None
    ) -> LedgerResult:
        return await self._move(
            "promote_to_borrowed",
            title_id,
            CounterField.RESERVED,
            CounterField.BORROWED,
            change,
        )

    async def return_copy(
        self, title_id: str, change: StatusChange | None = None
    ) -> LedgerResult:
        return await self._move(
            "return_copy",
            title_id,
            CounterField.BORROWED,
            CounterField.AVAILABLE,
            change,
        )

    async def mark_lost(
        self, title_id: str, change: StatusChange | None = None
    ) -> LedgerResult:
        return await self._move(
            "mark_lost",
            title_id,
            CounterField.BORROWED,
            CounterField.LOST,
            change,
        )

    async def revert(self, result: LedgerResult) -> LedgerResult:
        """
        Undo a move, together with the status change written with it.
        Compensation only.

        A move that was skipped on a zero source counter is not moved back;
        a member delta that was refused is not reversed.
        """
        source, target = _MOVES[result.operation]
        operation = f"revert_{result.operation}"
        if result.change is None:
            return await self._move(operation, result.title.id, target, source)

        back = result.change.reversed(member_adjusted=result.member_adjusted)
        settled = await self._backend.transition_reservation(
            back, move=(target, source) if result.applied else None
        )
        if not settled.written:
            logger.warning(
                f"Could not revert reservation {back.updated.id} to "
                f"'{back.updated.status.value}': status changed concurrently"
            )
        return LedgerResult(
            operation=operation,
            applied=settled.moved,
            title=settled.title or result.title,
            written=settled.written,
            member_adjusted=settled.member_adjusted,
            change=back,
        )

    async def overwrite_counters(
        self,
        title_id: str,
        available: int,
        reserved: int,
        borrowed: int,
        lost: int,
        expected_version: int | None = None,
    ) -> Title:
        """
        Replace all four counters. Reserved for the reconciliation job.

        Raises:
            ConcurrentUpdateError: If ``expected_version`` is given and the
                title changed since it was read
        """
        return await self._retry.call(
            self._backend.overwrite_title_counters,
            title_id,
            available,
            reserved,
            borrowed,
            lost,
            expected_version,
            operation="overwrite_title_counters",
        )


__all__ = ["InventoryLedger", "LedgerResult"]
