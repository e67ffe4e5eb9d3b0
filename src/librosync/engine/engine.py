# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
Reservation engine: create, cancel and admin transitions.

Every mutating operation is one ``UnitOfWork`` bounded by the configured
request timeout. Within it the contended step runs first (the atomic hold
placement for create, the status compare-and-set for transitions), so
concurrent callers are ordered by a single atomic backend primitive and
the losers change nothing.

Events are published after the unit of work commits and outside the
timeout; delivery problems never surface to the caller.
"""

import asyncio
import functools
import logging
import time
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Any, TypeVar

from ..backends.base import StatusChange
from ..clock import Clock, utc_now
from ..config import ReservationConfig
from ..exceptions import (
    CooldownActiveError,
    DuplicateReservationError,
    ForbiddenError,
    InvalidTransitionError,
    MemberNotEligibleError,
    PreconditionError,
    ReservationLimitExceededError,
    ReservationTimeoutError,
    StateError,
)
from ..inventory.ledger import InventoryLedger, LedgerResult
from ..notifications.dispatcher import NotificationDispatcher
from ..observability.constants import (
    OPERATION_LATENCY_SECONDS,
    RESERVATION_TIMEOUTS_TOTAL,
    RESERVATION_TRANSITIONS_TOTAL,
    RESERVATIONS_CREATED_TOTAL,
    RESERVATIONS_REJECTED_TOTAL,
)
from ..observability.protocols import MetricsCollectorProtocol
from ..policy.cooldown import CooldownPolicy, remaining_seconds
from ..retry import RetryPolicy
from ..store.members import MemberLedger
from ..store.reservations import ReservationStore
from ..types import (
    Member,
    Reservation,
    ReservationCreated,
    ReservationEvent,
    ReservationStatus,
    ReservationUpdated,
    StandingStatus,
    Title,
    TitleCounters,
)
from .unit_of_work import UnitOfWork

logger = logging.getLogger(__name__)

T = TypeVar("T")

LedgerStep = Callable[[str, StatusChange], Awaitable[LedgerResult]]


class ReservationEngine:
    """
    Orchestrates the reservation lifecycle over the ledgers and the store.

    Args:
        ledger: Title counter ledger
        store: Reservation store
        members: Member counter ledger
        config: Engine configuration
        notifier: Event dispatcher (defaults to a dispatcher with no sink)
        metrics: Optional metrics collector
        clock: Source of the current time (aware UTC datetimes)
    """

    def __init__(
        self,
        ledger: InventoryLedger,
        store: ReservationStore,
        members: MemberLedger,
        config: ReservationConfig | None = None,
        notifier: NotificationDispatcher | None = None,
        metrics: MetricsCollectorProtocol | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.config = config or ReservationConfig()
        self.ledger = ledger
        self.store = store
        self.members = members
        self.notifier = notifier or NotificationDispatcher(
            timeout=self.config.notification_timeout, metrics=metrics
        )
        self.cooldown_policy = CooldownPolicy(stages=self.config.cooldown_stages)
        self._metrics = metrics
        self._clock: Clock = clock or utc_now
        self._retry = RetryPolicy.from_config(self.config)
        self._reclaimer: Callable[[], Awaitable[int]] | None = None

    def now(self) -> datetime:
        return self._clock()

    def set_reclaimer(self, reclaimer: Callable[[], Awaitable[int]] | None) -> None:
        """Register the expired-hold reclaim pass run before each create."""
        self._reclaimer = reclaimer

    # ==========================================================================
    # Helpers
    # ==========================================================================

    def _inc(self, name: str, labels: dict[str, str] | None = None) -> None:
        if self._metrics is not None:
            self._metrics.inc_counter(name, labels=labels)

    async def _guarded(self, operation: str, coro: Awaitable[T]) -> T:
        """Run ``coro`` within the request timeout and record its latency."""
        start = time.perf_counter()
        try:
            return await asyncio.wait_for(coro, timeout=self.config.request_timeout)
        except asyncio.TimeoutError as e:
            logger.warning(
                f"{operation} exceeded {self.config.request_timeout:.1f}s; "
                f"partial work was compensated"
            )
            self._inc(RESERVATION_TIMEOUTS_TOTAL, {"operation": operation})
            raise ReservationTimeoutError(operation, self.config.request_timeout) from e
        finally:
            if self._metrics is not None:
                self._metrics.observe_histogram(
                    OPERATION_LATENCY_SECONDS,
                    time.perf_counter() - start,
                    labels={"operation": operation},
                )

    def _uow(self, operation: str) -> UnitOfWork:
        return UnitOfWork(operation, retry=self._retry, metrics=self._metrics)

    def _check_eligibility(self, member: Member, now: datetime) -> None:
        if member.standing is not StandingStatus.ACTIVE:
            raise MemberNotEligibleError(member.id, member.standing.value)
        if member.cooldown_active(now):
            raise CooldownActiveError(
                member.id,
                remaining_seconds(member.cooldown_until, now),
                member.cooldown_until,
            )
        if member.active_reservations >= self.config.max_active_reservations:
            raise ReservationLimitExceededError(
                member.id, self.config.max_active_reservations
            )

    async def apply_transition(
        self,
        operation: str,
        reservation: Reservation,
        event: ReservationEvent,
        ledger_step: LedgerStep,
        release_member_slot: bool,
        follow_up: Callable[[], Awaitable[Any]] | None = None,
        **changes: Any,
    ) -> tuple[Reservation, TitleCounters]:
        """
        Status compare-and-set, the paired ledger move and the member counter
        in one atomic step, then ``follow_up``, as one unit of work.

        If ``follow_up`` raises, the status, the move and the member counter
        are reverted together.

        Returns:
            The written reservation and the title counters after the move
        """
        updated = self.store.prepare_transition(
            reservation, event, self.now(), **changes
        )
        change = StatusChange(
            original=reservation,
            updated=updated,
            member_delta=-1 if release_member_slot else 0,
        )
        async with self._uow(operation) as uow:
            moved = await ledger_step(reservation.title_id, change)
            if not moved.written:
                raise await self.store.lost_race(reservation, updated.status)
            uow.add_compensation("revert_transition", self.ledger.revert, moved)

            if follow_up is not None:
                await follow_up()

        self._inc(RESERVATION_TRANSITIONS_TOTAL, {"status": updated.status.value})
        logger.info(
            f"Reservation {updated.id} {reservation.status.value} -> "
            f"{updated.status.value} (title={updated.title_id}, "
            f"member={updated.member_id})"
        )
        return updated, moved.counters

    async def _publish_update(
        self, reservation: Reservation, counters: TitleCounters
    ) -> None:
        await self.notifier.publish(
            ReservationUpdated(
                reservation=reservation, status=reservation.status, counters=counters
            )
        )

    # ==========================================================================
    # Create
    # ==========================================================================

    async def create(self, member_id: str, title_id: str) -> Reservation:
        """
        Place a hold on one copy of a title for a member.

        Raises:
            MemberNotEligibleError: Member standing is not Active
            CooldownActiveError: Member is serving an abandonment cooldown
            ReservationLimitExceededError: Member is at the active limit
            DuplicateReservationError: Member already holds this title
            NoCopiesAvailableError: No copy is available
            ReservationTimeoutError: The request exceeded its time budget
        """
        await self._reclaim_before_create()
        reservation, counters = await self._guarded(
            "create", self._create(member_id, title_id)
        )
        await self.notifier.publish(
            ReservationCreated(reservation=reservation, counters=counters)
        )
        return reservation

    async def _reclaim_before_create(self) -> None:
        # Bounded by inline_reclaim_limit and kept out of the create timeout
        if self.config.reclaim_on_create and self._reclaimer is not None:
            await self._reclaimer()

    async def _create(
        self, member_id: str, title_id: str
    ) -> tuple[Reservation, TitleCounters]:
        now = self.now()
        try:
            member = await self.members.get(member_id)
            self._check_eligibility(member, now)

            if not self.config.allow_duplicate_holds:
                existing = await self.store.find_active(member_id, title_id)
                if existing is not None:
                    raise DuplicateReservationError(member_id, title_id, existing.id)

            reservation = self.store.new_hold(
                title_id, member_id, now, self.config.hold_window
            )
            async with self._uow("create") as uow:
                # A timeout can land after the hold was stored
                uow.add_compensation(
                    "withdraw_hold", self.ledger.withdraw_hold, reservation
                )
                try:
                    reserved = await self.ledger.try_reserve_copy(
                        reservation, self.config.max_active_reservations
                    )
                except (PreconditionError, StateError):
                    uow.discard()
                    raise
        except PreconditionError as e:
            logger.info(f"Create rejected for member {member_id}, title {title_id}: {e}")
            self._inc(RESERVATIONS_REJECTED_TOTAL, {"reason": e.code.lower()})
            raise

        self._inc(RESERVATIONS_CREATED_TOTAL)
        logger.info(
            f"Reservation {reservation.id} created "
            f"(member={member_id}, title={title_id}, "
            f"expires={reservation.expires_at.isoformat()})"
        )
        return reservation, reserved.counters

    # ==========================================================================
    # Member cancel
    # ==========================================================================

    async def cancel(
        self,
        reservation_id: str,
        requesting_member_id: str,
        reason: str | None = None,
    ) -> Reservation:
        """
        Cancel the requester's own ``reserved`` hold. No cooldown applies.

        Raises:
            ReservationNotFoundError: Unknown reservation
            ForbiddenError: The requester does not own the reservation
            InvalidTransitionError: The reservation is not ``reserved``
        """
        updated, counters = await self._guarded(
            "cancel", self._cancel(reservation_id, requesting_member_id, reason)
        )
        await self._publish_update(updated, counters)
        return updated

    async def _cancel(
        self, reservation_id: str, requesting_member_id: str, reason: str | None
    ) -> tuple[Reservation, TitleCounters]:
        reservation = await self.store.get(reservation_id)
        if reservation.member_id != requesting_member_id:
            raise ForbiddenError(
                f"Member {requesting_member_id} does not own reservation {reservation_id}"
            )
        return await self.apply_transition(
            "cancel",
            reservation,
            ReservationEvent.CANCEL,
            self.ledger.release_to_available,
            release_member_slot=True,
            cancelled_reason=reason,
        )

    # ==========================================================================
    # Admin transitions
    # ==========================================================================

    async def approve(
        self, reservation_id: str, due_date: datetime | None = None
    ) -> Reservation:
        """Hand the held copy to the member: reserved -> approved."""
        updated, counters = await self._guarded(
            "approve", self._approve(reservation_id, due_date)
        )
        await self._publish_update(updated, counters)
        return updated

    async def _approve(
        self, reservation_id: str, due_date: datetime | None
    ) -> tuple[Reservation, TitleCounters]:
        reservation = await self.store.get(reservation_id)
        now = self.now()
        return await self.apply_transition(
            "approve",
            reservation,
            ReservationEvent.APPROVE,
            self.ledger.promote_to_borrowed,
            release_member_slot=not self.config.approved_counts_as_active,
            approved_at=now,
            due_date=due_date or now + self.config.borrow_window,
        )

    async def decline(self, reservation_id: str, reason: str | None = None) -> Reservation:
        """Refuse a hold: reserved -> declined, copy back on the shelf."""
        updated, counters = await self._guarded(
            "decline", self._decline(reservation_id, reason)
        )
        await self._publish_update(updated, counters)
        return updated

    async def _decline(
        self, reservation_id: str, reason: str | None
    ) -> tuple[Reservation, TitleCounters]:
        reservation = await self.store.get(reservation_id)
        return await self.apply_transition(
            "decline",
            reservation,
            ReservationEvent.DECLINE,
            self.ledger.release_to_available,
            release_member_slot=True,
            cancelled_reason=reason,
        )

    async def mark_returned(self, reservation_id: str) -> Reservation:
        """Record the return of a borrowed copy: approved -> completed."""
        updated, counters = await self._guarded(
            "mark_returned", self._mark_returned(reservation_id)
        )
        await self._publish_update(updated, counters)
        return updated

    async def _mark_returned(
        self, reservation_id: str
    ) -> tuple[Reservation, TitleCounters]:
        reservation = await self.store.get(reservation_id)
        return await self.apply_transition(
            "mark_returned",
            reservation,
            ReservationEvent.RETURN,
            self.ledger.return_copy,
            release_member_slot=self.config.approved_counts_as_active,
            returned_at=self.now(),
        )

    async def mark_lost(self, reservation_id: str) -> Reservation:
        """Write off a borrowed copy: approved -> lost."""
        updated, counters = await self._guarded(
            "mark_lost", self._mark_lost(reservation_id)
        )
        await self._publish_update(updated, counters)
        return updated

    async def _mark_lost(self, reservation_id: str) -> tuple[Reservation, TitleCounters]:
        reservation = await self.store.get(reservation_id)
        return await self.apply_transition(
            "mark_lost",
            reservation,
            ReservationEvent.LOSE,
            self.ledger.mark_lost,
            release_member_slot=self.config.approved_counts_as_active,
        )

    async def transition(
        self,
        reservation_id: str,
        target_status: ReservationStatus | str,
        **opts: Any,
    ) -> Reservation:
        """
        Move a reservation to ``target_status`` through the matching operation.

        Supported targets: approved (``due_date``), declined (``reason``),
        completed, lost, and cancelled (``member_id`` of the owner, ``reason``).

        Raises:
            ReservationNotFoundError: Unknown reservation
            InvalidTransitionError: The target is unknown, not reachable by an
                admin action, or not from the reservation's current status
        """
        try:
            target = ReservationStatus(target_status)
        except ValueError:
            reservation = await self.store.get(reservation_id)
            raise InvalidTransitionError(
                reservation_id, reservation.status.value, str(target_status)
            ) from None
        if target is ReservationStatus.APPROVED:
            return await self.approve(reservation_id, due_date=opts.get("due_date"))
        if target is ReservationStatus.DECLINED:
            return await self.decline(reservation_id, reason=opts.get("reason"))
        if target is ReservationStatus.COMPLETED:
            return await self.mark_returned(reservation_id)
        if target is ReservationStatus.LOST:
            return await self.mark_lost(reservation_id)
        if target is ReservationStatus.CANCELLED and "member_id" in opts:
            return await self.cancel(
                reservation_id, opts["member_id"], reason=opts.get("reason")
            )

        reservation = await self.store.get(reservation_id)
        raise InvalidTransitionError(
            reservation_id, reservation.status.value, target.value
        )

    # ==========================================================================
    # System transition (expiry)
    # ==========================================================================

    async def expire_hold(self, reservation: Reservation) -> Reservation:
        """
        Expire an abandoned hold and apply the member's cooldown.

        The cooldown is part of the unit of work: if it cannot be recorded
        the hold stays ``reserved`` and the next sweep retries it.

        Used by the expiry sweeper. Raises ``InvalidTransitionError`` if the
        hold was picked up, cancelled or expired concurrently.
        """
        updated, counters = await self.apply_transition(
            "expire",
            reservation,
            ReservationEvent.EXPIRE,
            self.ledger.release_to_available,
            release_member_slot=True,
            follow_up=functools.partial(
                self.members.record_abandonment,
                reservation.member_id,
                self.cooldown_policy,
                self.now(),
            ),
        )
        await self._publish_update(updated, counters)
        return updated

    # ==========================================================================
    # Reads
    # ==========================================================================

    async def get_title(self, title_id: str) -> Title:
        return await self.ledger.get_title(title_id)

    async def get_reservation(self, reservation_id: str) -> Reservation:
        return await self.store.get(reservation_id)

    async def get_member(self, member_id: str) -> Member:
        return await self.members.get(member_id)


__all__ = ["ReservationEngine"]
