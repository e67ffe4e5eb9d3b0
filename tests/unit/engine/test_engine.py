# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
Tests for ReservationEngine.

Covers create preconditions, the guarded copy decrement under concurrency,
member cancel, admin transitions, compensation on partial failure, the
request timeout and the inline reclaim pass.
"""

import asyncio
from datetime import timedelta

import pytest

from librosync import (
    MemoryBackend,
    RecordingSink,
    ReservationConfig,
    ReservationCreated,
    ReservationStatus,
    ReservationUpdated,
    StandingStatus,
    create_service,
)
from librosync.exceptions import (
    BackendOperationError,
    CooldownActiveError,
    DuplicateReservationError,
    ForbiddenError,
    InvalidTransitionError,
    MemberNotEligibleError,
    MemberNotFoundError,
    NoCopiesAvailableError,
    ReservationLimitExceededError,
    ReservationNotFoundError,
    ReservationTimeoutError,
    TitleNotFoundError,
)
from librosync.observability import (
    COMPENSATIONS_RUN_TOTAL,
    RESERVATION_TIMEOUTS_TOTAL,
    RESERVATION_TRANSITIONS_TOTAL,
    RESERVATIONS_CREATED_TOTAL,
    RESERVATIONS_REJECTED_TOTAL,
)
from librosync.types import ReservationEvent


@pytest.fixture
def engine(service):
    return service.engine


@pytest.fixture
async def seeded(service):
    await service.add_title("t1", copies=2)
    await service.add_title("t2", copies=1)
    for member_id in ("m1", "m2", "m3"):
        await service.register_member(member_id)
    return service


class TestCreate:
    @pytest.mark.asyncio
    async def test_creates_hold(self, seeded, engine, backend, clock, sink, metrics):
        reservation = await engine.create("m1", "t1")

        assert reservation.status is ReservationStatus.RESERVED
        assert reservation.reserved_at == clock.now
        assert reservation.expires_at == clock.now + timedelta(hours=1)

        title = await backend.get_title("t1")
        assert (title.available_count, title.reserved_count) == (1, 1)
        member = await backend.get_member("m1")
        assert member.active_reservations == 1

        created = sink.of_type(ReservationCreated)
        assert len(created) == 1
        assert created[0].reservation.id == reservation.id
        assert created[0].counters.reserved_count == 1
        assert metrics.get_counter_value(RESERVATIONS_CREATED_TOTAL) == 1

    @pytest.mark.asyncio
    async def test_unknown_title(self, seeded, engine, backend):
        with pytest.raises(TitleNotFoundError):
            await engine.create("m1", "nope")
        assert (await backend.get_member("m1")).active_reservations == 0
        assert await backend.list_reservations() == []

    @pytest.mark.asyncio
    async def test_unknown_member(self, seeded, engine):
        with pytest.raises(MemberNotFoundError):
            await engine.create("ghost", "t1")

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "standing",
        [StandingStatus.PENDING, StandingStatus.INACTIVE, StandingStatus.BLOCKED],
    )
    async def test_ineligible_standing(self, seeded, engine, standing, metrics):
        await seeded.register_member("m9", standing=standing)
        with pytest.raises(MemberNotEligibleError):
            await engine.create("m9", "t1")
        assert (
            metrics.get_counter_value(
                RESERVATIONS_REJECTED_TOTAL, {"reason": "member_not_eligible"}
            )
            == 1
        )

    @pytest.mark.asyncio
    async def test_no_copies(self, seeded, engine, backend, metrics):
        await engine.create("m1", "t2")
        with pytest.raises(NoCopiesAvailableError):
            await engine.create("m2", "t2")

        title = await backend.get_title("t2")
        assert (title.available_count, title.reserved_count) == (0, 1)
        assert (await backend.get_member("m2")).active_reservations == 0
        assert (
            metrics.get_counter_value(
                RESERVATIONS_REJECTED_TOTAL, {"reason": "no_copies_available"}
            )
            == 1
        )

    @pytest.mark.asyncio
    async def test_limit(self, seeded, engine, backend):
        await engine.create("m1", "t1")
        with pytest.raises(ReservationLimitExceededError):
            await engine.create("m1", "t2")
        assert (await backend.get_title("t2")).available_count == 1

    @pytest.mark.asyncio
    async def test_cooldown_blocks_create(self, seeded, engine, backend, clock):
        member = await backend.get_member("m1")
        member.cooldown_until = clock.now + timedelta(seconds=90)
        await backend.upsert_member(member)

        with pytest.raises(CooldownActiveError) as exc_info:
            await engine.create("m1", "t1")
        assert exc_info.value.remaining_seconds == 90

        clock.advance(seconds=90)
        assert (await engine.create("m1", "t1")).status is ReservationStatus.RESERVED

    @pytest.mark.asyncio
    async def test_duplicate_hold_rejected(self, backend, sink, metrics, clock):
        config = ReservationConfig(max_active_reservations=2)
        service = create_service(
            backend=backend, config=config, sink=sink, metrics=metrics, clock=clock
        )
        await service.add_title("t1", copies=2)
        await service.register_member("m1")

        first = await service.engine.create("m1", "t1")
        with pytest.raises(DuplicateReservationError) as exc_info:
            await service.engine.create("m1", "t1")
        assert exc_info.value.reservation_id == first.id

    @pytest.mark.asyncio
    async def test_duplicate_hold_allowed_when_configured(self, backend, metrics, clock):
        config = ReservationConfig(max_active_reservations=2, allow_duplicate_holds=True)
        service = create_service(
            backend=backend, config=config, metrics=metrics, clock=clock
        )
        await service.add_title("t1", copies=2)
        await service.register_member("m1")

        await service.engine.create("m1", "t1")
        await service.engine.create("m1", "t1")
        assert (await backend.get_title("t1")).available_count == 0

    @pytest.mark.asyncio
    async def test_expired_holds_are_reclaimed_inline(self, seeded, engine, backend, clock):
        await engine.create("m1", "t2")
        clock.advance(hours=1, seconds=1)

        reservation = await engine.create("m2", "t2")

        assert reservation.member_id == "m2"
        statuses = {r.member_id: r.status for r in await backend.list_reservations()}
        assert statuses == {
            "m1": ReservationStatus.EXPIRED,
            "m2": ReservationStatus.RESERVED,
        }

    @pytest.mark.asyncio
    async def test_reclaim_can_be_disabled(self, backend, metrics, clock):
        config = ReservationConfig(reclaim_on_create=False)
        service = create_service(
            backend=backend, config=config, metrics=metrics, clock=clock
        )
        await service.add_title("t1", copies=1)
        await service.register_member("m1")
        await service.register_member("m2")
        await service.engine.create("m1", "t1")
        clock.advance(hours=2)

        with pytest.raises(NoCopiesAvailableError):
            await service.engine.create("m2", "t1")


class TestNoOverbooking:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("copies,members", [(1, 10), (3, 10), (5, 5), (4, 20)])
    async def test_concurrent_creates(
        self, service, backend, copies, members, check_consistency
    ):
        await service.add_title("hot", copies=copies)
        ids = [f"m{i}" for i in range(members)]
        for member_id in ids:
            await service.register_member(member_id)

        results = await asyncio.gather(
            *(service.engine.create(member_id, "hot") for member_id in ids),
            return_exceptions=True,
        )

        successes = [r for r in results if not isinstance(r, Exception)]
        failures = [r for r in results if isinstance(r, Exception)]
        assert len(successes) == min(copies, members)
        assert all(isinstance(f, NoCopiesAvailableError) for f in failures)

        title = await backend.get_title("hot")
        assert title.available_count == copies - len(successes)
        assert title.reserved_count == len(successes)
        await check_consistency(backend, "hot")

    @pytest.mark.asyncio
    async def test_same_member_racing_two_titles(self, seeded, engine, backend, check_consistency):
        results = await asyncio.gather(
            engine.create("m1", "t1"),
            engine.create("m1", "t2"),
            return_exceptions=True,
        )

        errors = [r for r in results if isinstance(r, Exception)]
        assert len(errors) == 1
        assert isinstance(errors[0], ReservationLimitExceededError)
        assert (await backend.get_member("m1")).active_reservations == 1
        assert len(await backend.list_reservations(member_id="m1")) == 1
        await check_consistency(backend, "t1")
        await check_consistency(backend, "t2")


class TestCancel:
    @pytest.mark.asyncio
    async def test_owner_cancels(self, seeded, engine, backend, sink):
        reservation = await engine.create("m1", "t1")
        cancelled = await engine.cancel(reservation.id, "m1", reason="changed my mind")

        assert cancelled.status is ReservationStatus.CANCELLED
        assert cancelled.cancelled_reason == "changed my mind"
        assert cancelled.closed_at is not None
        assert (await backend.get_title("t1")).available_count == 2
        member = await backend.get_member("m1")
        assert member.active_reservations == 0
        assert member.cooldown_until is None
        assert member.failed_attempts == 0

        updates = sink.of_type(ReservationUpdated)
        assert [u.status for u in updates] == [ReservationStatus.CANCELLED]

    @pytest.mark.asyncio
    async def test_other_member_forbidden(self, seeded, engine, backend):
        reservation = await engine.create("m1", "t1")
        with pytest.raises(ForbiddenError):
            await engine.cancel(reservation.id, "m2")
        assert (await backend.get_reservation(reservation.id)).status is (
            ReservationStatus.RESERVED
        )

    @pytest.mark.asyncio
    async def test_only_reserved_can_be_cancelled(self, seeded, engine):
        reservation = await engine.create("m1", "t1")
        await engine.approve(reservation.id)
        with pytest.raises(InvalidTransitionError):
            await engine.cancel(reservation.id, "m1")

    @pytest.mark.asyncio
    async def test_unknown_reservation(self, seeded, engine):
        with pytest.raises(ReservationNotFoundError):
            await engine.cancel("nope", "m1")


class TestAdminTransitions:
    @pytest.mark.asyncio
    async def test_approve_then_return(self, seeded, engine, backend, clock, check_consistency):
        reservation = await engine.create("m1", "t1")

        approved = await engine.approve(reservation.id)
        assert approved.status is ReservationStatus.APPROVED
        assert approved.approved_at == clock.now
        assert approved.due_date == clock.now + timedelta(days=3)
        title = await backend.get_title("t1")
        assert (title.reserved_count, title.borrowed_count) == (0, 1)
        assert (await backend.get_member("m1")).active_reservations == 1

        clock.advance(days=1)
        completed = await engine.mark_returned(reservation.id)
        assert completed.status is ReservationStatus.COMPLETED
        assert completed.returned_at == clock.now
        title = await backend.get_title("t1")
        assert (title.available_count, title.borrowed_count) == (2, 0)
        assert (await backend.get_member("m1")).active_reservations == 0
        await check_consistency(backend, "t1")

    @pytest.mark.asyncio
    async def test_approve_with_explicit_due_date(self, seeded, engine, clock):
        reservation = await engine.create("m1", "t1")
        due = clock.now + timedelta(days=7)
        assert (await engine.approve(reservation.id, due_date=due)).due_date == due

    @pytest.mark.asyncio
    async def test_decline(self, seeded, engine, backend):
        reservation = await engine.create("m1", "t1")
        declined = await engine.decline(reservation.id, reason="damaged copy")
        assert declined.status is ReservationStatus.DECLINED
        assert declined.cancelled_reason == "damaged copy"
        assert (await backend.get_title("t1")).available_count == 2
        assert (await backend.get_member("m1")).active_reservations == 0

    @pytest.mark.asyncio
    async def test_mark_lost(self, seeded, engine, backend, check_consistency):
        reservation = await engine.create("m1", "t1")
        await engine.approve(reservation.id)
        lost = await engine.mark_lost(reservation.id)
        assert lost.status is ReservationStatus.LOST
        title = await backend.get_title("t1")
        assert (title.available_count, title.borrowed_count, title.lost_count) == (1, 0, 1)
        assert (await backend.get_member("m1")).active_reservations == 0
        await check_consistency(backend, "t1")

    @pytest.mark.asyncio
    async def test_approved_not_counting_as_active(self, backend, metrics, clock):
        config = ReservationConfig(approved_counts_as_active=False)
        service = create_service(
            backend=backend, config=config, metrics=metrics, clock=clock
        )
        await service.add_title("t1", copies=1)
        await service.add_title("t2", copies=1)
        await service.register_member("m1")

        first = await service.engine.create("m1", "t1")
        await service.engine.approve(first.id)
        assert (await backend.get_member("m1")).active_reservations == 0

        await service.engine.create("m1", "t2")
        await service.engine.mark_returned(first.id)
        assert (await backend.get_member("m1")).active_reservations == 1

    @pytest.mark.asyncio
    async def test_generic_transition_dispatch(self, seeded, engine, metrics):
        reservation = await engine.create("m1", "t1")
        await engine.transition(reservation.id, "approved")
        result = await engine.transition(reservation.id, ReservationStatus.COMPLETED)
        assert result.status is ReservationStatus.COMPLETED
        assert (
            metrics.get_counter_value(RESERVATION_TRANSITIONS_TOTAL, {"status": "completed"})
            == 1
        )

    @pytest.mark.asyncio
    async def test_generic_transition_cancel_needs_owner(self, seeded, engine):
        reservation = await engine.create("m1", "t1")
        with pytest.raises(InvalidTransitionError):
            await engine.transition(reservation.id, "cancelled")
        cancelled = await engine.transition(reservation.id, "cancelled", member_id="m1")
        assert cancelled.status is ReservationStatus.CANCELLED

    @pytest.mark.asyncio
    @pytest.mark.parametrize("target", ["expired", "reserved"])
    async def test_generic_transition_rejects_system_targets(self, seeded, engine, target):
        reservation = await engine.create("m1", "t1")
        with pytest.raises(InvalidTransitionError):
            await engine.transition(reservation.id, target)

    @pytest.mark.asyncio
    async def test_unknown_status_value(self, seeded, engine, backend):
        reservation = await engine.create("m1", "t1")
        with pytest.raises(InvalidTransitionError) as exc_info:
            await engine.transition(reservation.id, "borrowed")
        assert exc_info.value.current_status == "reserved"
        assert exc_info.value.target_status == "borrowed"
        assert (await backend.get_reservation(reservation.id)).status is (
            ReservationStatus.RESERVED
        )

    @pytest.mark.asyncio
    async def test_unknown_reservation_checked_before_status_value(self, seeded, engine):
        with pytest.raises(ReservationNotFoundError):
            await engine.transition("nope", "borrowed")
        with pytest.raises(ReservationNotFoundError):
            await engine.transition("nope", "approved")


class TestTransitionClosure:
    @staticmethod
    async def _snapshot(backend):
        return await backend.get_title("t1"), await backend.get_member("m1")

    @staticmethod
    def _attempts(engine, reservation_id, names):
        calls = {
            "approve": lambda: engine.approve(reservation_id),
            "decline": lambda: engine.decline(reservation_id),
            "cancel": lambda: engine.cancel(reservation_id, "m1"),
            "return": lambda: engine.mark_returned(reservation_id),
            "lose": lambda: engine.mark_lost(reservation_id),
        }
        return [calls[name] for name in names]

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "terminal", ["declined", "cancelled", "completed", "lost", "expired"]
    )
    async def test_terminal_reservations_never_move(
        self, seeded, engine, backend, terminal
    ):
        reservation = await engine.create("m1", "t1")
        if terminal == "declined":
            await engine.decline(reservation.id)
        elif terminal == "cancelled":
            await engine.cancel(reservation.id, "m1")
        elif terminal == "expired":
            await engine.expire_hold(reservation)
        else:
            await engine.approve(reservation.id)
            if terminal == "completed":
                await engine.mark_returned(reservation.id)
            else:
                await engine.mark_lost(reservation.id)

        before = await self._snapshot(backend)
        attempts = self._attempts(
            engine, reservation.id, ["approve", "decline", "cancel", "return", "lose"]
        )
        for attempt in attempts:
            with pytest.raises(InvalidTransitionError):
                await attempt()

        assert (await backend.get_reservation(reservation.id)).status.value == terminal
        assert await self._snapshot(backend) == before

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "status, illegal",
        [
            ("reserved", ["return", "lose"]),
            ("approved", ["approve", "decline", "cancel"]),
        ],
    )
    async def test_illegal_events_leave_counters_alone(
        self, seeded, engine, backend, status, illegal
    ):
        reservation = await engine.create("m1", "t1")
        if status == "approved":
            await engine.approve(reservation.id)

        before = await self._snapshot(backend)
        for attempt in self._attempts(engine, reservation.id, illegal):
            with pytest.raises(InvalidTransitionError):
                await attempt()

        assert (await backend.get_reservation(reservation.id)).status.value == status
        assert await self._snapshot(backend) == before

    @pytest.mark.asyncio
    async def test_racing_transitions_apply_once(
        self, seeded, engine, backend, check_consistency
    ):
        reservation = await engine.create("m1", "t1")
        results = await asyncio.gather(
            engine.approve(reservation.id),
            engine.decline(reservation.id),
            engine.cancel(reservation.id, "m1"),
            return_exceptions=True,
        )

        winners = [r for r in results if not isinstance(r, Exception)]
        losers = [r for r in results if isinstance(r, Exception)]
        assert len(winners) == 1
        assert all(isinstance(e, InvalidTransitionError) for e in losers)
        await check_consistency(backend, "t1")
        member = await backend.get_member("m1")
        expected_active = 1 if winners[0].status is ReservationStatus.APPROVED else 0
        assert member.active_reservations == expected_active


class FailingHoldBackend(MemoryBackend):
    """Fails every hold placement with a backend error."""

    async def place_hold(self, reservation, member_limit=None):
        raise BackendOperationError("hold script unavailable")


class SlowHoldBackend(MemoryBackend):
    """Stores the hold, then stalls before replying."""

    async def place_hold(self, reservation, member_limit=None):
        result = await super().place_hold(reservation, member_limit)
        await asyncio.sleep(5)
        return result


class TestCompensation:
    @pytest.mark.asyncio
    async def test_failed_hold_leaves_nothing_behind(self, metrics, clock):
        backend = FailingHoldBackend()
        service = create_service(backend=backend, metrics=metrics, clock=clock)
        await service.add_title("t1", copies=1)
        await service.register_member("m1")

        with pytest.raises(BackendOperationError):
            await service.engine.create("m1", "t1")

        title = await backend.get_title("t1")
        assert (title.available_count, title.reserved_count) == (1, 0)
        assert (await backend.get_member("m1")).active_reservations == 0
        assert await backend.list_reservations() == []

    @pytest.mark.asyncio
    async def test_refused_hold_runs_no_compensation(self, seeded, engine, metrics):
        await engine.create("m1", "t2")
        with pytest.raises(NoCopiesAvailableError):
            await engine.create("m2", "t2")
        assert metrics.get_counter_value(COMPENSATIONS_RUN_TOTAL, {"operation": "create"}) == 0

    @pytest.mark.asyncio
    async def test_timeout_withdraws_stored_hold(self, metrics, clock):
        backend = SlowHoldBackend()
        config = ReservationConfig(request_timeout=0.05)
        sink = RecordingSink()
        service = create_service(
            backend=backend, config=config, sink=sink, metrics=metrics, clock=clock
        )
        await service.add_title("t1", copies=1)
        await service.register_member("m1")

        with pytest.raises(ReservationTimeoutError) as exc_info:
            await service.engine.create("m1", "t1")

        assert exc_info.value.operation == "create"
        title = await backend.get_title("t1")
        assert (title.available_count, title.reserved_count) == (1, 0)
        assert (await backend.get_member("m1")).active_reservations == 0
        assert await backend.list_reservations() == []
        assert sink.events == []
        assert metrics.get_counter_value(COMPENSATIONS_RUN_TOTAL, {"operation": "create"}) == 1
        assert (
            metrics.get_counter_value(RESERVATION_TIMEOUTS_TOTAL, {"operation": "create"})
            == 1
        )

    @pytest.mark.asyncio
    async def test_failed_ledger_step_changes_nothing(self, seeded, engine, backend):
        reservation = await engine.create("m1", "t1")

        async def failing_promote(title_id, change):
            raise BackendOperationError("ledger unavailable")

        engine.ledger.promote_to_borrowed = failing_promote
        with pytest.raises(BackendOperationError):
            await engine.approve(reservation.id)

        stored = await backend.get_reservation(reservation.id)
        assert stored.status is ReservationStatus.RESERVED
        assert stored.approved_at is None
        assert stored.due_date is None
        title = await backend.get_title("t1")
        assert (title.reserved_count, title.borrowed_count) == (1, 0)

    @pytest.mark.asyncio
    async def test_failed_follow_up_reverts_transition(
        self, seeded, engine, backend, metrics, check_consistency
    ):
        reservation = await engine.create("m1", "t1")

        async def failing_follow_up():
            raise BackendOperationError("member store unavailable")

        with pytest.raises(BackendOperationError):
            await engine.apply_transition(
                "decline",
                reservation,
                ReservationEvent.DECLINE,
                engine.ledger.release_to_available,
                release_member_slot=True,
                follow_up=failing_follow_up,
            )

        stored = await backend.get_reservation(reservation.id)
        assert stored.status is ReservationStatus.RESERVED
        assert stored.closed_at is None
        title = await backend.get_title("t1")
        assert (title.available_count, title.reserved_count) == (1, 1)
        assert (await backend.get_member("m1")).active_reservations == 1
        assert (
            metrics.get_counter_value(COMPENSATIONS_RUN_TOTAL, {"operation": "decline"})
            == 1
        )
        await check_consistency(backend, "t1")


class SlowReclaimer:
    def __init__(self, delay):
        self.delay = delay
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        await asyncio.sleep(self.delay)
        return 0


class TestInlineReclaim:
    @pytest.mark.asyncio
    async def test_reclaim_runs_outside_create_timeout(self, backend, metrics, clock):
        config = ReservationConfig(request_timeout=0.05)
        service = create_service(
            backend=backend, config=config, metrics=metrics, clock=clock
        )
        await service.add_title("t1", copies=1)
        await service.register_member("m1")
        reclaimer = SlowReclaimer(0.2)
        service.engine.set_reclaimer(reclaimer)

        reservation = await service.engine.create("m1", "t1")

        assert reservation.status is ReservationStatus.RESERVED
        assert reclaimer.calls == 1
        assert (
            metrics.get_counter_value(RESERVATION_TIMEOUTS_TOTAL, {"operation": "create"})
            == 0
        )

    @pytest.mark.asyncio
    async def test_reclaim_is_bounded_per_create(self, backend, metrics, clock):
        config = ReservationConfig(inline_reclaim_limit=2)
        service = create_service(
            backend=backend, config=config, metrics=metrics, clock=clock
        )
        await service.add_title("t1", copies=3)
        await service.add_title("t2", copies=1)
        for member_id in ("m1", "m2", "m3", "m4"):
            await service.register_member(member_id)
        for member_id in ("m1", "m2", "m3"):
            await service.engine.create(member_id, "t1")
        clock.advance(hours=2)

        await service.engine.create("m4", "t2")

        statuses = [r.status for r in await backend.list_reservations(title_id="t1")]
        assert statuses.count(ReservationStatus.EXPIRED) == 2
        assert statuses.count(ReservationStatus.RESERVED) == 1


    @pytest.mark.asyncio
    async def test_notification_failure_does_not_fail_create(
        self, backend, metrics, clock
    ):
        class BrokenSink:
            async def publish(self, event):
                raise RuntimeError("broker down")

        service = create_service(
            backend=backend, sink=BrokenSink(), metrics=metrics, clock=clock
        )
        await service.add_title("t1", copies=1)
        await service.register_member("m1")

        reservation = await service.engine.create("m1", "t1")
        assert reservation.status is ReservationStatus.RESERVED
        assert (await backend.get_title("t1")).reserved_count == 1
