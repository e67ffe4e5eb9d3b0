# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""Unit tests for MemoryBackend."""

import asyncio
import dataclasses
from datetime import datetime, timedelta, timezone

import pytest

from librosync.backends import HoldOutcome, MemoryBackend, StatusChange, create_backend
from librosync.exceptions import (
    ConcurrentUpdateError,
    ConfigurationError,
    MemberNotFoundError,
    ReservationNotFoundError,
    TitleNotFoundError,
)
from librosync.types import (
    CounterField,
    Member,
    Reservation,
    ReservationStatus,
    Title,
)

NOW = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)


def reservation(
    rid="r1", status=ReservationStatus.RESERVED, expires_in=60, member_id="m1"
):
    return Reservation(
        id=rid,
        title_id="t1",
        member_id=member_id,
        reserved_at=NOW,
        expires_at=NOW + timedelta(minutes=expires_in),
        status=status,
    )


class TestMemoryBackend:
    @pytest.fixture
    def backend(self):
        return MemoryBackend(namespace="test")

    @pytest.mark.asyncio
    async def test_init(self):
        backend = MemoryBackend(namespace="test_ns")
        assert backend.namespace == "test_ns"
        assert await backend.list_title_ids() == []

    @pytest.mark.asyncio
    async def test_records_are_copied(self, backend):
        title = Title.with_copies("t1", 2)
        await backend.upsert_title(title)
        title.available_count = 0
        stored = await backend.get_title("t1")
        assert stored.available_count == 2
        stored.available_count = 99
        assert (await backend.get_title("t1")).available_count == 2

    @pytest.mark.asyncio
    async def test_get_missing(self, backend):
        assert await backend.get_title("nope") is None
        assert await backend.get_member("nope") is None
        assert await backend.get_reservation("nope") is None


class TestMoveCopy:
    @pytest.fixture
    async def backend(self):
        backend = MemoryBackend()
        await backend.upsert_title(Title.with_copies("t1", 1))
        return backend

    @pytest.mark.asyncio
    async def test_move_applies(self, backend):
        moved = await backend.move_copy("t1", CounterField.AVAILABLE, CounterField.RESERVED)
        assert moved.applied is True
        assert moved.title.available_count == 0
        assert moved.title.reserved_count == 1

    @pytest.mark.asyncio
    async def test_move_from_zero_is_refused(self, backend):
        await backend.move_copy("t1", CounterField.AVAILABLE, CounterField.RESERVED)
        moved = await backend.move_copy("t1", CounterField.AVAILABLE, CounterField.RESERVED)
        assert moved.applied is False
        assert moved.title.available_count == 0
        assert moved.title.reserved_count == 1

    @pytest.mark.asyncio
    async def test_unknown_title(self, backend):
        with pytest.raises(TitleNotFoundError):
            await backend.move_copy("nope", CounterField.AVAILABLE, CounterField.RESERVED)

    @pytest.mark.asyncio
    async def test_concurrent_moves_never_go_negative(self):
        backend = MemoryBackend()
        await backend.upsert_title(Title.with_copies("t1", 3))
        results = await asyncio.gather(
            *(
                backend.move_copy("t1", CounterField.AVAILABLE, CounterField.RESERVED)
                for _ in range(10)
            )
        )
        assert sum(r.applied for r in results) == 3
        title = await backend.get_title("t1")
        assert (title.available_count, title.reserved_count) == (0, 3)

    @pytest.mark.asyncio
    async def test_overwrite_counters(self, backend):
        title = await backend.overwrite_title_counters("t1", 0, 0, 1, 0)
        assert title.borrowed_count == 1
        with pytest.raises(TitleNotFoundError):
            await backend.overwrite_title_counters("nope", 0, 0, 0, 0)


class TestMemberCounters:
    @pytest.fixture
    async def backend(self):
        backend = MemoryBackend()
        await backend.upsert_member(Member("m1"))
        return backend

    @pytest.mark.asyncio
    async def test_unknown_member(self, backend):
        with pytest.raises(MemberNotFoundError):
            await backend.record_abandonment("nope", [NOW])
        with pytest.raises(MemberNotFoundError):
            await backend.set_active_reservations("nope", 0)

    @pytest.mark.asyncio
    async def test_abandonment_escalates_then_repeats_last_stage(self, backend):
        schedule = [NOW + timedelta(minutes=1), NOW + timedelta(minutes=5)]
        assert await backend.record_abandonment("m1", schedule) == (1, schedule[0])
        assert await backend.record_abandonment("m1", schedule) == (2, schedule[1])
        assert await backend.record_abandonment("m1", schedule) == (3, schedule[1])
        member = await backend.get_member("m1")
        assert member.failed_attempts == 3
        assert member.cooldown_until == schedule[1]

    @pytest.mark.asyncio
    async def test_abandonment_never_shortens_cooldown(self, backend):
        later = NOW + timedelta(hours=2)
        await backend.upsert_member(Member("m1", cooldown_until=later))
        attempts, effective = await backend.record_abandonment(
            "m1", [NOW + timedelta(minutes=1)]
        )
        assert (attempts, effective) == (1, later)

    @pytest.mark.asyncio
    async def test_versioned_overwrite(self, backend):
        await backend.set_active_reservations("m1", 2, expected_version=0)
        member = await backend.get_member("m1")
        assert (member.active_reservations, member.version) == (2, 1)

        with pytest.raises(ConcurrentUpdateError):
            await backend.set_active_reservations("m1", 0, expected_version=0)
        assert (await backend.get_member("m1")).active_reservations == 2

        await backend.set_active_reservations("m1", 0)
        assert (await backend.get_member("m1")).version == 2


class TestTitleVersion:
    @pytest.mark.asyncio
    async def test_counter_writes_bump_version(self):
        backend = MemoryBackend()
        await backend.upsert_title(Title.with_copies("t1", 1))
        await backend.move_copy("t1", CounterField.AVAILABLE, CounterField.RESERVED)
        assert (await backend.get_title("t1")).version == 1
        # Refused moves leave the title untouched
        await backend.move_copy("t1", CounterField.AVAILABLE, CounterField.RESERVED)
        assert (await backend.get_title("t1")).version == 1

    @pytest.mark.asyncio
    async def test_versioned_overwrite(self):
        backend = MemoryBackend()
        await backend.upsert_title(Title.with_copies("t1", 2))
        with pytest.raises(ConcurrentUpdateError):
            await backend.overwrite_title_counters("t1", 0, 2, 0, 0, expected_version=3)
        assert (await backend.get_title("t1")).available_count == 2

        title = await backend.overwrite_title_counters(
            "t1", 1, 1, 0, 0, expected_version=0
        )
        assert (title.available_count, title.reserved_count, title.version) == (1, 1, 1)


class TestPlaceHold:
    @pytest.fixture
    async def backend(self):
        backend = MemoryBackend()
        await backend.upsert_title(Title.with_copies("t1", 1))
        await backend.upsert_member(Member("m1"))
        await backend.upsert_member(Member("m2"))
        return backend

    @pytest.mark.asyncio
    async def test_placed_writes_everything(self, backend):
        result = await backend.place_hold(reservation("r1"), member_limit=2)
        assert result.placed
        assert result.outcome is HoldOutcome.PLACED
        assert (result.title.available_count, result.title.reserved_count) == (0, 1)
        assert result.active_reservations == 1
        assert (await backend.get_reservation("r1")).status is ReservationStatus.RESERVED
        assert (await backend.get_member("m1")).active_reservations == 1

    @pytest.mark.asyncio
    async def test_no_copies_changes_nothing(self, backend):
        await backend.place_hold(reservation("r1"))
        result = await backend.place_hold(reservation("r2", member_id="m2"))
        assert result.outcome is HoldOutcome.NO_COPIES
        assert await backend.get_reservation("r2") is None
        assert (await backend.get_member("m2")).active_reservations == 0
        assert result.title.reserved_count == 1

    @pytest.mark.asyncio
    async def test_limit_checked_before_copies(self, backend):
        await backend.place_hold(reservation("r1"), member_limit=1)
        await backend.upsert_title(Title.with_copies("t1", 1))
        result = await backend.place_hold(reservation("r2"), member_limit=1)
        assert result.outcome is HoldOutcome.LIMIT_REACHED
        assert result.title.available_count == 1
        assert await backend.get_reservation("r2") is None

    @pytest.mark.asyncio
    async def test_unknown_records(self, backend):
        with pytest.raises(TitleNotFoundError):
            await backend.place_hold(dataclasses.replace(reservation(), title_id="nope"))
        with pytest.raises(MemberNotFoundError):
            await backend.place_hold(reservation(member_id="ghost"))

    @pytest.mark.asyncio
    async def test_concurrent_holds_never_oversell(self):
        backend = MemoryBackend()
        await backend.upsert_title(Title.with_copies("t1", 3))
        for i in range(10):
            await backend.upsert_member(Member(f"m{i}"))
        results = await asyncio.gather(
            *(backend.place_hold(reservation(f"r{i}", member_id=f"m{i}")) for i in range(10))
        )
        assert sum(r.placed for r in results) == 3
        counts = await backend.count_reservations_by_status("t1")
        assert counts[ReservationStatus.RESERVED] == 3
        assert (await backend.get_title("t1")).available_count == 0

    @pytest.mark.asyncio
    async def test_withdraw_undoes_hold_once(self, backend):
        hold = reservation("r1")
        await backend.place_hold(hold)
        assert await backend.withdraw_hold(hold) is True
        assert await backend.withdraw_hold(hold) is False
        title = await backend.get_title("t1")
        assert (title.available_count, title.reserved_count) == (1, 0)
        assert (await backend.get_member("m1")).active_reservations == 0
        assert await backend.get_reservation("r1") is None

    @pytest.mark.asyncio
    async def test_withdraw_leaves_settled_reservation(self, backend):
        hold = reservation("r1")
        await backend.place_hold(hold)
        await backend.transition_reservation(
            StatusChange(hold, dataclasses.replace(hold, status=ReservationStatus.APPROVED)),
            move=(CounterField.RESERVED, CounterField.BORROWED),
        )
        assert await backend.withdraw_hold(hold) is False
        assert (await backend.get_reservation("r1")).status is ReservationStatus.APPROVED


async def _seed_reservations(backend):
    await backend.upsert_title(Title.with_copies("t1", 3))
    await backend.upsert_member(Member("m1"))
    await backend.upsert_member(Member("m2"))
    await backend.place_hold(reservation("r1", expires_in=-5))
    await backend.place_hold(reservation("r2", expires_in=5))
    r3 = reservation("r3", member_id="m2")
    await backend.place_hold(r3)
    await backend.transition_reservation(
        StatusChange(r3, dataclasses.replace(r3, status=ReservationStatus.APPROVED)),
        move=(CounterField.RESERVED, CounterField.BORROWED),
    )


class TestTransition:
    @pytest.fixture
    async def backend(self):
        backend = MemoryBackend()
        await _seed_reservations(backend)
        return backend

    @staticmethod
    def cancel(stored, member_delta=-1):
        return StatusChange(
            stored,
            dataclasses.replace(stored, status=ReservationStatus.CANCELLED),
            member_delta=member_delta,
        )

    @pytest.mark.asyncio
    async def test_status_move_and_member_in_one_step(self, backend):
        stored = await backend.get_reservation("r2")
        result = await backend.transition_reservation(
            self.cancel(stored), move=(CounterField.RESERVED, CounterField.AVAILABLE)
        )
        assert (result.written, result.moved, result.member_adjusted) == (True, True, True)
        assert (result.title.available_count, result.title.reserved_count) == (1, 1)
        assert (await backend.get_reservation("r2")).status is ReservationStatus.CANCELLED
        assert (await backend.get_member("m1")).active_reservations == 1

    @pytest.mark.asyncio
    async def test_lost_compare_and_set_changes_nothing(self, backend):
        stored = await backend.get_reservation("r2")
        move = (CounterField.RESERVED, CounterField.AVAILABLE)
        await backend.transition_reservation(self.cancel(stored), move=move)
        before = await backend.get_title("t1")

        result = await backend.transition_reservation(self.cancel(stored), move=move)
        assert result.written is False
        assert await backend.get_title("t1") == before
        assert (await backend.get_member("m1")).active_reservations == 1

    @pytest.mark.asyncio
    async def test_written_transition_bumps_versions(self, backend):
        title_version = (await backend.get_title("t1")).version
        member_version = (await backend.get_member("m1")).version
        stored = await backend.get_reservation("r2")
        await backend.transition_reservation(self.cancel(stored, member_delta=0))
        assert (await backend.get_title("t1")).version == title_version + 1
        assert (await backend.get_member("m1")).version == member_version + 1

    @pytest.mark.asyncio
    async def test_guards_refuse_zero_counters(self, backend):
        await backend.overwrite_title_counters("t1", 3, 0, 0, 0)
        await backend.set_active_reservations("m1", 0)
        stored = await backend.get_reservation("r2")
        result = await backend.transition_reservation(
            self.cancel(stored), move=(CounterField.RESERVED, CounterField.AVAILABLE)
        )
        assert (result.written, result.moved, result.member_adjusted) == (True, False, False)
        assert result.title.available_count == 3
        assert (await backend.get_member("m1")).active_reservations == 0

    @pytest.mark.asyncio
    async def test_only_writes_lifecycle_fields(self, backend):
        stored = await backend.get_reservation("r2")
        updated = dataclasses.replace(
            stored, status=ReservationStatus.APPROVED, member_id="intruder"
        )
        await backend.transition_reservation(StatusChange(stored, updated))
        assert (await backend.get_reservation("r2")).member_id == "m1"

    @pytest.mark.asyncio
    async def test_missing_records(self, backend):
        with pytest.raises(ReservationNotFoundError):
            await backend.transition_reservation(self.cancel(reservation("nope")))
        stored = await backend.get_reservation("r2")
        orphan = StatusChange(
            dataclasses.replace(stored, title_id="gone"),
            dataclasses.replace(stored, title_id="gone", status=ReservationStatus.CANCELLED),
        )
        with pytest.raises(TitleNotFoundError):
            await backend.transition_reservation(
                orphan, move=(CounterField.RESERVED, CounterField.AVAILABLE)
            )
        assert (await backend.get_reservation("r2")).status is ReservationStatus.RESERVED


class TestReservations:
    @pytest.fixture
    async def backend(self):
        backend = MemoryBackend()
        await _seed_reservations(backend)
        return backend

    @pytest.mark.asyncio
    async def test_list_filters(self, backend):
        assert {r.id for r in await backend.list_reservations(member_id="m1")} == {"r1", "r2"}
        assert {r.id for r in await backend.list_reservations(title_id="t1")} == {
            "r1",
            "r2",
            "r3",
        }
        approved = await backend.list_reservations(status=ReservationStatus.APPROVED)
        assert [r.id for r in approved] == ["r3"]

    @pytest.mark.asyncio
    async def test_find_expired_and_expiring(self, backend):
        expired = await backend.find_expired_holds(NOW)
        assert [r.id for r in expired] == ["r1"]
        soon = await backend.find_holds_expiring_before(NOW + timedelta(minutes=10))
        assert {r.id for r in soon} == {"r1", "r2"}

    @pytest.mark.asyncio
    async def test_mark_reminder_first_writer_wins(self, backend):
        assert await backend.mark_reminder_sent("r2") is True
        assert await backend.mark_reminder_sent("r2") is False
        with pytest.raises(ReservationNotFoundError):
            await backend.mark_reminder_sent("nope")

    @pytest.mark.asyncio
    async def test_count_by_status(self, backend):
        counts = await backend.count_reservations_by_status("t1")
        assert counts[ReservationStatus.RESERVED] == 2
        assert counts[ReservationStatus.APPROVED] == 1
        assert counts[ReservationStatus.LOST] == 0

    @pytest.mark.asyncio
    async def test_health_check_and_clear(self, backend):
        health = await backend.health_check()
        assert health.healthy
        assert health.backend_type == "memory"
        assert health.metadata["reservations_count"] == 3
        await backend.clear()
        assert await backend.list_reservations() == []


class TestCreateBackend:
    def test_memory(self):
        backend = create_backend("Memory", namespace="x")
        assert isinstance(backend, MemoryBackend)
        assert backend.namespace == "x"

    def test_unknown(self):
        with pytest.raises(ConfigurationError, match="Unknown backend"):
            create_backend("sqlite")
