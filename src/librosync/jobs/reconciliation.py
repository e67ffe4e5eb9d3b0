# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
ReconciliationJob: rebuilds counters from reservation ground truth.

Reservations are authoritative. For each title the job recounts its
reservations by status and rewrites the four copy counters when they
disagree:

    reserved  = #reserved
    borrowed  = #approved
    lost      = #lost
    available = max(total_copies - (reserved + borrowed + lost), 0)

Members get the same treatment for ``active_reservations``. Each title and
each member is repaired on its own; one failure does not stop the run.

Rewrites are conditional on the record ``version`` read before counting, so
a hold or transition that commits while the job counts is never overwritten
with the stale count.
"""

import asyncio
import contextlib
import logging
from dataclasses import dataclass, field

from ..config import ReservationConfig
from ..exceptions import ConcurrentUpdateError
from ..inventory.ledger import InventoryLedger
from ..notifications.dispatcher import NotificationDispatcher
from ..observability.constants import (
    MEMBERS_RECONCILED_TOTAL,
    RECONCILIATION_FAILURES_TOTAL,
    TITLES_RECONCILED_TOTAL,
)
from ..observability.protocols import MetricsCollectorProtocol
from ..store.members import MemberLedger
from ..store.reservations import ReservationStore
from ..types import InventoryReconciled, ReservationStatus, Title

logger = logging.getLogger(__name__)

# Reads and rewrites of one record before giving up until the next run
_MAX_ATTEMPTS = 3


@dataclass
class ReconciliationReport:
    """
    Outcome of one reconciliation run.

    Attributes:
        titles_checked: Titles examined
        titles_corrected: Titles whose counters were rewritten
        members_corrected: Members whose active count was rewritten
        failures: Ids (``title:<id>`` / ``member:<id>``) that could not be processed
    """

    titles_checked: int = 0
    titles_corrected: int = 0
    members_corrected: int = 0
    failures: list[str] = field(default_factory=list)


class ReconciliationJob:
    """Recomputes title and member counters from reservations."""

    def __init__(
        self,
        ledger: InventoryLedger,
        store: ReservationStore,
        members: MemberLedger,
        config: ReservationConfig | None = None,
        notifier: NotificationDispatcher | None = None,
        metrics: MetricsCollectorProtocol | None = None,
    ):
        self._ledger = ledger
        self._store = store
        self._members = members
        self._config = config or ReservationConfig()
        self._notifier = notifier or NotificationDispatcher(metrics=metrics)
        self._metrics = metrics

        self._task: asyncio.Task[None] | None = None
        self._running = False

    async def run(self) -> int:
        """Reconcile every title and member. Returns the number of titles corrected."""
        report = await self.run_report()
        return report.titles_corrected

    async def run_report(self) -> ReconciliationReport:
        report = ReconciliationReport()

        for title_id in await self._ledger.list_title_ids():
            report.titles_checked += 1
            try:
                if await self.reconcile_title(title_id):
                    report.titles_corrected += 1
            except Exception:
                logger.exception(f"Failed to reconcile title {title_id}")
                report.failures.append(f"title:{title_id}")
                self._inc(RECONCILIATION_FAILURES_TOTAL)

        for member_id in await self._members.list_ids():
            try:
                if await self.reconcile_member(member_id):
                    report.members_corrected += 1
            except Exception:
                logger.exception(f"Failed to reconcile member {member_id}")
                report.failures.append(f"member:{member_id}")
                self._inc(RECONCILIATION_FAILURES_TOTAL)

        logger.info(
            f"Reconciliation checked {report.titles_checked} title(s): "
            f"{report.titles_corrected} title(s) and "
            f"{report.members_corrected} member(s) corrected, "
            f"{len(report.failures)} failure(s)"
        )
        return report

    async def reconcile_title(self, title_id: str) -> bool:
        """
        Rewrite one title's counters if they disagree with its reservations.

        The rewrite is conditional on the title version read before the
        count; if a hold or transition lands in between, the title is read
        and counted again.

        Returns:
            True if the counters were rewritten
        """
        for attempt in range(1, _MAX_ATTEMPTS + 1):
            title = await self._ledger.get_title(title_id)
            counts = await self._store.count_by_status(title_id)

            reserved = counts.get(ReservationStatus.RESERVED, 0)
            borrowed = counts.get(ReservationStatus.APPROVED, 0)
            lost = counts.get(ReservationStatus.LOST, 0)
            available = max(title.total_copies - (reserved + borrowed + lost), 0)

            expected = (available, reserved, borrowed, lost)
            if expected == _counters_of(title):
                return False

            if reserved + borrowed + lost > title.total_copies:
                logger.warning(
                    f"Title {title_id} has {reserved + borrowed + lost} copies in use "
                    f"but only {title.total_copies} in total"
                )

            try:
                updated = await self._ledger.overwrite_counters(
                    title_id, *expected, expected_version=title.version
                )
            except ConcurrentUpdateError:
                logger.info(
                    f"Title {title_id} changed while reconciling "
                    f"(attempt {attempt}/{_MAX_ATTEMPTS}), recounting"
                )
                continue

            logger.warning(
                f"Reconciled title {title_id}: (available, reserved, borrowed, lost) "
                f"{_counters_of(title)} -> {expected}"
            )
            self._inc(TITLES_RECONCILED_TOTAL)
            await self._notifier.publish(
                InventoryReconciled(before=title.counters(), after=updated.counters())
            )
            return True

        logger.warning(
            f"Title {title_id} kept changing during reconciliation; "
            f"leaving it to the next run"
        )
        return False

    async def reconcile_member(self, member_id: str) -> bool:
        """Rewrite a member's active count if it disagrees with their reservations."""
        counted = {ReservationStatus.RESERVED}
        if self._config.approved_counts_as_active:
            counted.add(ReservationStatus.APPROVED)

        for attempt in range(1, _MAX_ATTEMPTS + 1):
            member = await self._members.get(member_id)
            reservations = await self._store.list_for_member(member_id)
            expected = sum(1 for r in reservations if r.status in counted)

            if expected == member.active_reservations:
                return False

            try:
                await self._members.overwrite_active(
                    member_id, expected, expected_version=member.version
                )
            except ConcurrentUpdateError:
                logger.info(
                    f"Member {member_id} changed while reconciling "
                    f"(attempt {attempt}/{_MAX_ATTEMPTS}), recounting"
                )
                continue

            logger.warning(
                f"Reconciled member {member_id}: active_reservations "
                f"{member.active_reservations} -> {expected}"
            )
            self._inc(MEMBERS_RECONCILED_TOTAL)
            return True

        logger.warning(
            f"Member {member_id} kept changing during reconciliation; "
            f"leaving it to the next run"
        )
        return False

    # ==========================================================================
    # Periodic mode
    # ==========================================================================

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start periodic reconciliation if ``reconciliation_interval`` is set."""
        if self._running or self._config.reconciliation_interval is None:
            return

        self._running = True
        self._task = asyncio.create_task(self._loop())
        logger.info(
            f"Reconciliation started "
            f"(interval={self._config.reconciliation_interval}s)"
        )

    async def stop(self) -> None:
        if not self._running:
            return

        self._running = False
        if self._task:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
        logger.info("Reconciliation stopped")

    async def _loop(self) -> None:
        interval = self._config.reconciliation_interval
        while self._running and interval is not None:
            try:
                await asyncio.sleep(interval)
                if self._running:
                    await self.run_report()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.exception("Error in reconciliation run: %s", e)
                self._inc(RECONCILIATION_FAILURES_TOTAL)

    def _inc(self, name: str) -> None:
        if self._metrics is not None:
            self._metrics.inc_counter(name)


def _counters_of(title: Title) -> tuple[int, int, int, int]:
    return (
        title.available_count,
        title.reserved_count,
        title.borrowed_count,
        title.lost_count,
    )


__all__ = ["ReconciliationJob", "ReconciliationReport"]
