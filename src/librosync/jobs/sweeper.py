# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""ExpirySweeper: expires abandoned holds and sends pickup reminders."""

import asyncio
import contextlib
import logging
from datetime import datetime

from ..clock import Clock, utc_now
from ..config import ReservationConfig
from ..engine.engine import ReservationEngine
from ..exceptions import InvalidTransitionError
from ..observability.constants import (
    HOLDS_EXPIRED_TOTAL,
    REMINDERS_SENT_TOTAL,
    SWEEP_FAILURES_TOTAL,
)
from ..observability.protocols import MetricsCollectorProtocol
from ..types import Reservation, ReservationExpiringSoon

logger = logging.getLogger(__name__)


class ExpirySweeper:
    """
    Periodic pass over ``reserved`` holds.

    Each expired hold is processed on its own through
    ``ReservationEngine.expire_hold``; a failure on one hold is logged and
    counted and the pass moves on. A hold that another worker expired or
    that was picked up in the meantime loses the status compare-and-set and
    is skipped, so overlapping passes are harmless and a repeated pass
    finds nothing to do.
    """

    def __init__(
        self,
        engine: ReservationEngine,
        config: ReservationConfig | None = None,
        metrics: MetricsCollectorProtocol | None = None,
        clock: Clock | None = None,
    ):
        self._engine = engine
        self._config = config or engine.config
        self._metrics = metrics
        self._clock: Clock = clock or utc_now

        self._sweep_task: asyncio.Task[None] | None = None
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start the background sweep task."""
        if self._running:
            return

        self._running = True
        self._sweep_task = asyncio.create_task(self._sweep_loop())
        logger.info(f"Expiry sweeper started (interval={self._config.sweep_interval}s)")

    async def stop(self) -> None:
        """Stop the background sweep task."""
        if not self._running:
            return

        self._running = False
        if self._sweep_task:
            self._sweep_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._sweep_task
            self._sweep_task = None
        logger.info("Expiry sweeper stopped")

    async def run_once(self) -> int:
        """
        Run one full pass: expire overdue holds, then send reminders.

        Returns:
            Number of holds expired in this pass
        """
        expired = await self.reclaim_expired()
        if self._config.enable_reminders:
            await self.send_reminders()
        return expired

    async def reclaim_expired(self, limit: int | None = None) -> int:
        """
        Expire overdue holds, oldest deadline first. Returns the number expired.

        Args:
            limit: Process at most this many holds (None for all of them)
        """
        now = self._clock()
        overdue = await self._engine.store.find_expired(now)
        if limit is not None:
            overdue = overdue[:limit]
        expired = 0
        for reservation in overdue:
            if await self._expire_one(reservation):
                expired += 1

        if expired:
            logger.info(f"Expired {expired} of {len(overdue)} overdue hold(s)")
        return expired

    async def _expire_one(self, reservation: Reservation) -> bool:
        try:
            await self._engine.expire_hold(reservation)
        except InvalidTransitionError as e:
            logger.debug(f"Skipping hold {reservation.id}: {e}")
            return False
        except Exception:
            logger.exception(f"Failed to expire hold {reservation.id}")
            self._inc(SWEEP_FAILURES_TOTAL)
            return False

        self._inc(HOLDS_EXPIRED_TOTAL)
        return True

    async def send_reminders(self) -> int:
        """
        Emit ``ReservationExpiringSoon`` once per hold nearing its deadline.

        The reminder flag is claimed before the event goes out, so concurrent
        passes never remind twice.

        Returns:
            Number of reminders sent
        """
        now = self._clock()
        deadline = now + self._config.reminder_horizon
        candidates = await self._engine.store.find_expiring_before(deadline)

        sent = 0
        for reservation in candidates:
            if reservation.reminder_sent or reservation.expires_at < now:
                continue
            if await self._remind(reservation, now):
                sent += 1

        if sent:
            logger.info(f"Sent {sent} expiring-hold reminder(s)")
        return sent

    async def _remind(self, reservation: Reservation, now: datetime) -> bool:
        try:
            claimed = await self._engine.store.mark_reminder_sent(reservation.id)
        except Exception:
            logger.exception(f"Failed to flag reminder for hold {reservation.id}")
            self._inc(SWEEP_FAILURES_TOTAL)
            return False
        if not claimed:
            return False

        await self._engine.notifier.publish(
            ReservationExpiringSoon(reservation=reservation, occurred_at=now)
        )
        self._inc(REMINDERS_SENT_TOTAL)
        return True

    async def _sweep_loop(self) -> None:
        """Background task that periodically runs a sweep pass."""
        while self._running:
            try:
                await asyncio.sleep(self._config.sweep_interval)
                if self._running:
                    await self.run_once()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.exception("Error in expiry sweep: %s", e)
                self._inc(SWEEP_FAILURES_TOTAL)

    def _inc(self, name: str) -> None:
        if self._metrics is not None:
            self._metrics.inc_counter(name)


__all__ = ["ExpirySweeper"]
