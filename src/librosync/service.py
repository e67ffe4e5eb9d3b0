# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
ReservationService: the boundary used by the API layer and the scheduler.

The service resolves authorization from the ``Requester`` handed over by the
identity layer and delegates everything else to the engine and the jobs.

Example:
    >>> service = create_service()
    >>> await service.add_title("t1", copies=2)
    >>> await service.register_member("m1")
    >>> async with service:
    ...     reservation = await service.create_reservation(Requester("m1"), "t1")
"""

import functools
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from typing_extensions import Self

from .backends import BaseBackend, HealthCheckResult, MemoryBackend
from .clock import Clock, utc_now
from .config import ReservationConfig
from .engine import ReservationEngine
from .exceptions import ForbiddenError, MemberNotEligibleError
from .inventory import InventoryLedger
from .jobs import ExpirySweeper, ReconciliationJob, ReconciliationReport
from .notifications import NotificationDispatcher
from .observability import get_metrics_collector
from .observability.protocols import MetricsCollectorProtocol
from .policy.cooldown import remaining_seconds
from .protocols import NotificationSink, Requester
from .retry import RetryPolicy
from .store import MemberLedger, ReservationStore
from .types import Member, Reservation, ReservationStatus, StandingStatus, Title

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CooldownSummary:
    active: bool
    remaining_seconds: int
    until: datetime | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "active": self.active,
            "remainingSeconds": self.remaining_seconds,
            "until": self.until.isoformat() if self.until else None,
        }


@dataclass(frozen=True)
class ReservationListing:
    """A member's reservations, newest first, with their cooldown state."""

    reservations: list[Reservation]
    cooldown: CooldownSummary

    def to_dict(self) -> dict[str, Any]:
        return {
            "reservations": [r.to_dict() for r in self.reservations],
            "cooldown": self.cooldown.to_dict(),
        }


class ReservationService:
    """
    Member, admin and scheduler entry points over one backend.

    Use ``create_service`` to build one with its collaborators wired up.
    """

    def __init__(
        self,
        backend: BaseBackend,
        engine: ReservationEngine,
        sweeper: ExpirySweeper,
        reconciliation: ReconciliationJob,
        clock: Clock | None = None,
    ):
        self.backend = backend
        self.engine = engine
        self.sweeper = sweeper
        self.reconciliation = reconciliation
        self._clock: Clock = clock or utc_now

    @property
    def config(self) -> ReservationConfig:
        return self.engine.config

    # ==========================================================================
    # Member operations
    # ==========================================================================

    async def create_reservation(self, requester: Requester, title_id: str) -> Reservation:
        if requester.standing is not StandingStatus.ACTIVE:
            raise MemberNotEligibleError(requester.member_id, requester.standing.value)
        return await self.engine.create(requester.member_id, title_id)

    async def cancel_reservation(
        self,
        requester: Requester,
        reservation_id: str,
        reason: str | None = None,
    ) -> Reservation:
        return await self.engine.cancel(reservation_id, requester.member_id, reason)

    async def list_reservations(self, requester: Requester) -> ReservationListing:
        """The requester's reservations, newest first, plus their cooldown."""
        member = await self.engine.get_member(requester.member_id)
        reservations = await self.engine.store.list_for_member(requester.member_id)
        now = self._clock()
        cooldown = CooldownSummary(
            active=member.cooldown_active(now),
            remaining_seconds=remaining_seconds(member.cooldown_until, now),
            until=member.cooldown_until if member.cooldown_active(now) else None,
        )
        return ReservationListing(reservations=reservations, cooldown=cooldown)

    async def get_title(self, title_id: str) -> Title:
        return await self.engine.get_title(title_id)

    # ==========================================================================
    # Admin operations
    # ==========================================================================

    async def transition(
        self,
        requester: Requester,
        reservation_id: str,
        target_status: ReservationStatus | str,
        **opts: Any,
    ) -> Reservation:
        """
        Admin status change. See ``ReservationEngine.transition``.

        Raises:
            ForbiddenError: The requester is not an admin
        """
        self._require_admin(requester)
        return await self.engine.transition(reservation_id, target_status, **opts)

    async def list_all_reservations(
        self,
        requester: Requester,
        status: ReservationStatus | str | None = None,
    ) -> list[Reservation]:
        self._require_admin(requester)
        wanted = ReservationStatus(status) if status is not None else None
        return await self.engine.store.list_all(wanted)

    @staticmethod
    def _require_admin(requester: Requester) -> None:
        if not requester.is_admin:
            raise ForbiddenError(f"Member {requester.member_id} is not an admin")

    # ==========================================================================
    # Catalog and member seeding
    # ==========================================================================

    async def add_title(self, title_id: str, copies: int, name: str = "") -> Title:
        """Register a title with every copy available."""
        title = Title.with_copies(title_id, copies, name=name)
        await self.backend.upsert_title(title)
        logger.info(f"Added title {title_id} with {copies} copies")
        return title

    async def register_member(
        self,
        member_id: str,
        standing: StandingStatus = StandingStatus.ACTIVE,
    ) -> Member:
        """Register a member with no reservations and no cooldown."""
        member = Member(id=member_id, standing=standing)
        await self.backend.upsert_member(member)
        logger.debug(f"Registered member {member_id} ({standing.value})")
        return member

    # ==========================================================================
    # Scheduler boundary
    # ==========================================================================

    async def run_expiry_sweep(self) -> int:
        return await self.sweeper.run_once()

    async def run_reconciliation(self) -> int:
        return await self.reconciliation.run()

    async def run_reconciliation_report(self) -> ReconciliationReport:
        return await self.reconciliation.run_report()

    async def health_check(self) -> HealthCheckResult:
        return await self.backend.health_check()

    async def start(self) -> None:
        """Start the background sweeper and, if configured, reconciliation."""
        await self.sweeper.start()
        await self.reconciliation.start()

    async def stop(self) -> None:
        await self.sweeper.stop()
        await self.reconciliation.stop()

    async def __aenter__(self) -> Self:
        await self.start()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.stop()
        await self.backend.close()


def create_service(
    backend: BaseBackend | None = None,
    config: ReservationConfig | None = None,
    sink: NotificationSink | None = None,
    metrics: MetricsCollectorProtocol | None = None,
    clock: Clock | None = None,
) -> ReservationService:
    """
    Factory function to create a ReservationService with its collaborators.

    Args:
        backend: Storage backend (defaults to a fresh ``MemoryBackend``)
        config: Engine configuration (defaults to ``ReservationConfig()``)
        sink: Notification sink (defaults to ``NullSink``)
        metrics: Metrics collector (defaults to the global collector when
            ``config.metrics_enabled``, otherwise none)
        clock: Source of the current time

    Returns:
        Configured ReservationService instance
    """
    if config is None:
        config = ReservationConfig()
    if backend is None:
        backend = MemoryBackend()
    if metrics is None and config.metrics_enabled:
        metrics = get_metrics_collector()
    clock = clock or utc_now

    retry = RetryPolicy.from_config(config)
    notifier = NotificationDispatcher(
        sink=sink, timeout=config.notification_timeout, metrics=metrics
    )
    ledger = InventoryLedger(backend, retry=retry, metrics=metrics)
    store = ReservationStore(backend, retry=retry)
    members = MemberLedger(backend, retry=retry)

    engine = ReservationEngine(
        ledger,
        store,
        members,
        config=config,
        notifier=notifier,
        metrics=metrics,
        clock=clock,
    )
    sweeper = ExpirySweeper(engine, config=config, metrics=metrics, clock=clock)
    engine.set_reclaimer(
        functools.partial(sweeper.reclaim_expired, limit=config.inline_reclaim_limit)
    )
    reconciliation = ReconciliationJob(
        ledger,
        store,
        members,
        config=config,
        notifier=notifier,
        metrics=metrics,
    )

    return ReservationService(
        backend=backend,
        engine=engine,
        sweeper=sweeper,
        reconciliation=reconciliation,
        clock=clock,
    )


__all__ = [
    "CooldownSummary",
    "ReservationListing",
    "ReservationService",
    "create_service",
]
