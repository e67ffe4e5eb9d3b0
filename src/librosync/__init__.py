# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""LibroSync - Reservation lifecycle and inventory consistency engine.

This library keeps per-title copy counters, reservation state and members'
active-reservation counts consistent under concurrent requests, partial
failures and an unattended expiry process.

Key Features:
    - Guarded counter moves: concurrent holds never overbook a title
    - Compare-and-set status transitions with a closed lifecycle
    - Compensating units of work bounded by a request timeout
    - Escalating cooldowns for members who abandon holds
    - Background expiry sweeper with pickup reminders
    - Reconciliation job that rebuilds counters from reservations
    - Multiple backend options (memory, Redis)

Quick Start:
    >>> from librosync import Requester, create_service
    >>>
    >>> service = create_service()
    >>> await service.add_title("dune", copies=3)
    >>> await service.register_member("m-1")
    >>> async with service:
    ...     hold = await service.create_reservation(Requester("m-1"), "dune")
    ...     await service.transition(Requester.admin(), hold.id, "approved")

Main Exports:
    - ReservationService, create_service: Member, admin and scheduler entry points
    - ReservationEngine: Lifecycle orchestration
    - MemoryBackend, RedisBackend: Storage backends
    - ReservationConfig: Configuration options
    - NotificationSink: Protocol for event delivery

Note: RedisBackend requires the 'redis' extra. Install with:
    pip install librosync[redis]

Version: 1.0.0
"""

__version__ = "1.0.0"

from typing import TYPE_CHECKING

from .backends import (
    BaseBackend,
    MemoryBackend,
    create_backend,
)
from .config import ReservationConfig
from .engine import ReservationEngine, UnitOfWork
from .exceptions import (
    BackendConnectionError,
    BackendError,
    BackendOperationError,
    ConfigurationError,
    CooldownActiveError,
    DuplicateReservationError,
    ForbiddenError,
    InvalidTransitionError,
    LibrosyncError,
    MemberNotEligibleError,
    MemberNotFoundError,
    NoCopiesAvailableError,
    PreconditionError,
    ReservationLimitExceededError,
    ReservationNotFoundError,
    ReservationTimeoutError,
    StateError,
    TitleNotFoundError,
)
from .inventory import InventoryLedger
from .jobs import ExpirySweeper, ReconciliationJob, ReconciliationReport
from .notifications import LoggingSink, NotificationDispatcher, NullSink, RecordingSink
from .policy import CooldownPolicy
from .protocols import NotificationSink, Requester
from .service import (
    CooldownSummary,
    ReservationListing,
    ReservationService,
    create_service,
)
from .store import MemberLedger, ReservationStore
from .types import (
    DisplayStatus,
    InventoryReconciled,
    Member,
    Reservation,
    ReservationCreated,
    ReservationExpiringSoon,
    ReservationStatus,
    ReservationUpdated,
    StandingStatus,
    Title,
    TitleCounters,
)

# Lazy import for optional redis backend
if TYPE_CHECKING:
    from .backends import RedisBackend

__all__ = [
    "BackendConnectionError",
    "BackendError",
    "BackendOperationError",
    # Backends
    "BaseBackend",
    "ConfigurationError",
    "CooldownActiveError",
    # Policy
    "CooldownPolicy",
    "CooldownSummary",
    "DisplayStatus",
    "DuplicateReservationError",
    # Jobs
    "ExpirySweeper",
    "ForbiddenError",
    # Ledgers
    "InventoryLedger",
    "InventoryReconciled",
    "InvalidTransitionError",
    # Exceptions
    "LibrosyncError",
    # Notifications
    "LoggingSink",
    # Types
    "Member",
    "MemberLedger",
    "MemberNotEligibleError",
    "MemberNotFoundError",
    "MemoryBackend",
    "NoCopiesAvailableError",
    "NotificationDispatcher",
    # Protocols
    "NotificationSink",
    "NullSink",
    "PreconditionError",
    "ReconciliationJob",
    "ReconciliationReport",
    "RecordingSink",
    "RedisBackend",  # Lazy loaded - requires redis extra
    "Requester",
    "Reservation",
    # Config
    "ReservationConfig",
    "ReservationCreated",
    # Engine
    "ReservationEngine",
    "ReservationExpiringSoon",
    "ReservationLimitExceededError",
    "ReservationListing",
    "ReservationNotFoundError",
    # Service
    "ReservationService",
    "ReservationStatus",
    "ReservationStore",
    "ReservationTimeoutError",
    "ReservationUpdated",
    "StandingStatus",
    "StateError",
    "Title",
    "TitleCounters",
    "TitleNotFoundError",
    "UnitOfWork",
    "create_backend",
    "create_service",
]


def __getattr__(name: str) -> type:
    """Lazy import for optional redis backend."""
    if name == "RedisBackend":
        from .backends import RedisBackend

        return RedisBackend
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
