# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""Exception classes for the librosync reservation engine.

This module defines the exception hierarchy used throughout the library.
All exceptions inherit from LibrosyncError, making it easy to catch
all reservation-related exceptions with a single except clause.

The hierarchy has three families:

- PreconditionError: expected, user-facing rejections. Nothing was mutated
  and the caller should not retry automatically.
- StateError: the caller asked for something that does not fit the current
  state of a record (unknown id, wrong owner, illegal transition).
- BackendError: infrastructure failures from the storage backend.
"""

from __future__ import annotations

from datetime import datetime


class LibrosyncError(Exception):
    """Base exception for all librosync errors.

    Example:
        try:
            await service.create_reservation(requester, title_id)
        except LibrosyncError as e:
            logger.error(f"Reservation failed: {e}")
    """

    pass


# =============================================================================
# Precondition errors
# =============================================================================


class PreconditionError(LibrosyncError):
    """Base class for expected rejections of a create request.

    Attributes:
        code: Stable machine-readable error code for the API layer.
    """

    code: str = "PRECONDITION_FAILED"


class MemberNotEligibleError(PreconditionError):
    """Raised when the member's standing does not allow reserving.

    Attributes:
        member_id: The member that was rejected.
        standing: The member's standing value at the time of the check.
    """

    code = "MEMBER_NOT_ELIGIBLE"

    def __init__(self, member_id: str, standing: str | None = None):
        message = f"Member {member_id} is not eligible to reserve"
        if standing is not None:
            message += f" (standing: {standing})"
        super().__init__(message)
        self.member_id = member_id
        self.standing = standing


class CooldownActiveError(PreconditionError):
    """Raised when the member is still serving a cooldown penalty.

    Attributes:
        member_id: The member under cooldown.
        remaining_seconds: Whole seconds left until the cooldown ends.
        cooldown_until: When the cooldown ends.

    Example:
        try:
            await service.create_reservation(requester, title_id)
        except CooldownActiveError as e:
            return {"error": "cooldown", "remainingSeconds": e.remaining_seconds}
    """

    code = "COOLDOWN_ACTIVE"

    def __init__(
        self,
        member_id: str,
        remaining_seconds: int,
        cooldown_until: datetime | None = None,
    ):
        super().__init__(
            f"Cooldown active for member {member_id}: "
            f"{remaining_seconds}s remaining"
        )
        self.member_id = member_id
        self.remaining_seconds = remaining_seconds
        self.cooldown_until = cooldown_until


class ReservationLimitExceededError(PreconditionError):
    """Raised when the member already holds the maximum number of reservations.

    Attributes:
        member_id: The member that hit the limit.
        limit: The configured maximum.
    """

    code = "RESERVATION_LIMIT_EXCEEDED"

    def __init__(self, member_id: str, limit: int):
        super().__init__(
            f"Member {member_id} already has the maximum of {limit} active reservation(s)"
        )
        self.member_id = member_id
        self.limit = limit


class NoCopiesAvailableError(PreconditionError):
    """Raised when a title has no available copy to hold.

    Attributes:
        title_id: The exhausted title.
    """

    code = "NO_COPIES_AVAILABLE"

    def __init__(self, title_id: str):
        super().__init__(f"No available copies of title {title_id}")
        self.title_id = title_id


class DuplicateReservationError(PreconditionError):
    """Raised when the member already has an active reservation for the title."""

    code = "DUPLICATE_RESERVATION"

    def __init__(self, member_id: str, title_id: str, reservation_id: str):
        super().__init__(
            f"Member {member_id} already has active reservation "
            f"{reservation_id} for title {title_id}"
        )
        self.member_id = member_id
        self.title_id = title_id
        self.reservation_id = reservation_id


# =============================================================================
# State errors
# =============================================================================


class StateError(LibrosyncError):
    """Base class for errors caused by the current state of a record."""

    code: str = "STATE_ERROR"


class ReservationNotFoundError(StateError):
    """Raised when a reservation id does not exist."""

    code = "NOT_FOUND"

    def __init__(self, reservation_id: str):
        super().__init__(f"Reservation not found: {reservation_id}")
        self.reservation_id = reservation_id


class TitleNotFoundError(StateError):
    """Raised when a title id does not exist."""

    code = "NOT_FOUND"

    def __init__(self, title_id: str):
        super().__init__(f"Title not found: {title_id}")
        self.title_id = title_id


class MemberNotFoundError(StateError):
    """Raised when a member id does not exist."""

    code = "NOT_FOUND"

    def __init__(self, member_id: str):
        super().__init__(f"Member not found: {member_id}")
        self.member_id = member_id


class ForbiddenError(StateError):
    """Raised when the requester may not act on a reservation."""

    code = "FORBIDDEN"


class InvalidTransitionError(StateError):
    """Raised when a reservation cannot move to the requested status.

    Attributes:
        reservation_id: The reservation involved.
        current_status: Status the reservation is in.
        target_status: Status that was requested.
    """

    code = "INVALID_TRANSITION"

    def __init__(
        self,
        reservation_id: str,
        current_status: str,
        target_status: str,
    ):
        super().__init__(
            f"Reservation {reservation_id} cannot move from "
            f"'{current_status}' to '{target_status}'"
        )
        self.reservation_id = reservation_id
        self.current_status = current_status
        self.target_status = target_status


# =============================================================================
# Infrastructure errors
# =============================================================================


class BackendError(LibrosyncError):
    """Base class for storage backend failures."""

    pass


class BackendConnectionError(BackendError):
    """Raised when connection to the storage backend fails.

    Idempotent single-step primitives are retried on this error a bounded
    number of times before it reaches the caller.
    """

    pass


class BackendOperationError(BackendError):
    """Raised when a backend operation fails after connecting.

    This could be due to data corruption, serialization issues, or
    backend-specific errors such as a Lua script failure.
    """

    pass


class ConcurrentUpdateError(BackendError):
    """Raised when a conditional write loses against a concurrent writer."""

    pass


class ReservationTimeoutError(LibrosyncError):
    """Raised when a member-facing request exceeds its time budget.

    Any partial effect of the request has been compensated before this
    exception reaches the caller.
    """

    def __init__(self, operation: str, timeout: float):
        super().__init__(f"{operation} timed out after {timeout:.1f}s")
        self.operation = operation
        self.timeout = timeout


class ConfigurationError(LibrosyncError):
    """Raised when configuration is invalid.

    Common causes include:
    - Non-positive windows or limits
    - An empty cooldown stage table
    - Unknown backend names
    """

    pass


__all__ = [
    "BackendConnectionError",
    "BackendError",
    "BackendOperationError",
    "ConcurrentUpdateError",
    "ConfigurationError",
    "CooldownActiveError",
    "DuplicateReservationError",
    "ForbiddenError",
    "InvalidTransitionError",
    "LibrosyncError",
    "MemberNotEligibleError",
    "MemberNotFoundError",
    "NoCopiesAvailableError",
    "PreconditionError",
    "ReservationLimitExceededError",
    "ReservationNotFoundError",
    "ReservationTimeoutError",
    "StateError",
    "TitleNotFoundError",
]
