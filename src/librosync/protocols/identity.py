# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""Identity collaborator types."""

from dataclasses import dataclass

from ..types import StandingStatus


@dataclass(frozen=True)
class Requester:
    """
    The authenticated caller of a service operation.

    Authentication and account management live outside this package; the
    service trusts whatever the identity layer resolved.

    Attributes:
        member_id: Identifier of the calling member
        standing: Account standing as seen by the identity layer
        is_admin: Whether the caller may run admin transitions
    """

    member_id: str
    standing: StandingStatus = StandingStatus.ACTIVE
    is_admin: bool = False

    @classmethod
    def admin(cls, member_id: str = "admin") -> "Requester":
        return cls(member_id=member_id, is_admin=True)
