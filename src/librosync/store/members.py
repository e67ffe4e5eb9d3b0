# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
Member ledger: the single entry point for a member's reservation counters.

``active_reservations`` is written in the same atomic step as the
reservation that changes it: ``place_hold`` takes a slot under the limit and
``transition_reservation`` gives one back, never below zero. Only the
reconciliation job overwrites it, here.
"""

import logging
from datetime import datetime

from ..backends.base import BaseBackend
from ..exceptions import MemberNotFoundError
from ..policy.cooldown import CooldownPolicy
from ..retry import RetryPolicy
from ..types import Member

logger = logging.getLogger(__name__)


class MemberLedger:
    """Member lookups, abandonment cooldowns and reconciliation overwrites."""

    def __init__(
        self,
        backend: BaseBackend,
        retry: RetryPolicy | None = None,
    ) -> None:
        self._backend = backend
        self._retry = retry or RetryPolicy()

    async def get(self, member_id: str) -> Member:
        member = await self._retry.call(
            self._backend.get_member, member_id, operation="get_member"
        )
        if member is None:
            raise MemberNotFoundError(member_id)
        return member

    async def list_ids(self) -> list[str]:
        return await self._retry.call(
            self._backend.list_member_ids, operation="list_member_ids"
        )

    async def record_abandonment(
        self, member_id: str, policy: CooldownPolicy, now: datetime
    ) -> datetime:
        """
        Count an abandoned hold and extend the member's cooldown.

        The attempt count and the cooldown are written in one step, and the
        step is not retried so a lost reply cannot count one abandonment
        twice.

        Returns:
            The cooldown end in effect afterwards (never earlier than before)
        """
        attempts, effective = await self._backend.record_abandonment(
            member_id, policy.schedule(now)
        )
        logger.info(
            f"Member {member_id} abandoned hold #{attempts}; "
            f"cooldown until {effective.isoformat()}"
        )
        return effective

    async def overwrite_active(
        self, member_id: str, value: int, expected_version: int | None = None
    ) -> None:
        """
        Overwrite the active count. Reserved for the reconciliation job.

        Raises:
            ConcurrentUpdateError: If ``expected_version`` is given and the
                member changed since it was read
        """
        await self._retry.call(
            self._backend.set_active_reservations,
            member_id,
            value,
            expected_version,
            operation="set_active_reservations",
        )


__all__ = ["MemberLedger"]
