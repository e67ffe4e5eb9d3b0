# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
Compensating unit of work for multi-step engine operations.

Steps run in order from least to most reversible. After each step the
caller records how to undo it; if the block raises (including cancellation
by a request timeout) the recorded compensations run in reverse order.

Example:
    async with UnitOfWork("expire", retry=policy) as uow:
        moved = await ledger.release_to_available(title_id, change)
        uow.add_compensation("revert_transition", ledger.revert, moved)
        await members.record_abandonment(member_id, cooldown, now)
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from typing_extensions import Self

from ..exceptions import BackendError
from ..observability.constants import (
    COMPENSATION_FAILURES_TOTAL,
    COMPENSATIONS_RUN_TOTAL,
)
from ..observability.protocols import MetricsCollectorProtocol
from ..retry import RetryPolicy

logger = logging.getLogger(__name__)


@dataclass
class Compensation:
    """A recorded undo action."""

    name: str
    func: Callable[..., Awaitable[Any]]
    args: tuple[Any, ...] = ()
    kwargs: dict[str, Any] = field(default_factory=dict)


class UnitOfWork:
    """Async context manager that replays compensations on failure."""

    def __init__(
        self,
        operation: str,
        retry: RetryPolicy | None = None,
        metrics: MetricsCollectorProtocol | None = None,
    ) -> None:
        self.operation = operation
        # Compensations retry on any backend failure, not only connection loss
        self._retry = (retry or RetryPolicy()).with_retry_on(BackendError)
        self._metrics = metrics
        self._compensations: list[Compensation] = []
        self.failed_compensations: list[str] = []
        self.rolled_back = False

    def add_compensation(
        self, name: str, func: Callable[..., Awaitable[Any]], *args: Any, **kwargs: Any
    ) -> None:
        self._compensations.append(Compensation(name, func, args, kwargs))

    def discard(self) -> None:
        """Forget the recorded compensations; the block changed nothing."""
        self._compensations.clear()

    @property
    def pending(self) -> list[str]:
        return [c.name for c in self._compensations]

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: Any,
    ) -> None:
        if exc_type is None:
            self._compensations.clear()
            return
        logger.info(
            f"Unit of work '{self.operation}' failed with "
            f"{exc_type.__name__}; running {len(self._compensations)} compensation(s)"
        )
        await self.rollback()

    async def rollback(self) -> None:
        """Run every recorded compensation in reverse, each one shielded."""
        while self._compensations:
            compensation = self._compensations.pop()
            await asyncio.shield(self._run(compensation))
        self.rolled_back = True

    async def _run(self, compensation: Compensation) -> None:
        labels = {"operation": self.operation}
        try:
            await self._retry.call(
                compensation.func,
                *compensation.args,
                operation=f"{self.operation}.{compensation.name}",
                **compensation.kwargs,
            )
        except Exception:
            logger.exception(
                f"Compensation '{compensation.name}' of '{self.operation}' failed; "
                f"reconciliation will repair the counters"
            )
            self.failed_compensations.append(compensation.name)
            if self._metrics is not None:
                self._metrics.inc_counter(COMPENSATION_FAILURES_TOTAL, labels=labels)
            return

        logger.debug(f"Compensation '{compensation.name}' of '{self.operation}' done")
        if self._metrics is not None:
            self._metrics.inc_counter(COMPENSATIONS_RUN_TOTAL, labels=labels)


__all__ = ["Compensation", "UnitOfWork"]
