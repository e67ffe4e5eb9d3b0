# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
Best-effort event delivery.

The dispatcher runs after the state change has been committed. Delivery
failures and timeouts are logged and counted, never raised.
"""

import asyncio
import logging

from ..observability.constants import (
    NOTIFICATION_FAILURES_TOTAL,
    NOTIFICATIONS_SENT_TOTAL,
)
from ..observability.protocols import MetricsCollectorProtocol
from ..protocols.notifications import NotificationSink
from ..types.events import DomainEvent
from .sinks import NullSink

logger = logging.getLogger(__name__)


class NotificationDispatcher:
    """Publishes domain events to a sink with a per-event time budget."""

    def __init__(
        self,
        sink: NotificationSink | None = None,
        timeout: float = 5.0,
        metrics: MetricsCollectorProtocol | None = None,
    ) -> None:
        self._sink: NotificationSink = sink if sink is not None else NullSink()
        self._timeout = timeout
        self._metrics = metrics

    @property
    def sink(self) -> NotificationSink:
        return self._sink

    async def publish(self, event: DomainEvent) -> bool:
        """
        Deliver ``event`` to the sink.

        Returns:
            True if the sink accepted the event, False if it failed or timed out
        """
        try:
            await asyncio.wait_for(self._sink.publish(event), timeout=self._timeout)
        except asyncio.TimeoutError:
            logger.warning(
                f"Notification {event.name} timed out after {self._timeout:.1f}s"
            )
            self._record_failure(event, "timeout")
            return False
        except Exception as e:
            logger.warning(f"Notification {event.name} failed: {e!r}", exc_info=True)
            self._record_failure(event, "error")
            return False

        if self._metrics is not None:
            self._metrics.inc_counter(
                NOTIFICATIONS_SENT_TOTAL, labels={"event": event.name}
            )
        return True

    def _record_failure(self, event: DomainEvent, reason: str) -> None:
        if self._metrics is not None:
            self._metrics.inc_counter(
                NOTIFICATION_FAILURES_TOTAL,
                labels={"event": event.name, "reason": reason},
            )


__all__ = ["NotificationDispatcher"]
