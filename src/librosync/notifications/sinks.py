# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""Built-in notification sinks."""

import json
import logging
from typing import TypeVar

from ..types.events import DomainEvent

logger = logging.getLogger(__name__)

E = TypeVar("E", bound=DomainEvent)


class NullSink:
    """Discards every event."""

    async def publish(self, event: DomainEvent) -> None:
        return None


class LoggingSink:
    """Writes each event payload as JSON to a logger."""

    def __init__(
        self, target: logging.Logger | None = None, level: int = logging.INFO
    ) -> None:
        self._logger = target or logger
        self._level = level

    async def publish(self, event: DomainEvent) -> None:
        self._logger.log(
            self._level, f"{event.name}: {json.dumps(event.to_payload(), default=str)}"
        )


class RecordingSink:
    """Keeps every published event in memory, in order."""

    def __init__(self) -> None:
        self.events: list[DomainEvent] = []

    async def publish(self, event: DomainEvent) -> None:
        self.events.append(event)

    @property
    def names(self) -> list[str]:
        return [event.name for event in self.events]

    def of_type(self, event_type: type[E]) -> list[E]:
        return [event for event in self.events if isinstance(event, event_type)]

    def clear(self) -> None:
        self.events.clear()


__all__ = ["LoggingSink", "NullSink", "RecordingSink"]
