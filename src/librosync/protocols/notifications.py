# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""Protocol for the outbound notification collaborator."""

from typing import Protocol, runtime_checkable

from ..types.events import DomainEvent


@runtime_checkable
class NotificationSink(Protocol):
    """
    Receives domain events for real-time fan-out.

    Delivery (sockets, push, email) is the sink's concern. The engine treats
    every publish as best effort: a sink that raises or hangs never affects
    the state change that produced the event.
    """

    async def publish(self, event: DomainEvent) -> None:
        """Deliver one event."""
        ...
