# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
Protocol definitions for external collaborators.

Available protocols:
- NotificationSink: Interface for real-time event delivery

Supporting types:
- Requester: Authenticated caller resolved by the identity collaborator
"""

from .identity import Requester
from .notifications import NotificationSink

__all__ = ["NotificationSink", "Requester"]
