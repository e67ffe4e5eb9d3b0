# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""Domain event delivery."""

from .dispatcher import NotificationDispatcher
from .sinks import LoggingSink, NullSink, RecordingSink

__all__ = ["LoggingSink", "NotificationDispatcher", "NullSink", "RecordingSink"]
