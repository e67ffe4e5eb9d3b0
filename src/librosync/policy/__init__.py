# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""Reservation policies."""

from .cooldown import CooldownPolicy, remaining_seconds

__all__ = ["CooldownPolicy", "remaining_seconds"]
