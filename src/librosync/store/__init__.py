# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""Reservation and member persistence."""

from .members import MemberLedger
from .reservations import ReservationStore

__all__ = ["MemberLedger", "ReservationStore"]
