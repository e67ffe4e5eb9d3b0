# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""Reservation lifecycle orchestration."""

from .engine import ReservationEngine
from .unit_of_work import Compensation, UnitOfWork

__all__ = ["Compensation", "ReservationEngine", "UnitOfWork"]
