# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""Background jobs: hold expiry and counter reconciliation."""

from .reconciliation import ReconciliationJob, ReconciliationReport
from .sweeper import ExpirySweeper

__all__ = ["ExpirySweeper", "ReconciliationJob", "ReconciliationReport"]
