# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""Title inventory accounting."""

from .ledger import InventoryLedger, LedgerResult

__all__ = ["InventoryLedger", "LedgerResult"]
