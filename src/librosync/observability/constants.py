# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
Metric name constants following Prometheus naming conventions.

All metric names use the ``librosync_`` prefix.

Naming Conventions:
    - Counter metrics end with `_total`
    - Histogram metrics for time end with `_seconds`
    - Gauges use present-tense descriptive names

Label Best Practices:
    To prevent label cardinality explosion, use only:
    - `reason` - Rejection reason (enum: cooldown, limit, no_copies, ...)
    - `status` - Target reservation status (enum)
    - `operation` - Ledger or engine operation name (enum)
    - `event` - Domain event name (enum)

    NEVER use:
    - `reservation_id` - Unique per reservation (unbounded!)
    - `member_id` - Unique per member (unbounded!)
    - `title_id` - Grows with the catalog (unbounded!)

Usage:
    >>> from librosync.observability.constants import RESERVATIONS_CREATED_TOTAL
    >>> print(RESERVATIONS_CREATED_TOTAL)
    'librosync_reservations_created_total'
"""


# =============================================================================
# Global Prefix
# =============================================================================

METRIC_PREFIX = "librosync"
"""Prefix for all Prometheus metrics in this library."""


# =============================================================================
# Reservation Lifecycle Metrics (engine/engine.py)
# =============================================================================

RESERVATIONS_CREATED_TOTAL = f"{METRIC_PREFIX}_reservations_created_total"
"""Total reservations created."""

RESERVATIONS_REJECTED_TOTAL = f"{METRIC_PREFIX}_reservations_rejected_total"
"""Total create attempts rejected by a precondition."""

RESERVATION_TRANSITIONS_TOTAL = f"{METRIC_PREFIX}_reservation_transitions_total"
"""Total applied status transitions, labelled by target status."""

RESERVATION_TIMEOUTS_TOTAL = f"{METRIC_PREFIX}_reservation_timeouts_total"
"""Total member-facing operations that exceeded the request timeout."""

OPERATION_LATENCY_SECONDS = f"{METRIC_PREFIX}_operation_latency_seconds"
"""Engine operation latency (histogram)."""


# =============================================================================
# Ledger / Unit of Work Metrics (inventory/ledger.py, engine/unit_of_work.py)
# =============================================================================

LEDGER_DRIFT_TOTAL = f"{METRIC_PREFIX}_ledger_drift_total"
"""Total guarded moves skipped because the source counter was already zero."""

COMPENSATIONS_RUN_TOTAL = f"{METRIC_PREFIX}_compensations_run_total"
"""Total compensating actions executed after a failed unit of work."""

COMPENSATION_FAILURES_TOTAL = f"{METRIC_PREFIX}_compensation_failures_total"
"""Total compensating actions that failed after retries."""


# =============================================================================
# Background Job Metrics (jobs/sweeper.py, jobs/reconciliation.py)
# =============================================================================

HOLDS_EXPIRED_TOTAL = f"{METRIC_PREFIX}_holds_expired_total"
"""Total reserved holds moved to expired by the sweeper."""

SWEEP_FAILURES_TOTAL = f"{METRIC_PREFIX}_sweep_failures_total"
"""Total per-reservation failures during a sweep."""

REMINDERS_SENT_TOTAL = f"{METRIC_PREFIX}_reminders_sent_total"
"""Total expiring-soon reminders emitted."""

TITLES_RECONCILED_TOTAL = f"{METRIC_PREFIX}_titles_reconciled_total"
"""Total titles whose counters were rewritten by reconciliation."""

MEMBERS_RECONCILED_TOTAL = f"{METRIC_PREFIX}_members_reconciled_total"
"""Total members whose active count was rewritten by reconciliation."""

RECONCILIATION_FAILURES_TOTAL = f"{METRIC_PREFIX}_reconciliation_failures_total"
"""Total per-title failures during reconciliation."""


# =============================================================================
# Notification Metrics (notifications/dispatcher.py)
# =============================================================================

NOTIFICATIONS_SENT_TOTAL = f"{METRIC_PREFIX}_notifications_sent_total"
"""Total events delivered to the notification sink."""

NOTIFICATION_FAILURES_TOTAL = f"{METRIC_PREFIX}_notification_failures_total"
"""Total event deliveries that failed or timed out."""


# =============================================================================
# Backend Metrics (backends/redis.py)
# =============================================================================

BACKEND_LUA_EXECUTIONS_TOTAL = f"{METRIC_PREFIX}_backend_lua_executions_total"
"""Total Lua script executions (Redis backend)."""

BACKEND_CONNECTION_ERRORS_TOTAL = f"{METRIC_PREFIX}_backend_connection_errors_total"
"""Total backend connection errors."""


# =============================================================================
# Histogram Buckets
# =============================================================================

LATENCY_BUCKETS: list[float] = [
    0.005,
    0.01,
    0.025,
    0.05,
    0.1,
    0.25,
    0.5,
    1.0,
    2.5,
    5.0,
    10.0,
]
"""Default latency buckets for operation duration histograms (in seconds)."""


__all__ = [
    "BACKEND_CONNECTION_ERRORS_TOTAL",
    "BACKEND_LUA_EXECUTIONS_TOTAL",
    "COMPENSATIONS_RUN_TOTAL",
    "COMPENSATION_FAILURES_TOTAL",
    "HOLDS_EXPIRED_TOTAL",
    "LATENCY_BUCKETS",
    "LEDGER_DRIFT_TOTAL",
    "MEMBERS_RECONCILED_TOTAL",
    "METRIC_PREFIX",
    "NOTIFICATIONS_SENT_TOTAL",
    "NOTIFICATION_FAILURES_TOTAL",
    "OPERATION_LATENCY_SECONDS",
    "RECONCILIATION_FAILURES_TOTAL",
    "REMINDERS_SENT_TOTAL",
    "RESERVATIONS_CREATED_TOTAL",
    "RESERVATIONS_REJECTED_TOTAL",
    "RESERVATION_TIMEOUTS_TOTAL",
    "RESERVATION_TRANSITIONS_TOTAL",
    "SWEEP_FAILURES_TOTAL",
    "TITLES_RECONCILED_TOTAL",
]
