# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
Observability and metrics for LibroSync.

Classes:
    UnifiedMetricsCollector: Unified metrics collector supporting dict and Prometheus.

Protocols:
    MetricsCollectorProtocol: Protocol for metrics collection backends.

Functions:
    get_metrics_collector: Get the global metrics collector singleton.
    reset_metrics_collector: Reset the global metrics collector singleton.

Constants:
    All metric name constants from constants module.
"""

from .collector import (
    METRIC_DEFINITIONS,
    MetricDefinition,
    UnifiedMetricsCollector,
    get_metrics_collector,
    reset_metrics_collector,
)
from .constants import (
    BACKEND_CONNECTION_ERRORS_TOTAL,
    BACKEND_LUA_EXECUTIONS_TOTAL,
    COMPENSATION_FAILURES_TOTAL,
    COMPENSATIONS_RUN_TOTAL,
    HOLDS_EXPIRED_TOTAL,
    LATENCY_BUCKETS,
    LEDGER_DRIFT_TOTAL,
    MEMBERS_RECONCILED_TOTAL,
    METRIC_PREFIX,
    NOTIFICATION_FAILURES_TOTAL,
    NOTIFICATIONS_SENT_TOTAL,
    OPERATION_LATENCY_SECONDS,
    RECONCILIATION_FAILURES_TOTAL,
    REMINDERS_SENT_TOTAL,
    RESERVATION_TIMEOUTS_TOTAL,
    RESERVATION_TRANSITIONS_TOTAL,
    RESERVATIONS_CREATED_TOTAL,
    RESERVATIONS_REJECTED_TOTAL,
    SWEEP_FAILURES_TOTAL,
    TITLES_RECONCILED_TOTAL,
)
from .protocols import MetricsCollectorProtocol

__all__ = [
    "BACKEND_CONNECTION_ERRORS_TOTAL",
    "BACKEND_LUA_EXECUTIONS_TOTAL",
    "COMPENSATIONS_RUN_TOTAL",
    "COMPENSATION_FAILURES_TOTAL",
    "HOLDS_EXPIRED_TOTAL",
    "LATENCY_BUCKETS",
    "LEDGER_DRIFT_TOTAL",
    "MEMBERS_RECONCILED_TOTAL",
    "METRIC_DEFINITIONS",
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
    "MetricDefinition",
    "MetricsCollectorProtocol",
    "UnifiedMetricsCollector",
    "get_metrics_collector",
    "reset_metrics_collector",
]
