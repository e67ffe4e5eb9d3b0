# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
Unified metrics collector backed by both a dict snapshot and Prometheus.

The UnifiedMetricsCollector is the single source of truth for all metrics
emitted by the reservation engine, the background jobs and the backends.

Features:
    1. Thread-safe counter/gauge/histogram operations
    2. Prometheus metric registration (default or caller-supplied registry)
    3. Dict snapshot for JSON export and test assertions
    4. Label cardinality protection (max 1000 unique combinations per metric)
    5. Optional HTTP server for Prometheus scraping

Usage:
    >>> from librosync.observability.collector import get_metrics_collector
    >>> collector = get_metrics_collector()
    >>> collector.inc_counter('librosync_reservations_rejected_total',
    ...                       labels={'reason': 'cooldown'})
    >>> metrics = collector.get_metrics()

Thread Safety:
    All operations are thread-safe. Uses RLock for reentrant locking.
"""

from __future__ import annotations

import logging
import threading
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, ClassVar

from prometheus_client import (
    REGISTRY,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    start_http_server,
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

logger = logging.getLogger(__name__)


@dataclass
class MetricDefinition:
    """
    Definition for a metric that can be instantiated.

    This dataclass defines the schema for metrics, including their type,
    description, labels, and histogram buckets.
    """

    name: str
    metric_type: str  # 'counter', 'gauge', 'histogram'
    description: str
    label_names: tuple[str, ...] = ()
    buckets: list[float] | None = None


# Pre-defined metrics for the library
METRIC_DEFINITIONS: dict[str, MetricDefinition] = {
    # === Lifecycle Counters ===
    RESERVATIONS_CREATED_TOTAL: MetricDefinition(
        RESERVATIONS_CREATED_TOTAL,
        "counter",
        "Total reservations created",
        (),
    ),
    RESERVATIONS_REJECTED_TOTAL: MetricDefinition(
        RESERVATIONS_REJECTED_TOTAL,
        "counter",
        "Total create attempts rejected by a precondition",
        ("reason",),
    ),
    RESERVATION_TRANSITIONS_TOTAL: MetricDefinition(
        RESERVATION_TRANSITIONS_TOTAL,
        "counter",
        "Total applied reservation status transitions",
        ("status",),
    ),
    RESERVATION_TIMEOUTS_TOTAL: MetricDefinition(
        RESERVATION_TIMEOUTS_TOTAL,
        "counter",
        "Total operations that exceeded the request timeout",
        ("operation",),
    ),
    OPERATION_LATENCY_SECONDS: MetricDefinition(
        OPERATION_LATENCY_SECONDS,
        "histogram",
        "Engine operation latency",
        ("operation",),
        buckets=LATENCY_BUCKETS,
    ),
    # === Ledger / Unit of Work ===
    LEDGER_DRIFT_TOTAL: MetricDefinition(
        LEDGER_DRIFT_TOTAL,
        "counter",
        "Total guarded ledger moves skipped on a zero source counter",
        ("operation",),
    ),
    COMPENSATIONS_RUN_TOTAL: MetricDefinition(
        COMPENSATIONS_RUN_TOTAL,
        "counter",
        "Total compensating actions executed",
        ("operation",),
    ),
    COMPENSATION_FAILURES_TOTAL: MetricDefinition(
        COMPENSATION_FAILURES_TOTAL,
        "counter",
        "Total compensating actions that failed",
        ("operation",),
    ),
    # === Background Jobs ===
    HOLDS_EXPIRED_TOTAL: MetricDefinition(
        HOLDS_EXPIRED_TOTAL,
        "counter",
        "Total holds expired by the sweeper",
        (),
    ),
    SWEEP_FAILURES_TOTAL: MetricDefinition(
        SWEEP_FAILURES_TOTAL,
        "counter",
        "Total per-reservation sweep failures",
        (),
    ),
    REMINDERS_SENT_TOTAL: MetricDefinition(
        REMINDERS_SENT_TOTAL,
        "counter",
        "Total expiring-soon reminders emitted",
        (),
    ),
    TITLES_RECONCILED_TOTAL: MetricDefinition(
        TITLES_RECONCILED_TOTAL,
        "counter",
        "Total titles corrected by reconciliation",
        (),
    ),
    MEMBERS_RECONCILED_TOTAL: MetricDefinition(
        MEMBERS_RECONCILED_TOTAL,
        "counter",
        "Total members corrected by reconciliation",
        (),
    ),
    RECONCILIATION_FAILURES_TOTAL: MetricDefinition(
        RECONCILIATION_FAILURES_TOTAL,
        "counter",
        "Total per-title reconciliation failures",
        (),
    ),
    # === Notifications ===
    NOTIFICATIONS_SENT_TOTAL: MetricDefinition(
        NOTIFICATIONS_SENT_TOTAL,
        "counter",
        "Total events delivered",
        ("event",),
    ),
    NOTIFICATION_FAILURES_TOTAL: MetricDefinition(
        NOTIFICATION_FAILURES_TOTAL,
        "counter",
        "Total event deliveries that failed",
        ("event", "reason"),
    ),
    # === Backend Metrics ===
    BACKEND_LUA_EXECUTIONS_TOTAL: MetricDefinition(
        BACKEND_LUA_EXECUTIONS_TOTAL,
        "counter",
        "Total Lua script executions",
        ("script_name",),
    ),
    BACKEND_CONNECTION_ERRORS_TOTAL: MetricDefinition(
        BACKEND_CONNECTION_ERRORS_TOTAL,
        "counter",
        "Total backend connection errors",
        ("error_type",),
    ),
}


class UnifiedMetricsCollector:
    """
    Unified metrics collector supporting both dict-based and Prometheus metrics.

    Thread Safety:
        All operations use RLock for thread-safe access. The lock is reentrant
        to allow nested calls from callbacks.

    Cardinality Protection:
        To prevent unbounded memory growth, a maximum of MAX_LABEL_COMBINATIONS
        unique label combinations are tracked per metric.

    Example:
        >>> collector = UnifiedMetricsCollector(registry=CollectorRegistry())
        >>> collector.inc_counter('librosync_holds_expired_total')
        >>> collector.get_counter_value('librosync_holds_expired_total')
        1
    """

    # Maximum unique label combinations per metric to prevent cardinality explosion
    MAX_LABEL_COMBINATIONS: ClassVar[int] = 1000

    def __init__(
        self,
        enable_prometheus: bool = True,
        registry: CollectorRegistry | None = None,
    ) -> None:
        """
        Initialize the metrics collector.

        Args:
            enable_prometheus: Whether to mirror metrics into Prometheus
            registry: Optional Prometheus CollectorRegistry (isolates tests)
        """
        self._enable_prometheus = enable_prometheus
        self._registry = registry if registry is not None else REGISTRY

        # Dict-based metrics (always available)
        self._counters: dict[str, dict[str, int]] = defaultdict(
            lambda: defaultdict(int)
        )
        self._gauges: dict[str, dict[str, float]] = defaultdict(
            lambda: defaultdict(float)
        )
        self._histograms: dict[str, dict[str, list[float]]] = defaultdict(
            lambda: defaultdict(list)
        )

        self._lock = threading.RLock()

        # Prometheus metric instances (lazy initialized)
        self._prom_metrics: dict[str, Any] = {}

        self._label_combinations: dict[str, set[str]] = defaultdict(set)

        self._server_running = False

        logger.debug(
            f"UnifiedMetricsCollector initialized "
            f"(prometheus={'enabled' if self._enable_prometheus else 'disabled'})"
        )

    def _labels_to_key(self, labels: dict[str, str] | None) -> str:
        """Convert labels dict to a stable string key."""
        if not labels:
            return ""
        return ",".join(f"{k}={v}" for k, v in sorted(labels.items()))

    def _check_cardinality(self, name: str, label_key: str) -> bool:
        """
        Check if adding this label combination would exceed cardinality limit.

        Returns:
            True if the label combination is allowed, False otherwise
        """
        if label_key in self._label_combinations[name]:
            return True
        if len(self._label_combinations[name]) >= self.MAX_LABEL_COMBINATIONS:
            logger.warning(
                f"Cardinality limit ({self.MAX_LABEL_COMBINATIONS}) reached "
                f"for metric {name}. Dropping label combination: {label_key}"
            )
            return False
        self._label_combinations[name].add(label_key)
        return True

    def _get_or_create_prom_metric(
        self, name: str, metric_type: str, labels: dict[str, str] | None
    ) -> Any | None:
        """Get or create the Prometheus metric backing ``name``."""
        if not self._enable_prometheus:
            return None

        with self._lock:
            if name in self._prom_metrics:
                return self._prom_metrics[name]

            defn = METRIC_DEFINITIONS.get(name)
            if defn is not None and defn.metric_type == metric_type:
                description = defn.description
                label_names = list(defn.label_names)
            else:
                # Dynamic metric (not pre-defined)
                description = f"Dynamic {metric_type}: {name}"
                label_names = sorted(labels) if labels else []

            try:
                if metric_type == "counter":
                    metric = Counter(
                        name, description, label_names, registry=self._registry
                    )
                elif metric_type == "gauge":
                    metric = Gauge(
                        name, description, label_names, registry=self._registry
                    )
                else:
                    buckets = defn.buckets if defn and defn.buckets else LATENCY_BUCKETS
                    metric = Histogram(
                        name,
                        description,
                        label_names,
                        buckets=buckets,
                        registry=self._registry,
                    )
            except ValueError as e:
                # Already registered in this registry by another collector
                logger.warning(f"Failed to create Prometheus {metric_type} {name}: {e}")
                return None

            self._prom_metrics[name] = metric
            return metric

    def _update_prom(
        self,
        name: str,
        metric_type: str,
        method: str,
        value: float,
        labels: dict[str, str] | None,
    ) -> None:
        metric = self._get_or_create_prom_metric(name, metric_type, labels)
        if metric is None:
            return
        try:
            target = metric.labels(**labels) if labels else metric
            getattr(target, method)(value)
        except (ValueError, KeyError) as e:
            logger.debug(f"Prometheus {metric_type} update failed for {name}: {e}")

    # === Counter Operations ===

    def inc_counter(
        self,
        name: str,
        value: int = 1,
        labels: dict[str, str] | None = None,
    ) -> None:
        """
        Increment a counter metric.

        Args:
            name: Metric name (should follow Prometheus naming convention)
            value: Value to increment by (must be positive)
            labels: Optional labels dict

        Raises:
            ValueError: If value is negative
        """
        if value < 0:
            raise ValueError("Counter increment must be non-negative")

        label_key = self._labels_to_key(labels)

        with self._lock:
            if not self._check_cardinality(name, label_key):
                return
            self._counters[name][label_key] += value

        self._update_prom(name, "counter", "inc", value, labels)

    def get_counter_value(
        self, name: str, labels: dict[str, str] | None = None
    ) -> int:
        """Return the current value of one counter series (0 if unseen)."""
        with self._lock:
            series = self._counters.get(name)
            if series is None:
                return 0
            return series.get(self._labels_to_key(labels), 0)

    # === Gauge Operations ===

    def set_gauge(
        self,
        name: str,
        value: float,
        labels: dict[str, str] | None = None,
    ) -> None:
        """Set a gauge metric to a specific value."""
        label_key = self._labels_to_key(labels)

        with self._lock:
            if not self._check_cardinality(name, label_key):
                return
            self._gauges[name][label_key] = value

        self._update_prom(name, "gauge", "set", value, labels)

    # === Histogram Operations ===

    def observe_histogram(
        self,
        name: str,
        value: float,
        labels: dict[str, str] | None = None,
    ) -> None:
        """Record an observation in a histogram."""
        label_key = self._labels_to_key(labels)

        with self._lock:
            if not self._check_cardinality(name, label_key):
                return
            observations = self._histograms[name][label_key]
            observations.append(value)
            # Keep only recent observations to prevent memory growth
            if len(observations) > 10000:
                self._histograms[name][label_key] = observations[-5000:]

        self._update_prom(name, "histogram", "observe", value, labels)

    # === Snapshot Operations ===

    def get_metrics(self) -> dict[str, Any]:
        """
        Get a snapshot of all metrics.

        Returns a dict suitable for JSON serialization with structure:
        {
            "counters": {"metric_name": {"label_key": value, ...}, ...},
            "gauges": {"metric_name": {"label_key": value, ...}, ...},
            "histograms": {"metric_name": {"label_key": {...}, ...}, ...}
        }
        """
        with self._lock:
            counters = {
                name: dict(label_values)
                for name, label_values in self._counters.items()
            }
            gauges = {
                name: dict(label_values) for name, label_values in self._gauges.items()
            }

            histograms: dict[str, dict[str, dict[str, Any]]] = {}
            for name, label_values in self._histograms.items():
                histograms[name] = {}
                for label_key, observations in label_values.items():
                    if observations:
                        histograms[name][label_key] = {
                            "count": len(observations),
                            "sum": sum(observations),
                            "avg": sum(observations) / len(observations),
                            "min": min(observations),
                            "max": max(observations),
                        }

        return {
            "counters": counters,
            "gauges": gauges,
            "histograms": histograms,
        }

    def get_flat_metrics(self) -> dict[str, Any]:
        """
        Get metrics in a flat dict format.

        Labeled series use the key format "metric_name{label=value,...}".
        """
        result: dict[str, Any] = {}

        with self._lock:
            for name, label_values in self._counters.items():
                for label_key, value in label_values.items():
                    key = f"{name}{{{label_key}}}" if label_key else name
                    result[key] = value

            for gauge_name, gauge_label_values in self._gauges.items():
                for gauge_label_key, gauge_value in gauge_label_values.items():
                    key = (
                        f"{gauge_name}{{{gauge_label_key}}}"
                        if gauge_label_key
                        else gauge_name
                    )
                    result[key] = gauge_value

        return result

    # === Lifecycle ===

    def reset(self) -> None:
        """Reset all metrics to zero."""
        with self._lock:
            self._counters.clear()
            self._gauges.clear()
            self._histograms.clear()
            self._label_combinations.clear()

        logger.debug("Metrics collector reset")

    # === Prometheus HTTP Server ===

    def start_http_server(self, host: str = "127.0.0.1", port: int = 9090) -> bool:
        """
        Start the Prometheus HTTP server for metrics scraping.

        Args:
            host: Host to bind to (default: 127.0.0.1 for localhost only)
            port: Port to bind to

        Returns:
            True if server started successfully, False otherwise
        """
        if self._server_running:
            logger.warning("Prometheus server already running")
            return True

        try:
            # start_http_server runs in a daemon thread
            start_http_server(port, addr=host, registry=self._registry)
        except OSError as e:
            logger.error(f"Failed to start Prometheus server: {e}")
            return False

        self._server_running = True
        logger.info(f"Prometheus metrics server started on {host}:{port}")
        return True

    @property
    def prometheus_enabled(self) -> bool:
        """Check if Prometheus metrics are enabled."""
        return self._enable_prometheus

    @property
    def server_running(self) -> bool:
        """Check if the Prometheus HTTP server is running."""
        return self._server_running


# =============================================================================
# Singleton Pattern
# =============================================================================

_global_collector: UnifiedMetricsCollector | None = None
_collector_lock = threading.Lock()


def get_metrics_collector(
    enable_prometheus: bool = True,
) -> UnifiedMetricsCollector:
    """
    Get or create the global metrics collector singleton.

    Args:
        enable_prometheus: Whether to enable Prometheus metrics
            (only used on first call)

    Returns:
        The UnifiedMetricsCollector singleton
    """
    global _global_collector

    if _global_collector is None:
        with _collector_lock:
            if _global_collector is None:
                _global_collector = UnifiedMetricsCollector(
                    enable_prometheus=enable_prometheus
                )

    return _global_collector


def reset_metrics_collector() -> None:
    """
    Reset the global metrics collector singleton (mainly for testing).

    The Prometheus series already registered on the default registry are
    left in place; a new collector created afterwards only tracks the dict
    snapshot for names that are already registered.
    """
    global _global_collector
    with _collector_lock:
        if _global_collector:
            _global_collector.reset()
        _global_collector = None


__all__ = [
    "METRIC_DEFINITIONS",
    "MetricDefinition",
    "UnifiedMetricsCollector",
    "get_metrics_collector",
    "reset_metrics_collector",
]
