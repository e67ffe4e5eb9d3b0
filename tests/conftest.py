# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""Shared fixtures: a controllable clock, an isolated metrics collector and a
service wired to an in-memory backend."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from prometheus_client import CollectorRegistry

from librosync import (
    MemoryBackend,
    RecordingSink,
    ReservationConfig,
    ReservationStatus,
    create_service,
)
from librosync.observability import UnifiedMetricsCollector

START = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime = START) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def metrics() -> UnifiedMetricsCollector:
    return UnifiedMetricsCollector(registry=CollectorRegistry())


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def backend() -> MemoryBackend:
    return MemoryBackend(namespace="test")


@pytest.fixture
def config() -> ReservationConfig:
    return ReservationConfig(
        max_retries=2,
        retry_backoff_base=0.0,
        retry_backoff_max=0.0,
        request_timeout=2.0,
        notification_timeout=0.5,
    )


@pytest.fixture
def service(backend, config, sink, metrics, clock):
    return create_service(
        backend=backend, config=config, sink=sink, metrics=metrics, clock=clock
    )


@pytest.fixture
def check_consistency():
    """Assert a title's counters add up and match its reservations."""

    async def _check(backend, title_id: str) -> None:
        title = await backend.get_title(title_id)
        assert title is not None
        assert title.is_consistent, title
        counts = await backend.count_reservations_by_status(title_id)
        assert title.reserved_count == counts.get(ReservationStatus.RESERVED, 0)
        assert title.borrowed_count == counts.get(ReservationStatus.APPROVED, 0)
        assert title.lost_count == counts.get(ReservationStatus.LOST, 0)

    return _check
