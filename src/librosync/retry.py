# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
Bounded retries for idempotent backend primitives.

Only single-step calls are retried. A multi-step sequence is never replayed
as a whole; its steps are undone through compensations instead.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .exceptions import BackendConnectionError

if TYPE_CHECKING:
    from .config import ReservationConfig

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """
    Exponential backoff retry policy.

    Attributes:
        max_attempts: Total attempts including the first one
        backoff_base: Initial wait in seconds
        backoff_max: Upper bound on a single wait in seconds
        retry_on: Exception types that trigger another attempt
    """

    max_attempts: int = 3
    backoff_base: float = 0.05
    backoff_max: float = 1.0
    retry_on: tuple[type[BaseException], ...] = (BackendConnectionError,)

    @classmethod
    def from_config(cls, config: ReservationConfig) -> RetryPolicy:
        return cls(
            max_attempts=config.max_retries,
            backoff_base=config.retry_backoff_base,
            backoff_max=config.retry_backoff_max,
        )

    def with_retry_on(self, *exc_types: type[BaseException]) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.max_attempts,
            backoff_base=self.backoff_base,
            backoff_max=self.backoff_max,
            retry_on=exc_types,
        )

    async def call(
        self,
        func: Callable[..., Awaitable[T]],
        *args: Any,
        operation: str = "",
        **kwargs: Any,
    ) -> T:
        """Await ``func(*args, **kwargs)``, retrying on ``retry_on`` errors."""
        label = operation or getattr(func, "__name__", "operation")

        def _log_retry(retry_state: RetryCallState) -> None:
            outcome = retry_state.outcome
            error = outcome.exception() if outcome is not None else None
            logger.warning(
                f"Retrying {label} after {error!r} "
                f"(attempt {retry_state.attempt_number}/{self.max_attempts})"
            )

        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type(self.retry_on),
            wait=wait_exponential(
                multiplier=self.backoff_base,
                min=self.backoff_base,
                max=self.backoff_max,
            ),
            stop=stop_after_attempt(self.max_attempts),
            reraise=True,
            before_sleep=_log_retry,
        ):
            with attempt:
                return await func(*args, **kwargs)
        raise AssertionError("unreachable")  # pragma: no cover


__all__ = ["RetryPolicy"]
