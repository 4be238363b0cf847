"""
Retry Policy - Bounded retries for unacknowledged device commands.

The command queue sends every raw command through a RetryPolicy. An attempt
whose reply fails validation is retried after a backoff delay; once
``max_attempts`` is spent the result is EXHAUSTED. A policy with
``max_attempts=1`` therefore aborts the entry on the first bad reply.

Exceptions raised by an attempt are *not* retried unless their type is
listed in ``retry_on``; they propagate to the caller unchanged.
"""

from __future__ import annotations

import asyncio
import random
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, List, Optional, Tuple, Type

from fabbot.core.logging_utils import LoggerLike, ensure_component_logger


class RetryOutcome(Enum):
    """Outcome of a retry operation."""
    SUCCESS = "success"
    EXHAUSTED = "exhausted"  # every attempt was rejected
    ABORTED = "aborted"


@dataclass
class RetryAttempt:
    """Record of a single attempt."""
    attempt_number: int
    started_at: float
    duration_ms: float
    success: bool
    error: Optional[str] = None


@dataclass
class RetryResult:
    """Result of a retried operation."""
    outcome: RetryOutcome
    attempts: List[RetryAttempt] = field(default_factory=list)
    total_duration_ms: float = 0.0
    final_error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.outcome is RetryOutcome.SUCCESS

    @property
    def attempt_count(self) -> int:
        return len(self.attempts)


class RetryPolicy:
    """
    Retry policy with exponential backoff.

    Usage:
        policy = RetryPolicy(max_attempts=3, base_delay=0.1)
        result = await policy.execute(send_and_validate)
        if not result.success:
            ...
    """

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 0.1,
        max_delay: float = 5.0,
        backoff_factor: float = 2.0,
        jitter: float = 0.0,
        retry_on: Tuple[Type[BaseException], ...] = (),
        logger: LoggerLike = None,
    ):
        """
        Args:
            max_attempts: Attempts including the first one (minimum 1).
            base_delay: Delay before the first retry (seconds).
            max_delay: Upper bound for any single delay (seconds).
            backoff_factor: Multiplier applied per further retry.
            jitter: Random jitter factor (0.1 = +/-10%).
            retry_on: Exception types treated as a failed attempt instead of
                being propagated.
            logger: Injected logger.
        """
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.backoff_factor = backoff_factor
        self.jitter = jitter
        self.retry_on = retry_on
        self.logger = ensure_component_logger(logger, fallback_name="RetryPolicy")
        self._aborted = False

    @classmethod
    def abort_on_failure(cls) -> "RetryPolicy":
        """Policy that gives up on the first rejected reply."""
        return cls(max_attempts=1, base_delay=0.0)

    def abort(self) -> None:
        """Stop retrying after the attempt in progress."""
        self._aborted = True

    def get_delay(self, attempt: int) -> float:
        """Delay in seconds before ``attempt`` (1-based; the first try has none)."""
        if attempt <= 1 or self.base_delay <= 0:
            return 0.0

        delay = self.base_delay * (self.backoff_factor ** (attempt - 2))
        delay = min(delay, self.max_delay)

        if self.jitter > 0:
            jitter_range = delay * self.jitter
            delay += random.uniform(-jitter_range, jitter_range)

        return max(0.0, delay)

    async def execute(
        self,
        operation: Callable[[], Awaitable[bool]],
        on_retry: Optional[Callable[[int, Optional[str]], None]] = None,
    ) -> RetryResult:
        """
        Run ``operation`` until it returns True or the attempts run out.

        Args:
            operation: Async callable returning True when the attempt succeeded.
            on_retry: Called before each retry with (attempt_number, last_error).

        Returns:
            RetryResult describing the outcome and every attempt.
        """
        self._aborted = False
        attempts: List[RetryAttempt] = []
        start_time = time.monotonic()
        last_error: Optional[str] = None

        def _result(outcome: RetryOutcome, error: Optional[str] = None) -> RetryResult:
            return RetryResult(
                outcome=outcome,
                attempts=attempts,
                total_duration_ms=(time.monotonic() - start_time) * 1000,
                final_error=error,
            )

        for attempt in range(1, self.max_attempts + 1):
            if attempt > 1:
                if self._aborted:
                    return _result(RetryOutcome.ABORTED, "Retry aborted")
                if on_retry:
                    on_retry(attempt, last_error)
                delay = self.get_delay(attempt)
                self.logger.debug("Retry attempt %d/%d after %.2fs delay", attempt, self.max_attempts, delay)
                if delay:
                    await asyncio.sleep(delay)

            attempt_start = time.monotonic()
            try:
                success = await operation()
            except self.retry_on as e:
                success = False
                last_error = str(e)
            else:
                if not success:
                    last_error = "Operation returned False"

            attempts.append(RetryAttempt(
                attempt_number=attempt,
                started_at=attempt_start,
                duration_ms=(time.monotonic() - attempt_start) * 1000,
                success=success,
                error=None if success else last_error,
            ))
            if success:
                return _result(RetryOutcome.SUCCESS)

        return _result(RetryOutcome.EXHAUSTED, last_error)


__all__ = ["RetryAttempt", "RetryOutcome", "RetryPolicy", "RetryResult"]
