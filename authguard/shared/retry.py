"""
Retry policy for resilient operations.
"""

import asyncio
import random
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, TypeVar

from authguard.shared.errors import AuthGuardError, ErrorKind
from authguard.shared.logging import get_logger

T = TypeVar("T")


class AttemptOutcome(str, Enum):
    """Classification of a single attempt."""
    SUCCESS = "success"
    RETRYABLE = "retryable"
    FATAL = "fatal"


RETRYABLE_KINDS = frozenset({ErrorKind.TRANSPORT, ErrorKind.PROTOCOL})


def classify_exception(error: BaseException) -> AttemptOutcome:
    """Default classifier: transport and protocol failures are retryable."""
    if isinstance(error, AuthGuardError) and error.kind in RETRYABLE_KINDS:
        return AttemptOutcome.RETRYABLE
    return AttemptOutcome.FATAL


class RetryPolicy:
    """Max attempts, a backoff function and an outcome classifier."""

    def __init__(self,
                 max_attempts: int = 3,
                 base_delay: float = 1.0,
                 max_delay: float = 60.0,
                 exponential_base: float = 2.0,
                 jitter: bool = False,
                 classifier: Callable[[BaseException], AttemptOutcome] = classify_exception,
                 sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
                 name: str = "default"):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter
        self.classifier = classifier
        self.sleep = sleep
        self.logger = get_logger(f"retry.{name}")

    def delay_for(self, attempt: int) -> float:
        """Delay to wait after failed attempt number ``attempt`` (1-based)."""
        delay = self.base_delay * (self.exponential_base ** (attempt - 1))

        # Apply max delay cap
        delay = min(delay, self.max_delay)

        if self.jitter:
            jitter_amount = delay * 0.1  # 10% jitter
            delay += random.uniform(-jitter_amount, jitter_amount)

        return max(0.0, delay)

    async def run(self,
                  operation: Callable[[], Awaitable[T]],
                  on_success: Optional[Callable[[T], None]] = None,
                  on_failure: Optional[Callable[[BaseException, AttemptOutcome], None]] = None) -> T:
        """Run ``operation`` until it succeeds, fails fatally or attempts run out.

        ``on_success`` and ``on_failure`` observe every attempt's outcome.
        The last failure is re-raised once attempts are exhausted.
        """
        for attempt in range(1, self.max_attempts + 1):
            self.logger.debug("Retry attempt", attempt=attempt, max_attempts=self.max_attempts)
            try:
                result = await operation()
            except Exception as e:
                outcome = self.classifier(e)
                if on_failure is not None:
                    on_failure(e, outcome)

                if outcome is AttemptOutcome.FATAL:
                    self.logger.error("Attempt failed fatally", attempt=attempt, error=str(e))
                    raise

                if attempt == self.max_attempts:
                    self.logger.error(
                        "All retry attempts exhausted",
                        attempt=attempt,
                        max_attempts=self.max_attempts,
                        error=str(e)
                    )
                    raise

                delay = self.delay_for(attempt)
                self.logger.warning(
                    "Retry attempt failed, waiting before next attempt",
                    attempt=attempt,
                    delay=delay,
                    error=str(e)
                )
                await self.sleep(delay)
                continue

            if on_success is not None:
                on_success(result)
            if attempt > 1:
                self.logger.info("Retry succeeded", attempt=attempt)
            return result

        raise AssertionError("unreachable")  # pragma: no cover
