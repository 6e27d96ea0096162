"""Retry classification and backoff computation."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from .constants import DEFAULT_MAX_DELAY_MS, MAX_RETRY_ATTEMPTS
from .contracts import BackoffStrategy, ErrorHandlingPolicy, Step
from .errors import StepflowError

logger = logging.getLogger(__name__)

SleepFunc = Callable[[float], Awaitable[None]]


def compute_backoff(
    attempt: int,
    strategy: BackoffStrategy = BackoffStrategy.EXPONENTIAL,
    initial_delay_ms: float = 1000,
    max_delay_ms: float = DEFAULT_MAX_DELAY_MS,
) -> float:
    """Delay in milliseconds to wait after failed ``attempt`` (1-based)."""
    if attempt < 1:
        raise ValueError("attempt numbers start at 1")
    if strategy == BackoffStrategy.FIXED:
        delay = initial_delay_ms
    elif strategy == BackoffStrategy.LINEAR:
        delay = initial_delay_ms * attempt
    else:
        delay = initial_delay_ms * 2 ** (attempt - 1)
    return float(min(delay, max_delay_ms))


def is_retriable(error: BaseException, unknown_default: bool = True) -> bool:
    """Classify ``error`` as worth another attempt."""
    if isinstance(error, StepflowError):
        return error.retriable
    if isinstance(error, (asyncio.TimeoutError, TimeoutError, ConnectionError)):
        return True
    if isinstance(error, PydanticValidationError):
        return False
    return unknown_default


class RetryPolicy(BaseModel):
    """Attempt budget and backoff for one step."""

    max_attempts: int = Field(default=1, ge=1, le=MAX_RETRY_ATTEMPTS + 1)
    backoff: BackoffStrategy = BackoffStrategy.FIXED
    initial_delay_ms: float = Field(default=1000, ge=0)
    max_delay_ms: float = Field(default=DEFAULT_MAX_DELAY_MS, ge=0)
    retry_unknown_errors: bool = True

    @classmethod
    def for_step(
        cls,
        step: Step,
        error_handling: ErrorHandlingPolicy,
        max_delay_ms: float = DEFAULT_MAX_DELAY_MS,
        retry_unknown_errors: bool = True,
    ) -> "RetryPolicy":
        """Build the policy for ``step``.

        A step's own retry spec wins; otherwise the workflow-wide
        ``max_retries``/``retry_delay_ms`` apply with a fixed delay.
        """
        if step.retry is not None:
            return cls(
                max_attempts=step.retry.max_attempts,
                backoff=step.retry.backoff,
                initial_delay_ms=step.retry.initial_delay_ms,
                max_delay_ms=max_delay_ms,
                retry_unknown_errors=retry_unknown_errors,
            )
        return cls(
            max_attempts=error_handling.max_retries + 1,
            backoff=BackoffStrategy.FIXED,
            initial_delay_ms=error_handling.retry_delay_ms,
            max_delay_ms=max_delay_ms,
            retry_unknown_errors=retry_unknown_errors,
        )

    def delay_ms(self, attempt: int) -> float:
        return compute_backoff(
            attempt, self.backoff, self.initial_delay_ms, self.max_delay_ms
        )

    def is_retriable(self, error: BaseException) -> bool:
        return is_retriable(error, unknown_default=self.retry_unknown_errors)

    def should_retry(self, error: BaseException, attempt: int) -> bool:
        """Whether a step that failed on ``attempt`` gets another one."""
        return self.is_retriable(error) and attempt < self.max_attempts

    def next_delay(self, error: BaseException, attempt: int) -> Optional[float]:
        """Delay before the next attempt, or ``None`` when retrying stops."""
        if not self.should_retry(error, attempt):
            return None
        return self.delay_ms(attempt)


async def schedule_retry(delay_ms: float, sleep: SleepFunc = asyncio.sleep) -> None:
    """Sleep for ``delay_ms`` before retrying."""
    if delay_ms > 0:
        logger.debug(f"Backing off for {delay_ms:.0f}ms before retry")
        await sleep(delay_ms / 1000.0)
