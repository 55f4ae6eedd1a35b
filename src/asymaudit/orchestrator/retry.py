"""Generic retry executor with exponential backoff and jitter.

Every external call made while executing an audit (collectors, the scoring
service) goes through :func:`with_retry`. The executor does not inspect
error kinds: any exception counts as a failed attempt until the attempt
budget is spent, after which the last exception propagates annotated with
``retry_attempts`` and ``retry_context``.
"""

from __future__ import annotations

import asyncio
import logging
import random
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

from pydantic import BaseModel, Field


logger = logging.getLogger(__name__)

T = TypeVar("T")

JITTER_FRACTION = 0.25


class RetryOptions(BaseModel):
    """Retry policy for a single call site.

    Attributes:
        max_attempts: Total attempts including the first one
        base_delay: Delay before the second attempt, in seconds
        max_delay: Upper bound on any single delay, in seconds
        exponential_base: Growth factor between consecutive delays
        jitter: Perturb each delay uniformly by up to ±25 %
    """

    max_attempts: int = Field(default=3, ge=1, le=20)
    base_delay: float = Field(default=1.0, ge=0.0)
    max_delay: float = Field(default=30.0, ge=0.0)
    exponential_base: float = Field(default=2.0, ge=1.0)
    jitter: bool = True

    def calculate_delay(self, attempt: int) -> float:
        """Delay to sleep after ``attempt`` (1-indexed) has failed.

        Args:
            attempt: The attempt number that just failed

        Returns:
            Delay in seconds, never negative
        """
        delay = min(
            self.base_delay * (self.exponential_base ** (attempt - 1)),
            self.max_delay,
        )
        if self.jitter and delay > 0:
            jitter_amount = delay * JITTER_FRACTION
            delay += random.uniform(-jitter_amount, jitter_amount)
        return max(0.0, delay)


SleepFunc = Callable[[float], Awaitable[Any]]


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    options: Optional[RetryOptions] = None,
    context: Optional[Dict[str, Any]] = None,
    *,
    attempt_timeout: Optional[float] = None,
    sleep: SleepFunc = asyncio.sleep,
) -> T:
    """Run ``operation`` until it succeeds or the attempt budget is spent.

    Args:
        operation: Zero-argument coroutine factory; called once per attempt
        options: Retry policy, defaults to ``RetryOptions()``
        context: Structured fields attached to log lines and to the raised error
        attempt_timeout: Seconds before a single attempt is abandoned; a
            timeout counts as a failed attempt
        sleep: Awaitable sleep used between attempts

    Returns:
        The first successful result

    Raises:
        Exception: The last attempt's exception once all attempts failed
    """
    policy = options or RetryOptions()
    ctx = dict(context or {})
    last_error: Optional[BaseException] = None

    for attempt in range(1, policy.max_attempts + 1):
        try:
            if attempt_timeout is not None:
                result = await asyncio.wait_for(operation(), timeout=attempt_timeout)
            else:
                result = await operation()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            last_error = exc
            if attempt >= policy.max_attempts:
                break
            delay = policy.calculate_delay(attempt)
            logger.warning(
                "Operation failed, retrying",
                extra={
                    **ctx,
                    "attempt": attempt,
                    "max_attempts": policy.max_attempts,
                    "delay_seconds": round(delay, 3),
                    "error": str(exc) or type(exc).__name__,
                },
            )
            await sleep(delay)
            continue

        if attempt > 1:
            logger.info(
                "Operation succeeded after retry",
                extra={**ctx, "attempt": attempt},
            )
        return result

    assert last_error is not None
    logger.error(
        "Operation failed after all retry attempts",
        extra={
            **ctx,
            "attempts": policy.max_attempts,
            "error": str(last_error) or type(last_error).__name__,
        },
    )
    setattr(last_error, "retry_attempts", policy.max_attempts)
    setattr(last_error, "retry_context", ctx)
    raise last_error
