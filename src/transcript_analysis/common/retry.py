"""Bounded exponential backoff for async model calls."""

from __future__ import annotations

import asyncio
import logging
import random
from typing import Awaitable, Callable, Optional, TypeVar

from pydantic import BaseModel, Field

from transcript_analysis.common.config import AnalysisSettings
from transcript_analysis.common.errors import ModelError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryPolicy(BaseModel):
    max_attempts: int = Field(default=3, ge=1)
    base_delay: float = Field(default=2.0, ge=0)
    max_delay: float = Field(default=30.0, ge=0)
    jitter: float = Field(default=0.1, ge=0, le=1)

    @classmethod
    def from_settings(cls, settings: AnalysisSettings) -> "RetryPolicy":
        return cls(
            max_attempts=settings.max_attempts,
            base_delay=settings.backoff_base_seconds,
            max_delay=settings.backoff_max_seconds,
            jitter=settings.backoff_jitter,
        )

    def delay_for(self, attempt: int, retry_after: Optional[float] = None) -> float:
        """Backoff before retrying after ``attempt`` (1-based) failed."""

        delay = min(self.max_delay, self.base_delay * (2 ** (attempt - 1)))
        if retry_after is not None:
            delay = min(self.max_delay, max(delay, retry_after))
        if self.jitter and delay:
            delay += random.uniform(0, delay * self.jitter)
        return delay


async def call_with_retry(
    operation: Callable[[int], Awaitable[T]],
    policy: RetryPolicy,
    *,
    label: str = "model call",
    on_retry: Optional[Callable[[int, ModelError], None]] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """
    Run ``operation`` until it succeeds, fails fatally or attempts run out.

    Args:
        operation: Coroutine factory receiving the 1-based attempt number
        policy: Attempt cap and backoff parameters
        label: Name used in log messages
        on_retry: Called with (attempt, error) before each backoff
        sleep: Awaitable sleep, replaceable in tests

    Returns:
        The operation's result

    Raises:
        ModelError: The fatal error, or the last transient error once attempts are exhausted
    """
    attempt = 1
    while True:
        try:
            return await operation(attempt)
        except ModelError as e:
            if not e.transient:
                logger.error("%s failed with fatal error: %s", label, e)
                raise
            if attempt >= policy.max_attempts:
                logger.error("%s failed after %d attempts: %s", label, attempt, e)
                raise
            wait_time = policy.delay_for(attempt, e.retry_after)
            logger.warning(
                "%s transient failure (attempt %d/%d), waiting %.2fs before retry: %s",
                label, attempt, policy.max_attempts, wait_time, e,
            )
            if on_retry is not None:
                on_retry(attempt, e)
            await sleep(wait_time)
            attempt += 1
