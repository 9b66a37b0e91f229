"""Retry policy for external service calls.

Only :class:`TransientServiceError` is retried.  Backoff is exponential with
random jitter (tenacity ``wait_random_exponential``).  The sleep coroutine is
injectable so tests can drive the policy with a fake clock::

    policy = RetryPolicy(max_attempts=3, sleep=fake_sleep)
    result = await policy.call(client.embed, texts)
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, TypeVar

from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_random_exponential,
)
from tenacity.wait import wait_base

from case_rag.config import RetryConfig
from case_rag.exceptions import TransientServiceError

logger = logging.getLogger(__name__)

T = TypeVar("T")

SleepFn = Callable[[float], Awaitable[None]]


@dataclass
class RetryPolicy:
    """``{max_attempts, backoff}`` injected into every adapter call."""

    max_attempts: int = 4
    base_delay: float = 0.5
    max_delay: float = 8.0
    sleep: SleepFn = field(default=asyncio.sleep, repr=False)
    backoff: wait_base | None = field(default=None, repr=False)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.backoff is None:
            self.backoff = wait_random_exponential(
                multiplier=self.base_delay, max=self.max_delay,
            )

    @classmethod
    def from_config(cls, config: RetryConfig, sleep: SleepFn | None = None) -> RetryPolicy:
        return cls(
            max_attempts=config.max_attempts,
            base_delay=config.base_delay,
            max_delay=config.max_delay,
            sleep=sleep or asyncio.sleep,
        )

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=self.backoff,
            retry=retry_if_exception_type(TransientServiceError),
            sleep=self.sleep,
            before_sleep=before_sleep_log(logger, logging.WARNING),
            # Re-raise the last TransientServiceError instead of RetryError
            reraise=True,
        )

    async def call(self, fn: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        """Await ``fn(*args, **kwargs)`` under this policy."""
        async for attempt in self._retrying():
            with attempt:
                return await fn(*args, **kwargs)
        raise AssertionError("unreachable")  # pragma: no cover


def no_retry() -> RetryPolicy:
    """A policy that makes exactly one attempt."""
    return RetryPolicy(max_attempts=1)
