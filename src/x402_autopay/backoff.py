"""Exponential backoff with jitter, testable without real time passing."""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

from .errors import ConfigError

logger = logging.getLogger(__name__)

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class BackoffPolicy:
    max_attempts: int = 3
    base_delay: float = 1.0
    multiplier: float = 2.0
    max_delay: float = 30.0
    jitter: float = 0.1

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ConfigError("max_attempts must be at least 1", details={"maxAttempts": self.max_attempts})
        if self.base_delay < 0 or self.max_delay < 0:
            raise ConfigError("retry delays must be non-negative")
        if self.multiplier < 1:
            raise ConfigError("retry multiplier must be >= 1", details={"multiplier": self.multiplier})
        if not 0 <= self.jitter <= 1:
            raise ConfigError("retry jitter must be between 0 and 1", details={"jitter": self.jitter})

    def compute_delay(self, attempt: int, rng: Optional[random.Random] = None) -> float:
        """Delay before retry number ``attempt + 1`` (``attempt`` counts from 0)."""
        delay = min(self.base_delay * (self.multiplier ** attempt), self.max_delay)
        if self.jitter:
            rand = (rng or random).random()
            delay += delay * self.jitter * rand
        return min(delay, self.max_delay)


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    *,
    policy: BackoffPolicy,
    is_retryable: Callable[[BaseException], bool],
    sleep: Sleep = asyncio.sleep,
    rng: Optional[random.Random] = None,
    on_retry: Optional[Callable[[int, BaseException, float], None]] = None,
) -> T:
    """Run ``operation`` until it succeeds, fails permanently or attempts run out.

    The last exception is re-raised unchanged.
    """
    attempt = 0
    while True:
        try:
            return await operation()
        except Exception as exc:
            if attempt + 1 >= policy.max_attempts or not is_retryable(exc):
                raise
            delay = policy.compute_delay(attempt, rng)
            logger.warning(
                "Attempt %d/%d failed (%s); retrying in %.2fs",
                attempt + 1,
                policy.max_attempts,
                exc,
                delay,
            )
            if on_retry is not None:
                on_retry(attempt, exc, delay)
            await sleep(delay)
            attempt += 1
