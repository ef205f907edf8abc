"""Minimal async retry with explicit error contracts.

Design goals:
- Small API surface
- Explicit state (policy + attempt counters)
- Retry decisions from canonical error kinds, never from message text
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
import random
import time
from typing import TYPE_CHECKING, TypeVar

from castor.errors import LlmError

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

T = TypeVar("T")

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retry policy with exponential backoff and optional jitter."""

    max_attempts: int = 3
    initial_delay_s: float = 0.5
    backoff_multiplier: float = 2.0
    max_delay_s: float = 8.0
    jitter: bool = True  # "full jitter" when enabled
    max_elapsed_s: float | None = 30.0

    def __post_init__(self) -> None:
        """Validate invariants to keep retry behavior predictable."""
        if self.max_attempts < 1:
            raise ValueError("RetryPolicy.max_attempts must be >= 1")
        if self.initial_delay_s < 0:
            raise ValueError("RetryPolicy.initial_delay_s must be >= 0")
        if self.backoff_multiplier <= 0:
            raise ValueError("RetryPolicy.backoff_multiplier must be > 0")
        if self.max_delay_s < 0:
            raise ValueError("RetryPolicy.max_delay_s must be >= 0")
        if self.max_elapsed_s is not None and self.max_elapsed_s < 0:
            raise ValueError("RetryPolicy.max_elapsed_s must be >= 0 or None")


NO_RETRY = RetryPolicy(max_attempts=1)


def should_retry(exc: BaseException) -> bool:
    """Return True when *exc* may be retried.

    Contract:
    - Cancellation (asyncio or token based) is never retried.
    - Only rate limiting, provider unavailability and timeouts are retried;
      everything else is deterministic given the same input.
    """
    if isinstance(exc, asyncio.CancelledError):
        return False
    return isinstance(exc, LlmError) and exc.retryable


def _retry_after_from_error(exc: BaseException) -> float | None:
    if isinstance(exc, LlmError):
        v = exc.retry_after_s
        if isinstance(v, (int, float)) and v >= 0:
            return float(v)
    return None


def compute_backoff_delay(policy: RetryPolicy, *, retry_index: int) -> float:
    """Return the sleep before retry number *retry_index* (1-based)."""
    base = policy.initial_delay_s * (
        policy.backoff_multiplier ** max(0, retry_index - 1)
    )
    base = min(policy.max_delay_s, base)
    if base <= 0:
        return 0.0
    if not policy.jitter:
        return base
    # Full jitter: random in [0, base] to avoid thundering herd.
    return random.random() * base  # noqa: S311


async def retry_async(
    factory: Callable[[], Awaitable[T]],
    *,
    policy: RetryPolicy,
    should_retry: Callable[[BaseException], bool] = should_retry,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    on_retry: Callable[[int, BaseException, float], None] | None = None,
) -> T:
    """Run an async factory with bounded retries.

    Every attempt calls *factory* afresh. Delays between attempts never
    decrease, never undercut a provider ``Retry-After`` hint, and never run
    past ``policy.max_elapsed_s``.
    """
    start = time.monotonic()
    previous_delay = 0.0

    for attempt in range(1, policy.max_attempts + 1):
        try:
            return await factory()
        except Exception as exc:
            if not should_retry(exc) or attempt >= policy.max_attempts:
                raise

            delay = compute_backoff_delay(policy, retry_index=attempt)
            retry_after = _retry_after_from_error(exc)
            if retry_after is not None:
                delay = max(delay, retry_after)
            delay = max(delay, previous_delay)

            if policy.max_elapsed_s is not None:
                remaining = policy.max_elapsed_s - (time.monotonic() - start)
                if remaining <= 0 or delay > remaining:
                    raise

            previous_delay = delay
            if on_retry is not None:
                on_retry(attempt, exc, delay)
            else:
                logger.debug(
                    "Retrying after %.2fs (attempt %d/%d): %s",
                    delay,
                    attempt,
                    policy.max_attempts,
                    exc,
                )
            if delay > 0:
                await sleep(delay)

    raise RuntimeError("retry_async exhausted without an exception")  # pragma: no cover
