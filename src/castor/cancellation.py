"""Cooperative cancellation and per-request deadlines.

Requests suspend in exactly two places: waiting on the transport and sleeping
between retry attempts. Both go through :func:`guard`, which races the
suspend point against the request's cancellation token and deadline. Only the
issuing request's task is affected.
"""

from __future__ import annotations

import asyncio
from contextlib import suppress
import time
from typing import TYPE_CHECKING, TypeVar

from castor.errors import CancelledRequestError, RequestTimeoutError

if TYPE_CHECKING:
    from collections.abc import Awaitable

T = TypeVar("T")


class CancellationToken:
    """Explicit cancellation signal for one request."""

    __slots__ = ("_event", "reason")

    def __init__(self) -> None:
        """Create an un-signalled token."""
        self._event = asyncio.Event()
        self.reason: str | None = None

    def cancel(self, reason: str | None = None) -> None:
        """Signal cancellation. Idempotent."""
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        """Block until cancellation is signalled."""
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        """Raise ``CancelledRequestError`` when already signalled."""
        if self.cancelled:
            raise CancelledRequestError(
                f"Request cancelled{f': {self.reason}' if self.reason else ''}"
            )


class Deadline:
    """A monotonic expiry instant; ``None`` timeout means unbounded."""

    __slots__ = ("expires_at", "timeout_s")

    def __init__(self, timeout_s: float | None) -> None:
        """Start the clock now."""
        if timeout_s is not None and timeout_s <= 0:
            raise ValueError("timeout_s must be > 0 or None")
        self.timeout_s = timeout_s
        self.expires_at = (
            None if timeout_s is None else time.monotonic() + timeout_s
        )

    def remaining(self) -> float | None:
        """Seconds left (never negative), or ``None`` when unbounded."""
        if self.expires_at is None:
            return None
        return max(0.0, self.expires_at - time.monotonic())

    @property
    def expired(self) -> bool:
        remaining = self.remaining()
        return remaining is not None and remaining <= 0

    def raise_if_expired(self) -> None:
        """Raise ``RequestTimeoutError`` when the deadline has passed."""
        if self.expired:
            raise self.timeout_error()

    def timeout_error(self) -> RequestTimeoutError:
        return RequestTimeoutError(
            f"Request deadline of {self.timeout_s}s expired", phase="deadline"
        )


async def guard(
    awaitable: Awaitable[T],
    token: CancellationToken | None,
    deadline: Deadline | None,
) -> T:
    """Await *awaitable* unless cancellation or the deadline wins first.

    Raises:
        CancelledRequestError: When *token* is signalled first.
        RequestTimeoutError: When *deadline* expires first.
    """
    task: asyncio.Future[T] = asyncio.ensure_future(awaitable)
    if token is not None and token.cancelled:
        await _discard(task)
        token.raise_if_cancelled()
    if deadline is not None and deadline.expired:
        await _discard(task)
        deadline.raise_if_expired()

    waiter = asyncio.ensure_future(token.wait()) if token is not None else None
    timeout = deadline.remaining() if deadline is not None else None
    pending = {task} if waiter is None else {task, waiter}
    try:
        done, _ = await asyncio.wait(
            pending, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
        )
    except asyncio.CancelledError:
        await _discard(task)
        raise
    finally:
        if waiter is not None:
            waiter.cancel()

    if task in done:
        return task.result()
    await _discard(task)
    if token is not None:
        token.raise_if_cancelled()
    if deadline is not None:
        raise deadline.timeout_error()
    raise RequestTimeoutError("Request timed out")


async def sleep(
    delay: float,
    token: CancellationToken | None = None,
    deadline: Deadline | None = None,
) -> None:
    """Cancellation-aware backoff sleep."""
    await guard(asyncio.sleep(delay), token, deadline)


async def _discard(task: asyncio.Future[object]) -> None:
    task.cancel()
    with suppress(asyncio.CancelledError, Exception):
        await task
