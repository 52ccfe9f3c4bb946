"""
Fixed-interval polling with attempt/deadline limits and cancellation.

Every wait in the flow (vault activation, quorum approval, funding,
confirmation) goes through poll_until so that each caller states its own
interval and limits explicitly.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

from loguru import logger

from quorumvault.errors import NetworkError, PollCancelled, TimedOut

T = TypeVar("T")


@dataclass(frozen=True)
class PollPolicy:
    """Interval in seconds; max_attempts/deadline of None means unbounded."""

    interval: float = 1.0
    max_attempts: int | None = None
    deadline: float | None = None


class CancellationToken:
    """Cooperative cancellation signal shared by the poll loops of one run."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def sleep(self, seconds: float) -> None:
        """Sleep for `seconds`, returning early if cancelled."""
        try:
            await asyncio.wait_for(self._event.wait(), timeout=seconds)
        except TimeoutError:
            pass


async def poll_until(
    fetch: Callable[[], Awaitable[T]],
    is_done: Callable[[T], bool],
    policy: PollPolicy,
    *,
    token: CancellationToken | None = None,
    on_pending: Callable[[T], None] | None = None,
    description: str = "poll",
    retry_on: tuple[type[Exception], ...] = (NetworkError,),
) -> T:
    """
    Call `fetch` until `is_done(result)` holds.

    Errors listed in `retry_on` count as a failed attempt and are retried on
    the next tick; any other error propagates.

    Raises:
        TimedOut: max_attempts or deadline exhausted
        PollCancelled: the token was cancelled
    """
    loop = asyncio.get_running_loop()
    started = loop.time()
    attempt = 0

    while True:
        if token is not None and token.cancelled:
            raise PollCancelled(f"{description} cancelled after {attempt} attempts")

        attempt += 1
        try:
            result = await fetch()
        except retry_on as e:
            logger.warning(f"{description}: attempt {attempt} failed: {e}")
        else:
            if is_done(result):
                logger.debug(f"{description}: done after {attempt} attempts")
                return result
            if on_pending is not None:
                on_pending(result)

        if policy.max_attempts is not None and attempt >= policy.max_attempts:
            raise TimedOut(f"{description} not finished after {attempt} attempts")
        if policy.deadline is not None and loop.time() - started >= policy.deadline:
            raise TimedOut(f"{description} not finished within {policy.deadline}s")

        if token is not None:
            await token.sleep(policy.interval)
        else:
            await asyncio.sleep(policy.interval)
