"""
Tests for the poll primitive.
"""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import pytest

from quorumvault.errors import InvalidAddress, NetworkError, PollCancelled, TimedOut
from quorumvault.poll import CancellationToken, PollPolicy, poll_until

FAST = PollPolicy(interval=0.001)


class TestPollUntil:
    @pytest.mark.asyncio
    async def test_returns_first_done_result(self):
        fetch = AsyncMock(side_effect=[1, 2, 3, 4])
        result = await poll_until(fetch, lambda v: v >= 3, FAST)
        assert result == 3
        assert fetch.await_count == 3

    @pytest.mark.asyncio
    async def test_on_pending_sees_each_unfinished_result(self):
        seen = []
        fetch = AsyncMock(side_effect=["a", "b", "done"])
        await poll_until(fetch, lambda v: v == "done", FAST, on_pending=seen.append)
        assert seen == ["a", "b"]

    @pytest.mark.asyncio
    async def test_max_attempts(self):
        fetch = AsyncMock(return_value=False)
        with pytest.raises(TimedOut):
            await poll_until(fetch, bool, PollPolicy(interval=0.001, max_attempts=4))
        assert fetch.await_count == 4

    @pytest.mark.asyncio
    async def test_deadline(self):
        fetch = AsyncMock(return_value=False)
        with pytest.raises(TimedOut):
            await poll_until(fetch, bool, PollPolicy(interval=0.01, deadline=0.05))

    @pytest.mark.asyncio
    async def test_network_errors_are_retried(self):
        fetch = AsyncMock(side_effect=[NetworkError("down"), NetworkError("down"), True])
        assert await poll_until(fetch, bool, FAST) is True
        assert fetch.await_count == 3

    @pytest.mark.asyncio
    async def test_network_errors_count_as_attempts(self):
        fetch = AsyncMock(side_effect=NetworkError("down"))
        with pytest.raises(TimedOut):
            await poll_until(fetch, bool, PollPolicy(interval=0.001, max_attempts=2))

    @pytest.mark.asyncio
    async def test_other_errors_propagate(self):
        fetch = AsyncMock(side_effect=InvalidAddress("bad"))
        with pytest.raises(InvalidAddress):
            await poll_until(fetch, bool, FAST)
        assert fetch.await_count == 1


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancelled_before_start(self):
        token = CancellationToken()
        token.cancel()
        fetch = AsyncMock(return_value=False)
        with pytest.raises(PollCancelled):
            await poll_until(fetch, bool, FAST, token=token)
        fetch.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_cancel_interrupts_sleep(self):
        token = CancellationToken()
        fetch = AsyncMock(return_value=False)

        async def cancel_soon():
            await asyncio.sleep(0.01)
            token.cancel()

        canceller = asyncio.create_task(cancel_soon())
        with pytest.raises(PollCancelled):
            # Would take an hour without cancellation
            await asyncio.wait_for(
                poll_until(fetch, bool, PollPolicy(interval=3600), token=token), timeout=5
            )
        await canceller
        assert fetch.await_count == 1

    @pytest.mark.asyncio
    async def test_token_sleep_runs_full_interval(self):
        token = CancellationToken()
        await token.sleep(0.001)
        assert not token.cancelled
