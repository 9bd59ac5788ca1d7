from __future__ import annotations

import asyncio

import pytest

from clipbatch.services.cancellation import CancellationToken, CancelReason


@pytest.mark.asyncio
class TestCancellationToken:
    async def test_parent_cancels_children(self) -> None:
        root = CancellationToken()
        child = root.child()
        root.cancel(CancelReason.USER_STOP)
        assert child.cancelled
        assert child.reason is CancelReason.USER_STOP

    async def test_child_does_not_cancel_parent(self) -> None:
        root = CancellationToken()
        child = root.child()
        sibling = root.child()
        child.cancel(CancelReason.USER_SKIP)
        assert not root.cancelled
        assert not sibling.cancelled

    async def test_child_of_cancelled_parent_starts_cancelled(self) -> None:
        root = CancellationToken()
        root.cancel(CancelReason.UNAUTHORIZED)
        assert root.child().reason is CancelReason.UNAUTHORIZED

    async def test_first_reason_wins(self) -> None:
        token = CancellationToken()
        token.cancel(CancelReason.USER_SKIP)
        token.cancel(CancelReason.USER_STOP)
        assert token.reason is CancelReason.USER_SKIP

    async def test_sleep_completes(self) -> None:
        assert await CancellationToken().sleep(0.01) is True

    async def test_sleep_wakes_on_cancel(self) -> None:
        token = CancellationToken()
        loop = asyncio.get_running_loop()
        loop.call_later(0.01, token.cancel, CancelReason.USER_SKIP)

        started = loop.time()
        assert await token.sleep(30) is False
        assert loop.time() - started < 5

    async def test_sleep_on_cancelled_token_returns_immediately(self) -> None:
        token = CancellationToken()
        token.cancel(CancelReason.USER_STOP)
        assert await token.sleep(30) is False

    async def test_detached_child_ignores_parent(self) -> None:
        root = CancellationToken()
        child = root.child()
        child.detach()
        root.cancel(CancelReason.USER_STOP)
        assert not child.cancelled
