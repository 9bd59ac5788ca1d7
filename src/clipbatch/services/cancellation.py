from __future__ import annotations

import asyncio
from enum import Enum


class CancelReason(str, Enum):
    USER_STOP = "user_stop"
    USER_SKIP = "user_skip"
    UNAUTHORIZED = "unauthorized"


class CancellationToken:
    """Cooperative cancellation signal passed to every suspension point.

    A run owns one root token; each item pipeline gets a child. Cancelling
    the root cancels every child, cancelling a child leaves the root alone.
    Waits go through :meth:`sleep`, which returns early on cancellation.
    In-flight network calls are never interrupted; callers check
    :attr:`cancelled` before starting the next one.
    """

    def __init__(self, parent: CancellationToken | None = None) -> None:
        self._event = asyncio.Event()
        self._reason: CancelReason | None = None
        self._parent = parent
        self._children: list[CancellationToken] = []
        if parent is not None:
            parent._children.append(self)
            if parent.cancelled:
                self.cancel(parent.reason)  # type: ignore[arg-type]

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> CancelReason | None:
        return self._reason

    def child(self) -> CancellationToken:
        return CancellationToken(parent=self)

    def cancel(self, reason: CancelReason) -> None:
        if self._event.is_set():
            return
        self._reason = reason
        self._event.set()
        for child in list(self._children):
            child.cancel(reason)

    def detach(self) -> None:
        """Drop the link to the parent once the owning task has finished."""
        if self._parent is not None and self in self._parent._children:
            self._parent._children.remove(self)
        self._parent = None

    async def wait(self) -> CancelReason | None:
        await self._event.wait()
        return self._reason

    async def sleep(self, delay: float) -> bool:
        """Sleep up to ``delay`` seconds.

        Returns True when the full delay elapsed, False when the token was
        (or already is) cancelled.
        """
        if self.cancelled:
            return False
        try:
            await asyncio.wait_for(self._event.wait(), timeout=max(0.0, delay))
        except asyncio.TimeoutError:
            return True
        return False
