from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Callable, Coroutine

logger = logging.getLogger(__name__)

Listener = Callable[[dict[str, Any]], Coroutine[Any, Any, None]]


class EventBus:
    """Async pub/sub for run and item state changes.

    Presentation layers (CLI output, MCP clients, the history recorder)
    subscribe to an event type, or "*" for all, and receive a dict with the
    event data. The engine itself never reaches into its observers.
    """

    def __init__(self) -> None:
        self._listeners: dict[str, list[Listener]] = {}
        self._pending: set[asyncio.Task[None]] = set()

    def subscribe(self, event_type: str, listener: Listener) -> None:
        self._listeners.setdefault(event_type, []).append(listener)

    def unsubscribe(self, event_type: str, listener: Listener) -> None:
        listeners = self._listeners.get(event_type, [])
        if listener in listeners:
            listeners.remove(listener)

    async def publish(self, event_type: str, data: dict[str, Any]) -> None:
        """Deliver an event to every matching listener and wait for them."""
        targets = self._targets(event_type)
        if not targets:
            return

        event = {
            "type": event_type,
            "timestamp": datetime.now().isoformat(),
            **data,
        }
        results = await asyncio.gather(
            *(listener(event) for listener in targets),
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, Exception):
                logger.error("Event listener error for %s: %s", event_type, result)

    def publish_nowait(self, event_type: str, data: dict[str, Any]) -> None:
        """Schedule delivery from synchronous code; see :meth:`drain`."""
        if not self._targets(event_type):
            return
        task = asyncio.get_running_loop().create_task(self.publish(event_type, data))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def drain(self) -> None:
        """Wait until every event scheduled with :meth:`publish_nowait` is delivered."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def _targets(self, event_type: str) -> list[Listener]:
        return [*self._listeners.get(event_type, []), *self._listeners.get("*", [])]
