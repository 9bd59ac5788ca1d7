from __future__ import annotations

import pytest

from clipbatch.services.event_bus import EventBus


@pytest.mark.asyncio
class TestEventBus:
    async def test_subscribe_and_publish(self, event_bus: EventBus) -> None:
        received: list[dict] = []

        async def listener(event: dict) -> None:
            received.append(event)

        event_bus.subscribe("item_updated", listener)
        await event_bus.publish("item_updated", {"item_id": "txt-1-0"})

        assert len(received) == 1
        assert received[0]["type"] == "item_updated"
        assert received[0]["item_id"] == "txt-1-0"

    async def test_wildcard_subscription(self, event_bus: EventBus) -> None:
        received: list[dict] = []

        async def listener(event: dict) -> None:
            received.append(event)

        event_bus.subscribe("*", listener)

        await event_bus.publish("run_started", {"run_id": "r1"})
        await event_bus.publish("run_finished", {"run_id": "r1"})

        assert len(received) == 2

    async def test_unsubscribe(self, event_bus: EventBus) -> None:
        received: list[dict] = []

        async def listener(event: dict) -> None:
            received.append(event)

        event_bus.subscribe("test", listener)
        await event_bus.publish("test", {"n": 1})
        assert len(received) == 1

        event_bus.unsubscribe("test", listener)
        await event_bus.publish("test", {"n": 2})
        assert len(received) == 1  # no new events

    async def test_no_listeners(self, event_bus: EventBus) -> None:
        # Should not raise
        await event_bus.publish("unheard_event", {"data": "ignored"})
        event_bus.publish_nowait("unheard_event", {"data": "ignored"})
        await event_bus.drain()

    async def test_listener_error_does_not_break_others(self, event_bus: EventBus) -> None:
        received: list[dict] = []

        async def bad_listener(event: dict) -> None:
            raise RuntimeError("boom")

        async def good_listener(event: dict) -> None:
            received.append(event)

        event_bus.subscribe("test", bad_listener)
        event_bus.subscribe("test", good_listener)

        await event_bus.publish("test", {"data": "ok"})
        assert len(received) == 1

    async def test_publish_nowait_delivered_by_drain(self, event_bus: EventBus) -> None:
        received: list[int] = []

        async def listener(event: dict) -> None:
            received.append(event["n"])

        event_bus.subscribe("tick", listener)
        for n in range(3):
            event_bus.publish_nowait("tick", {"n": n})
        assert received == []

        await event_bus.drain()
        assert sorted(received) == [0, 1, 2]
