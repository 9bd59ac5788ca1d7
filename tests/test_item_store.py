from __future__ import annotations

from typing import Optional

import pytest

from clipbatch.models.work_item import ItemKind, ItemStatus, WorkItem
from clipbatch.services.item_store import ItemStore, UnknownItemError
from clipbatch.services.state_machine import InvalidTransitionError


def _items(n: int) -> list[WorkItem]:
    return [
        WorkItem(id=f"txt-1-{i}", kind=ItemKind.TEXT_TO_VIDEO, prompt=f"prompt {i}")
        for i in range(n)
    ]


class TestItemStore:
    def test_duplicate_ids_rejected(self) -> None:
        store = ItemStore(_items(2))
        with pytest.raises(ValueError):
            store.add(_items(1))

    def test_unknown_item(self) -> None:
        store = ItemStore()
        with pytest.raises(UnknownItemError) as exc_info:
            store.get("nope")
        assert str(exc_info.value) == "Unknown item: nope"

    def test_next_pending_is_fifo(self) -> None:
        store = ItemStore(_items(3))
        assert store.next_pending().id == "txt-1-0"  # type: ignore[union-attr]
        store.transition("txt-1-0", ItemStatus.SUBMITTING)
        assert store.next_pending().id == "txt-1-1"  # type: ignore[union-attr]
        assert store.next_pending(exclude={"txt-1-1"}).id == "txt-1-2"  # type: ignore[union-attr]

    def test_membership_follows_status(self) -> None:
        store = ItemStore(_items(3))
        store.transition("txt-1-1", ItemStatus.SUBMITTING)
        store.transition("txt-1-2", ItemStatus.SKIPPED, error="Skipped by user")

        assert [i.id for i in store.pending()] == ["txt-1-0"]
        assert [i.id for i in store.active()] == ["txt-1-1"]
        assert [i.id for i in store.finished()] == ["txt-1-2"]

    def test_finished_in_completion_order(self) -> None:
        store = ItemStore(_items(3))
        store.transition("txt-1-2", ItemStatus.FAILED, error="x")
        store.transition("txt-1-0", ItemStatus.SKIPPED)
        assert [i.id for i in store.finished()] == ["txt-1-2", "txt-1-0"]

    def test_terminal_item_cannot_move(self) -> None:
        store = ItemStore(_items(1))
        store.transition("txt-1-0", ItemStatus.SKIPPED)
        with pytest.raises(InvalidTransitionError):
            store.transition("txt-1-0", ItemStatus.SUBMITTING)

    def test_stats_partition_total(self) -> None:
        store = ItemStore(_items(5))
        store.transition("txt-1-0", ItemStatus.SUBMITTING)
        store.transition("txt-1-1", ItemStatus.SUBMITTING)
        store.transition("txt-1-1", ItemStatus.AWAITING_COMPLETION)
        store.transition("txt-1-2", ItemStatus.FAILED, error="x")
        store.transition("txt-1-3", ItemStatus.SKIPPED)

        stats = store.stats()
        assert stats.total == 5
        assert stats.queued == 1
        assert stats.active == 2
        assert stats.failed == 1
        assert stats.skipped == 1
        assert stats.queued + stats.active + stats.done == stats.total

    def test_observers_see_transitions_and_updates(self) -> None:
        store = ItemStore(_items(1))
        seen: list[tuple[str, Optional[ItemStatus]]] = []
        store.subscribe(lambda item, previous: seen.append((item.status.value, previous)))

        store.transition("txt-1-0", ItemStatus.SUBMITTING)
        store.update("txt-1-0", retry_count=1)

        assert seen == [("submitting", ItemStatus.PENDING), ("submitting", None)]

    def test_failing_observer_does_not_block_mutation(self) -> None:
        store = ItemStore(_items(1))

        def bad(item: WorkItem, previous: Optional[ItemStatus]) -> None:
            raise RuntimeError("boom")

        store.subscribe(bad)
        store.transition("txt-1-0", ItemStatus.SUBMITTING)
        assert store.get("txt-1-0").status is ItemStatus.SUBMITTING
