from __future__ import annotations

import logging
from typing import Any, Callable, Container, Iterable, Iterator, Optional

from clipbatch.models.run_state import RunStats
from clipbatch.models.work_item import ItemStatus, WorkItem
from clipbatch.services.state_machine import apply_changes, apply_transition

logger = logging.getLogger(__name__)

# (item, previous status or None for field-only updates)
Observer = Callable[[WorkItem, Optional[ItemStatus]], None]


class UnknownItemError(KeyError):
    def __init__(self, item_id: str):
        super().__init__(item_id)
        self.item_id = item_id

    def __str__(self) -> str:
        return f"Unknown item: {self.item_id}"


class ItemStore:
    """Authoritative map of a run's items.

    Pending, in-flight and completed membership is derived from each item's
    status, so an item can never sit in two collections at once. All
    mutations are synchronous: in the event loop a status change and the
    membership change it implies happen together, with no await between.
    """

    def __init__(self, items: Iterable[WorkItem] = ()) -> None:
        self._items: dict[str, WorkItem] = {}
        self._finished: dict[str, None] = {}
        self._observers: list[Observer] = []
        self.add(items)

    # ------------------------------------------------------------------
    # Membership
    # ------------------------------------------------------------------

    def add(self, items: Iterable[WorkItem]) -> None:
        for item in items:
            if item.id in self._items:
                raise ValueError(f"Duplicate item id: {item.id}")
            self._items[item.id] = item
            if item.status.is_terminal:
                self._finished[item.id] = None

    def get(self, item_id: str) -> WorkItem:
        try:
            return self._items[item_id]
        except KeyError:
            raise UnknownItemError(item_id) from None

    def __contains__(self, item_id: object) -> bool:
        return item_id in self._items

    def __iter__(self) -> Iterator[WorkItem]:
        return iter(self._items.values())

    def __len__(self) -> int:
        return len(self._items)

    def pending(self) -> list[WorkItem]:
        """Pending items in queue (insertion) order."""
        return [i for i in self._items.values() if i.status is ItemStatus.PENDING]

    def active(self) -> list[WorkItem]:
        return [i for i in self._items.values() if i.status.is_active]

    def finished(self) -> list[WorkItem]:
        """Terminal items in the order they finished."""
        return [self._items[item_id] for item_id in self._finished]

    def next_pending(self, exclude: Container[str] = ()) -> WorkItem | None:
        for item in self._items.values():
            if item.status is ItemStatus.PENDING and item.id not in exclude:
                return item
        return None

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def subscribe(self, observer: Observer) -> None:
        self._observers.append(observer)

    def transition(self, item_id: str, target: ItemStatus, **changes: Any) -> WorkItem:
        item = self.get(item_id)
        previous = apply_transition(item, target, **changes)
        if target.is_terminal:
            self._finished.setdefault(item_id, None)
        logger.debug("Item %s: %s -> %s", item_id, previous.value, target.value)
        self._notify(item, previous)
        return item

    def update(self, item_id: str, **changes: Any) -> WorkItem:
        """Change non-status fields (progress, counters, cached references)."""
        item = self.get(item_id)
        apply_changes(item, changes)
        self._notify(item, None)
        return item

    def stats(self) -> RunStats:
        counts = {status: 0 for status in ItemStatus}
        for item in self._items.values():
            counts[item.status] += 1
        return RunStats(
            total=len(self._items),
            queued=counts[ItemStatus.PENDING],
            active=(
                counts[ItemStatus.SUBMITTING]
                + counts[ItemStatus.AWAITING_COMPLETION]
                + counts[ItemStatus.DOWNLOADING]
            ),
            completed=counts[ItemStatus.COMPLETED],
            failed=counts[ItemStatus.FAILED],
            skipped=counts[ItemStatus.SKIPPED],
        )

    def _notify(self, item: WorkItem, previous: ItemStatus | None) -> None:
        for observer in self._observers:
            try:
                observer(item, previous)
            except Exception:
                logger.exception("Item observer failed for %s", item.id)
