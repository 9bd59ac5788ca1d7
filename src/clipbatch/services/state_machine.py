"""Lifecycle of a single work item.

Success path::

    pending -> submitting -> awaiting_completion -> downloading -> completed

Any non-terminal state may move to ``failed`` or ``skipped``. Two edges go
backwards: ``awaiting_completion -> pending`` when the server reports that
generation failed (full restart), and ``downloading -> awaiting_completion``
when a download fails below the attempt ceiling. Terminal states never
change again.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from clipbatch.models.work_item import ItemStatus, WorkItem

SUBMITTING_PROGRESS = 5
SUBMITTED_PROGRESS = 25
POLLING_PROGRESS_CAP = 90
POLLING_PROGRESS_STEP = 2
DOWNLOADING_PROGRESS = 95

_S = ItemStatus

_ALLOWED: dict[ItemStatus, frozenset[ItemStatus]] = {
    _S.PENDING: frozenset({_S.SUBMITTING, _S.FAILED, _S.SKIPPED}),
    _S.SUBMITTING: frozenset({_S.AWAITING_COMPLETION, _S.FAILED, _S.SKIPPED}),
    _S.AWAITING_COMPLETION: frozenset(
        {_S.DOWNLOADING, _S.PENDING, _S.FAILED, _S.SKIPPED}
    ),
    _S.DOWNLOADING: frozenset(
        {_S.COMPLETED, _S.AWAITING_COMPLETION, _S.FAILED, _S.SKIPPED}
    ),
    _S.COMPLETED: frozenset(),
    _S.FAILED: frozenset(),
    _S.SKIPPED: frozenset(),
}

_MUTABLE_FIELDS = frozenset(WorkItem.model_fields) - {"id", "kind", "status"}


class InvalidTransitionError(RuntimeError):
    def __init__(self, item_id: str, current: ItemStatus, target: ItemStatus):
        super().__init__(
            f"Item {item_id}: illegal transition {current.value} -> {target.value}"
        )
        self.item_id = item_id
        self.current = current
        self.target = target


def can_transition(current: ItemStatus, target: ItemStatus) -> bool:
    return target in _ALLOWED[current]


def polling_progress(attempts: int) -> int:
    """Progress shown while waiting on the remote operation; never reaches 100."""
    return min(POLLING_PROGRESS_CAP, SUBMITTED_PROGRESS + attempts * POLLING_PROGRESS_STEP)


def advance_progress(item: WorkItem, value: int) -> int:
    """Raise ``item.progress`` to ``value``; progress never moves backwards."""
    item.progress = max(item.progress, min(100, max(0, value)))
    return item.progress


def apply_changes(item: WorkItem, changes: dict[str, Any]) -> None:
    for name, value in changes.items():
        if name not in _MUTABLE_FIELDS:
            raise AttributeError(f"WorkItem field {name!r} cannot be set directly")
        if name == "progress":
            advance_progress(item, value)
        else:
            setattr(item, name, value)


def apply_transition(
    item: WorkItem,
    target: ItemStatus,
    *,
    now: datetime | None = None,
    **changes: Any,
) -> ItemStatus:
    """Move ``item`` to ``target`` and apply the entry effects of that state.

    Returns the previous status. Raises ``InvalidTransitionError`` for an
    edge outside the lifecycle, including any edge out of a terminal state.
    """
    previous = item.status
    if not can_transition(previous, target):
        raise InvalidTransitionError(item.id, previous, target)

    now = now or datetime.now()

    if target is ItemStatus.PENDING:
        # Full restart: the next attempt starts from a clean slate.
        item.remote_handle = None
        item.progress = 0
        item.started_at = None
        item.ended_at = None
    elif target is ItemStatus.SUBMITTING:
        item.started_at = now
        item.ended_at = None
        if item.first_started_at is None:
            item.first_started_at = now
        advance_progress(item, SUBMITTING_PROGRESS)
    elif target is ItemStatus.AWAITING_COMPLETION:
        advance_progress(item, SUBMITTED_PROGRESS)
    elif target is ItemStatus.DOWNLOADING:
        advance_progress(item, DOWNLOADING_PROGRESS)
    elif target is ItemStatus.COMPLETED:
        item.progress = 100
        item.ended_at = now
    else:
        item.ended_at = now

    item.status = target
    apply_changes(item, changes)
    return previous
