from __future__ import annotations

from datetime import datetime

import pytest

from clipbatch.models.remote import RemoteHandle
from clipbatch.models.work_item import ItemKind, ItemStatus, WorkItem
from clipbatch.services.state_machine import (
    DOWNLOADING_PROGRESS,
    POLLING_PROGRESS_CAP,
    SUBMITTED_PROGRESS,
    SUBMITTING_PROGRESS,
    InvalidTransitionError,
    advance_progress,
    apply_changes,
    apply_transition,
    can_transition,
    polling_progress,
)


def _item(**kwargs) -> WorkItem:
    return WorkItem(id="txt-1-0", kind=ItemKind.TEXT_TO_VIDEO, prompt="a cat", **kwargs)


class TestTransitions:
    def test_success_path(self) -> None:
        item = _item()
        for target in (
            ItemStatus.SUBMITTING,
            ItemStatus.AWAITING_COMPLETION,
            ItemStatus.DOWNLOADING,
            ItemStatus.COMPLETED,
        ):
            apply_transition(item, target)
        assert item.status is ItemStatus.COMPLETED
        assert item.progress == 100
        assert item.ended_at is not None

    @pytest.mark.parametrize(
        "terminal", [ItemStatus.COMPLETED, ItemStatus.FAILED, ItemStatus.SKIPPED]
    )
    def test_terminal_states_are_final(self, terminal: ItemStatus) -> None:
        for target in ItemStatus:
            assert not can_transition(terminal, target)

    def test_illegal_edge_raises(self) -> None:
        item = _item()
        with pytest.raises(InvalidTransitionError) as exc_info:
            apply_transition(item, ItemStatus.DOWNLOADING)
        assert exc_info.value.current is ItemStatus.PENDING
        assert item.status is ItemStatus.PENDING

    def test_skip_from_any_non_terminal_state(self) -> None:
        for status in (
            ItemStatus.PENDING,
            ItemStatus.SUBMITTING,
            ItemStatus.AWAITING_COMPLETION,
            ItemStatus.DOWNLOADING,
        ):
            assert can_transition(status, ItemStatus.SKIPPED)
            assert can_transition(status, ItemStatus.FAILED)

    def test_returns_previous_status(self) -> None:
        item = _item()
        assert apply_transition(item, ItemStatus.SUBMITTING) is ItemStatus.PENDING


class TestEntryEffects:
    def test_submitting_sets_start_times_once(self) -> None:
        item = _item()
        first = datetime(2024, 1, 1, 12, 0, 0)
        apply_transition(item, ItemStatus.SUBMITTING, now=first)
        assert item.started_at == first
        assert item.first_started_at == first
        assert item.progress == SUBMITTING_PROGRESS

        apply_transition(item, ItemStatus.AWAITING_COMPLETION)
        apply_transition(item, ItemStatus.PENDING)
        second = datetime(2024, 1, 1, 12, 5, 0)
        apply_transition(item, ItemStatus.SUBMITTING, now=second)
        assert item.started_at == second
        assert item.first_started_at == first

    def test_restart_clears_attempt_state(self) -> None:
        item = _item()
        apply_transition(item, ItemStatus.SUBMITTING)
        apply_transition(
            item,
            ItemStatus.AWAITING_COMPLETION,
            remote_handle=RemoteHandle(operation="op-1"),
        )
        advance_progress(item, 60)

        apply_transition(item, ItemStatus.PENDING)
        assert item.remote_handle is None
        assert item.progress == 0
        assert item.started_at is None

    def test_download_retry_keeps_progress(self) -> None:
        item = _item()
        apply_transition(item, ItemStatus.SUBMITTING)
        apply_transition(item, ItemStatus.AWAITING_COMPLETION)
        apply_transition(item, ItemStatus.DOWNLOADING, artifact_url="https://x/v.mp4")
        assert item.progress == DOWNLOADING_PROGRESS

        apply_transition(item, ItemStatus.AWAITING_COMPLETION)
        assert item.progress == DOWNLOADING_PROGRESS
        assert item.artifact_url == "https://x/v.mp4"

    def test_failed_records_error_and_end(self) -> None:
        item = _item()
        apply_transition(item, ItemStatus.SUBMITTING)
        apply_transition(item, ItemStatus.FAILED, error="boom")
        assert item.error == "boom"
        assert item.ended_at is not None


class TestProgress:
    def test_polling_progress_is_capped(self) -> None:
        assert polling_progress(0) == SUBMITTED_PROGRESS
        assert polling_progress(1) == SUBMITTED_PROGRESS + 2
        assert polling_progress(1000) == POLLING_PROGRESS_CAP

    def test_progress_never_decreases(self) -> None:
        item = _item()
        advance_progress(item, 40)
        advance_progress(item, 30)
        assert item.progress == 40
        apply_changes(item, {"progress": 10})
        assert item.progress == 40

    def test_identity_fields_are_immutable(self) -> None:
        item = _item()
        with pytest.raises(AttributeError):
            apply_changes(item, {"id": "other"})
        with pytest.raises(AttributeError):
            apply_changes(item, {"status": ItemStatus.COMPLETED})
