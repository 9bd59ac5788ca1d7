from __future__ import annotations

from datetime import datetime, timedelta

import pytest

from clipbatch.db.database import Database
from clipbatch.models.run_state import HaltReason, RunPhase, RunState, RunStats
from clipbatch.models.work_item import ItemKind, ItemStatus, WorkItem


def _state(run_id: str = "run-1", started_at: datetime | None = None) -> RunState:
    return RunState(
        run_id=run_id,
        phase=RunPhase.RUNNING,
        concurrency=2,
        stats=RunStats(total=3, queued=3),
        started_at=started_at or datetime.now(),
    )


def _finished_item(item_id: str, status: ItemStatus, **kwargs) -> WorkItem:
    started = datetime(2024, 1, 1, 12, 0, 0)
    return WorkItem(
        id=item_id,
        kind=ItemKind.TEXT_TO_VIDEO,
        prompt=f"prompt {item_id}",
        status=status,
        started_at=started,
        ended_at=started + timedelta(seconds=42),
        **kwargs,
    )


@pytest.mark.asyncio
class TestDatabase:
    async def test_record_run_lifecycle(self, db: Database) -> None:
        state = _state()
        await db.record_run_started(state)

        run = await db.get_run("run-1")
        assert run is not None
        assert run["phase"] == "running"
        assert run["total"] == 3
        assert run["not_started"] == 3

        state.phase = RunPhase.STOPPED
        state.halt_reason = HaltReason.UNAUTHORIZED
        state.error = "Invalid or expired API token"
        state.stats = RunStats(total=3, queued=2, failed=1)
        state.finished_at = datetime.now()
        await db.record_run_finished(state)

        run = await db.get_run("run-1")
        assert run is not None
        assert run["phase"] == "stopped"
        assert run["halt_reason"] == "unauthorized"
        assert run["failed"] == 1
        assert run["not_started"] == 2
        assert run["finished_at"] is not None

    async def test_unknown_run(self, db: Database) -> None:
        assert await db.get_run("nope") is None

    async def test_recent_runs_newest_first(self, db: Database) -> None:
        now = datetime.now()
        await db.record_run_started(_state("run-old", now - timedelta(hours=1)))
        await db.record_run_started(_state("run-new", now))

        runs = await db.get_recent_runs(limit=10)
        assert [r["run_id"] for r in runs] == ["run-new", "run-old"]

    async def test_record_items(self, db: Database) -> None:
        await db.record_run_started(_state())
        await db.record_item(
            "run-1",
            _finished_item("txt-1-0", ItemStatus.COMPLETED, local_path="/out/a.mp4"),
        )
        await db.record_item(
            "run-1", _finished_item("txt-1-1", ItemStatus.FAILED, error="boom", retry_count=2)
        )

        items = await db.get_run_items("run-1")
        assert [i["item_id"] for i in items] == ["txt-1-0", "txt-1-1"]
        assert items[0]["local_path"] == "/out/a.mp4"
        assert items[0]["duration_seconds"] == 42
        assert items[1]["retry_count"] == 2

        failed = await db.get_run_items("run-1", status="failed")
        assert len(failed) == 1
        assert failed[0]["error"] == "boom"

    async def test_record_item_idempotent(self, db: Database) -> None:
        await db.record_run_started(_state())
        item = _finished_item("txt-1-0", ItemStatus.SKIPPED, error="Skipped by user")
        await db.record_item("run-1", item)
        await db.record_item("run-1", item)  # should not raise

        assert len(await db.get_run_items("run-1")) == 1
