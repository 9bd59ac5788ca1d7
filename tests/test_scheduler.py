from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from clipbatch.models.work_item import ItemKind, ItemStatus, WorkItem
from clipbatch.services.cancellation import CancellationToken, CancelReason
from clipbatch.services.item_store import ItemStore
from clipbatch.services.pipeline import ItemPipeline
from clipbatch.services.retry_policy import RetryPolicy
from clipbatch.services.scheduler import ConcurrencyScheduler, validate_concurrency
from clipbatch.services.simulated_client import SimulatedGenerationClient


def _scheduler(
    n_items: int,
    concurrency: int,
    sim: SimulatedGenerationClient,
    policy: RetryPolicy,
    output: Path,
) -> tuple[ConcurrencyScheduler, ItemStore, CancellationToken]:
    store = ItemStore(
        WorkItem(id=f"txt-1-{i}", kind=ItemKind.TEXT_TO_VIDEO, prompt=f"prompt {i}")
        for i in range(n_items)
    )
    token = CancellationToken()
    pipeline = ItemPipeline(store, sim, policy, output)
    return ConcurrencyScheduler(store, pipeline, token, concurrency), store, token


class TestValidateConcurrency:
    @pytest.mark.parametrize("value", [1, 2, 10])
    def test_accepts_range(self, value: int) -> None:
        assert validate_concurrency(value) == value

    @pytest.mark.parametrize("value", [0, -1, 11])
    def test_rejects_out_of_range(self, value: int) -> None:
        with pytest.raises(ValueError):
            validate_concurrency(value)


@pytest.mark.asyncio
class TestConcurrencyScheduler:
    async def test_fill_slots_promotes_in_order(
        self, sim: SimulatedGenerationClient, policy: RetryPolicy, tmp_path: Path
    ) -> None:
        sim.submit_gate = asyncio.Event()
        scheduler, store, _ = _scheduler(5, 2, sim, policy, tmp_path)

        promoted = scheduler.fill_slots()

        assert [i.id for i in promoted] == ["txt-1-0", "txt-1-1"]
        assert [i.id for i in store.active()] == ["txt-1-0", "txt-1-1"]
        assert len(store.pending()) == 3
        assert scheduler.active_slots == 2

        sim.submit_gate.set()
        await asyncio.wait_for(scheduler.wait_idle(), timeout=5)
        assert all(i.status is ItemStatus.COMPLETED for i in store)
        submits = [target for method, target in sim.calls if method == "submit"]
        assert submits == [f"txt-1-{i}" for i in range(5)]

    async def test_in_flight_never_exceeds_concurrency(
        self, policy: RetryPolicy, tmp_path: Path
    ) -> None:
        sim = SimulatedGenerationClient(latency=0.005, polls_until_ready=2)
        scheduler, store, _ = _scheduler(8, 3, sim, policy, tmp_path)

        scheduler.fill_slots()
        await asyncio.wait_for(scheduler.wait_idle(), timeout=5)

        assert sim.max_in_flight <= 3
        assert store.stats().completed == 8

    async def test_paused_scheduler_starts_nothing(
        self, sim: SimulatedGenerationClient, policy: RetryPolicy, tmp_path: Path
    ) -> None:
        scheduler, store, _ = _scheduler(3, 2, sim, policy, tmp_path)
        scheduler.pause()

        assert scheduler.fill_slots() == []
        assert len(store.pending()) == 3
        assert not scheduler.is_idle()

        scheduler.resume()
        await asyncio.wait_for(scheduler.wait_idle(), timeout=5)
        assert store.stats().completed == 3

    async def test_cancelled_run_settles_in_flight_items(
        self, sim: SimulatedGenerationClient, policy: RetryPolicy, tmp_path: Path
    ) -> None:
        sim.submit_gate = asyncio.Event()
        scheduler, store, token = _scheduler(3, 2, sim, policy, tmp_path)
        scheduler.fill_slots()

        token.cancel(CancelReason.USER_STOP)
        sim.submit_gate.set()
        await asyncio.wait_for(scheduler.wait_idle(), timeout=5)

        statuses = [i.status for i in store]
        assert statuses == [ItemStatus.SKIPPED, ItemStatus.SKIPPED, ItemStatus.PENDING]
        assert store.get("txt-1-0").error == "Stopped by user"
        assert sim.count("poll") == 0

    async def test_crashing_pipeline_fails_item_and_frees_slot(
        self, sim: SimulatedGenerationClient, policy: RetryPolicy, tmp_path: Path
    ) -> None:
        scheduler, store, _ = _scheduler(2, 1, sim, policy, tmp_path)
        original = sim.submit

        async def flaky_submit(item: WorkItem):
            if item.id == "txt-1-0":
                raise RuntimeError("unexpected payload")
            return await original(item)

        sim.submit = flaky_submit  # type: ignore[method-assign]
        scheduler.fill_slots()
        await asyncio.wait_for(scheduler.wait_idle(), timeout=5)

        first = store.get("txt-1-0")
        assert first.status is ItemStatus.FAILED
        assert first.error == "Internal error: unexpected payload"
        assert store.get("txt-1-1").status is ItemStatus.COMPLETED
