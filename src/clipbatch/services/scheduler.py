from __future__ import annotations

import asyncio
import logging

from clipbatch.models.work_item import ItemStatus, WorkItem
from clipbatch.services.cancellation import CancellationToken, CancelReason
from clipbatch.services.item_store import ItemStore
from clipbatch.services.pipeline import ItemPipeline

logger = logging.getLogger(__name__)

MIN_CONCURRENCY = 1
MAX_CONCURRENCY = 10
DEFAULT_CONCURRENCY = 2

_SETTLE_MESSAGES = {
    CancelReason.USER_STOP: "Stopped by user",
    CancelReason.USER_SKIP: "Skipped by user",
    CancelReason.UNAUTHORIZED: "Run halted: invalid or expired API token",
}


def validate_concurrency(value: int) -> int:
    if not MIN_CONCURRENCY <= value <= MAX_CONCURRENCY:
        raise ValueError(
            f"Concurrency must be between {MIN_CONCURRENCY} and {MAX_CONCURRENCY}, got {value}"
        )
    return value


class ConcurrencyScheduler:
    """Keeps up to ``concurrency`` item pipelines running at once.

    A slot is a running task. Slots are taken in :meth:`fill_slots`, which
    promotes the next pending item to ``submitting`` in the same synchronous
    step, and released exactly once in the task's ``finally`` block.
    """

    def __init__(
        self,
        store: ItemStore,
        pipeline: ItemPipeline,
        run_token: CancellationToken,
        concurrency: int = DEFAULT_CONCURRENCY,
    ):
        self.store = store
        self.pipeline = pipeline
        self.concurrency = validate_concurrency(concurrency)
        self._run_token = run_token
        self._tasks: dict[str, asyncio.Task[None]] = {}
        self._tokens: dict[str, CancellationToken] = {}
        self._paused = False
        self._closing = False
        self._idle = asyncio.Event()

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def active_slots(self) -> int:
        return len(self._tasks)

    @property
    def paused(self) -> bool:
        return self._paused

    @property
    def running_ids(self) -> list[str]:
        return list(self._tasks)

    def is_idle(self) -> bool:
        return self._idle.is_set()

    # ------------------------------------------------------------------
    # Slot management
    # ------------------------------------------------------------------

    def fill_slots(self) -> list[WorkItem]:
        """Start pending items, in queue order, until every slot is taken."""
        promoted: list[WorkItem] = []
        if self._run_token.cancelled or self._paused or self._closing:
            self._check_idle()
            return promoted

        while len(self._tasks) < self.concurrency:
            item = self.store.next_pending(exclude=self._tasks)
            if item is None:
                break
            self.store.transition(item.id, ItemStatus.SUBMITTING)
            token = self._run_token.child()
            self._tokens[item.id] = token
            self._tasks[item.id] = asyncio.get_running_loop().create_task(
                self._drive(item.id, token), name=f"clipbatch-item-{item.id}"
            )
            promoted.append(item)

        if promoted:
            logger.debug(
                "Promoted %s (%d/%d slots busy)",
                [i.id for i in promoted],
                len(self._tasks),
                self.concurrency,
            )
        self._check_idle()
        return promoted

    def pause(self) -> None:
        self._paused = True
        self._check_idle()

    def resume(self) -> list[WorkItem]:
        self._paused = False
        return self.fill_slots()

    def cancel_item(self, item_id: str, reason: CancelReason = CancelReason.USER_SKIP) -> None:
        """Wake the item's pending wait, if it has a running pipeline."""
        token = self._tokens.get(item_id)
        if token is not None:
            token.cancel(reason)
        self._check_idle()

    async def wait_idle(self) -> None:
        await self._idle.wait()

    async def shutdown(self) -> None:
        """Cancel every running pipeline task (process exit only)."""
        self._closing = True
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._idle.set()

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    async def _drive(self, item_id: str, token: CancellationToken) -> None:
        try:
            await self.pipeline.run(item_id, token)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception("Pipeline for %s crashed", item_id)
            item = self.store.get(item_id)
            if not item.status.is_terminal:
                self.store.transition(item_id, ItemStatus.FAILED, error=f"Internal error: {exc}")
        finally:
            self._tasks.pop(item_id, None)
            self._tokens.pop(item_id, None)
            token.detach()
            if not self._closing:
                self._settle(item_id, token)
                self.fill_slots()

    def _settle(self, item_id: str, token: CancellationToken) -> None:
        """Give an abandoned, still non-terminal item its final status."""
        item = self.store.get(item_id)
        if item.status.is_terminal:
            return
        if token.reason is None:
            logger.error("Pipeline for %s exited in state %s", item_id, item.status.value)
            self.store.transition(
                item_id, ItemStatus.FAILED, error="Pipeline exited before a terminal state"
            )
            return
        self.store.transition(item_id, ItemStatus.SKIPPED, error=_SETTLE_MESSAGES[token.reason])

    def _check_idle(self) -> None:
        if self._tasks:
            self._idle.clear()
            return
        if self._run_token.cancelled or self.store.next_pending() is None:
            self._idle.set()
        else:
            self._idle.clear()
