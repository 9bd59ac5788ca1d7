from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable

from clipbatch.db.database import Database
from clipbatch.models.remote import RemoteError
from clipbatch.models.run_state import HaltReason, RunPhase, RunState
from clipbatch.models.work_item import ItemStatus, WorkItem
from clipbatch.services.cancellation import CancellationToken, CancelReason
from clipbatch.services.event_bus import EventBus
from clipbatch.services.item_store import ItemStore, UnknownItemError
from clipbatch.services.pipeline import ItemPipeline
from clipbatch.services.prompt_enricher import PromptEnricher
from clipbatch.services.remote_client import GenerationClient
from clipbatch.services.retry_policy import UNAUTHORIZED_ERROR, RetryPolicy
from clipbatch.services.scheduler import (
    DEFAULT_CONCURRENCY,
    ConcurrencyScheduler,
    validate_concurrency,
)

logger = logging.getLogger(__name__)

__all__ = [
    "RunAlreadyActiveError",
    "RunController",
    "RunNotActiveError",
    "UnknownItemError",
]


class RunAlreadyActiveError(RuntimeError):
    pass


class RunNotActiveError(RuntimeError):
    pass


class RunController:
    """Owns the current run: its items, its state and its scheduler.

    The UI-facing operations are ``start``, ``stop``, ``pause``, ``resume``,
    ``skip`` and ``skip_all``. Observers read copies through ``state`` and
    ``items()`` or subscribe to the event bus; nothing here reaches into them.
    """

    def __init__(
        self,
        client: GenerationClient,
        output_dir: str | Path,
        policy: RetryPolicy | None = None,
        event_bus: EventBus | None = None,
        enricher: PromptEnricher | None = None,
        db: Database | None = None,
        default_concurrency: int = DEFAULT_CONCURRENCY,
    ):
        self.client = client
        self.output_dir = Path(output_dir)
        self.policy = policy or RetryPolicy()
        self.events = event_bus or EventBus()
        self.enricher = enricher
        self.db = db
        self.default_concurrency = validate_concurrency(default_concurrency)

        self._state = RunState(concurrency=self.default_concurrency)
        self._store = ItemStore()
        self._run_token: CancellationToken | None = None
        self._scheduler: ConcurrencyScheduler | None = None
        self._watcher: asyncio.Task[None] | None = None

        if self.db is not None:
            self.events.subscribe("item_finished", self._record_finished_item)

    # ------------------------------------------------------------------
    # Read access
    # ------------------------------------------------------------------

    @property
    def state(self) -> RunState:
        return self._state.model_copy(deep=True)

    @property
    def is_active(self) -> bool:
        return self._state.phase.is_active

    def items(self, status: ItemStatus | None = None) -> list[WorkItem]:
        return [
            item.model_copy(deep=True)
            for item in self._store
            if status is None or item.status is status
        ]

    def get_item(self, item_id: str) -> WorkItem:
        return self._store.get(item_id).model_copy(deep=True)

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def start(
        self, items: Iterable[WorkItem], concurrency: int | None = None
    ) -> RunState:
        """Start a new run over ``items`` in the given order."""
        if self.is_active:
            raise RunAlreadyActiveError(f"Run {self._state.run_id} is still {self._state.phase.value}")

        concurrency = validate_concurrency(concurrency or self.default_concurrency)
        fresh = [item.model_copy(deep=True) for item in items]
        if not fresh:
            raise ValueError("No items to process")
        for item in fresh:
            if item.status is not ItemStatus.PENDING:
                raise ValueError(f"Item {item.id} is {item.status.value}, expected pending")

        store = ItemStore(fresh)
        store.subscribe(self._on_item_change)
        run_token = CancellationToken()
        pipeline = ItemPipeline(
            store,
            self.client,
            self.policy,
            self.output_dir,
            enricher=self.enricher,
            on_unauthorized=self._on_unauthorized,
            on_credits=self._on_credits,
        )

        self._store = store
        self._run_token = run_token
        self._scheduler = ConcurrencyScheduler(store, pipeline, run_token, concurrency)
        now = datetime.now()
        self._state = RunState(
            run_id=f"run-{now.strftime('%Y%m%d-%H%M%S')}-{uuid.uuid4().hex[:6]}",
            phase=RunPhase.RUNNING,
            concurrency=concurrency,
            stats=store.stats(),
            remaining_credits=self._state.remaining_credits,
            started_at=now,
        )
        logger.info(
            "Starting run %s: %d item(s), concurrency %d",
            self._state.run_id,
            len(store),
            concurrency,
        )

        if self.db is not None:
            await self.db.record_run_started(self._state)
        await self.events.publish("run_started", {"run": self._state.model_dump(mode="json")})

        self._scheduler.fill_slots()
        self._watcher = asyncio.create_task(self._watch(self._scheduler))
        return self.state

    async def stop(self) -> RunState:
        """Request a stop: in-flight calls finish, nothing new is started."""
        if not self.is_active or self._state.stop_requested:
            return self.state
        self._halt(HaltReason.USER_STOP, CancelReason.USER_STOP)
        logger.info("Stop requested for run %s", self._state.run_id)
        await self.events.publish("run_stopping", {"run_id": self._state.run_id})
        return self.state

    async def pause(self) -> RunState:
        scheduler = self._require_active()
        if self._state.phase is RunPhase.RUNNING:
            scheduler.pause()
            self._state.phase = RunPhase.PAUSED
            logger.info("Run %s paused", self._state.run_id)
            await self.events.publish("run_paused", {"run_id": self._state.run_id})
        return self.state

    async def resume(self) -> RunState:
        scheduler = self._require_active()
        if self._state.phase is RunPhase.PAUSED:
            self._state.phase = RunPhase.RUNNING
            logger.info("Run %s resumed", self._state.run_id)
            scheduler.resume()
            await self.events.publish("run_resumed", {"run_id": self._state.run_id})
        return self.state

    async def skip(self, item_id: str) -> WorkItem:
        """Mark an item skipped now, whatever phase it is in."""
        item = self._store.get(item_id)
        if not item.status.is_terminal:
            self._store.transition(item_id, ItemStatus.SKIPPED, error="Skipped by user")
            logger.warning("Item skipped by user: %s", item.display_name)
            if self._scheduler is not None:
                self._scheduler.cancel_item(item_id)
        return item.model_copy(deep=True)

    async def skip_all(self) -> int:
        targets = [item.id for item in self._store if not item.status.is_terminal]
        for item_id in targets:
            await self.skip(item_id)
        if targets:
            logger.info("Skipped %d item(s)", len(targets))
        return len(targets)

    async def wait(self) -> RunState:
        """Wait for the current run to end and return its final state."""
        if self._watcher is not None:
            await asyncio.shield(self._watcher)
        await self.events.drain()
        return self.state

    async def shutdown(self) -> None:
        """Abandon the current run immediately (process exit)."""
        if self._scheduler is not None and self.is_active:
            self._halt(HaltReason.USER_STOP, CancelReason.USER_STOP)
            await self._scheduler.shutdown()
        if self._watcher is not None:
            await asyncio.gather(self._watcher, return_exceptions=True)
        await self.events.drain()

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _require_active(self) -> ConcurrencyScheduler:
        if self._scheduler is None or not self.is_active or self._state.stop_requested:
            raise RunNotActiveError("No active run")
        return self._scheduler

    def _halt(self, reason: HaltReason, cancel_reason: CancelReason) -> None:
        self._state.stop_requested = True
        self._state.halt_reason = reason
        self._state.phase = RunPhase.STOPPING
        if self._run_token is not None:
            self._run_token.cancel(cancel_reason)
        if self._scheduler is not None:
            self._scheduler.fill_slots()

    async def _watch(self, scheduler: ConcurrencyScheduler) -> None:
        await scheduler.wait_idle()
        state = self._state
        state.stats = self._store.stats()
        state.finished_at = datetime.now()
        state.phase = RunPhase.STOPPED if state.stop_requested else RunPhase.FINISHED
        logger.info(
            "Run %s %s: %d completed, %d failed, %d skipped, %d not started",
            state.run_id,
            state.phase.value,
            state.stats.completed,
            state.stats.failed,
            state.stats.skipped,
            state.stats.queued,
        )
        # Item events scheduled by the last transitions go out first.
        await self.events.drain()
        if self.db is not None:
            await self.db.record_run_finished(state)
        await self.events.publish("run_finished", {"run": state.model_dump(mode="json")})

    def _on_item_change(self, item: WorkItem, previous: ItemStatus | None) -> None:
        self._state.stats = self._store.stats()
        payload: dict[str, Any] = {
            "run_id": self._state.run_id,
            "item": item.model_dump(mode="json"),
            "previous_status": previous.value if previous else None,
            "stats": self._state.stats.model_dump(),
        }
        self.events.publish_nowait("item_updated", payload)
        if previous is not None and item.status.is_terminal and not previous.is_terminal:
            self.events.publish_nowait("item_finished", payload)

    def _on_unauthorized(self, item: WorkItem, error: RemoteError) -> None:
        if self._state.halt_reason is HaltReason.UNAUTHORIZED:
            return
        self._state.error = UNAUTHORIZED_ERROR
        logger.error(
            "Run %s halted: credentials rejected while processing %s (%s)",
            self._state.run_id,
            item.id,
            error.message,
        )
        self._halt(HaltReason.UNAUTHORIZED, CancelReason.UNAUTHORIZED)
        self.events.publish_nowait(
            "run_unauthorized",
            {"run_id": self._state.run_id, "item_id": item.id, "error": error.message},
        )

    def _on_credits(self, remaining: int) -> None:
        self._state.remaining_credits = remaining

    async def _record_finished_item(self, event: dict[str, Any]) -> None:
        assert self.db is not None
        item = WorkItem.model_validate(event["item"])
        await self.db.record_item(event["run_id"], item)
