from __future__ import annotations

import asyncio
import logging
from collections import defaultdict, deque
from pathlib import Path
from typing import Union

from clipbatch.models.remote import (
    DownloadResult,
    PollResult,
    PollState,
    RemoteError,
    RemoteHandle,
    SubmitResult,
    UploadResult,
)
from clipbatch.models.work_item import WorkItem

logger = logging.getLogger(__name__)

SubmitScript = Union[SubmitResult, RemoteError]
PollScript = Union[PollResult, PollState, RemoteError]
DownloadScript = Union[DownloadResult, RemoteError, bool]
UploadScript = Union[UploadResult, RemoteError]


class SimulatedGenerationClient:
    """In-process stand-in for the remote service.

    Without scripts every item succeeds: submit returns a handle, the
    operation reports ready after ``polls_until_ready`` pending polls and
    the download writes ``artifact_bytes`` to the destination. Scripted
    results, queued per item id, are consumed first. Used by
    ``clipbatch run --dry-run``.
    """

    def __init__(
        self,
        latency: float = 0.0,
        polls_until_ready: int = 0,
        artifact_bytes: bytes = b"\x00\x00\x00\x18ftypmp42",
        remaining_credits: int | None = None,
    ):
        self.latency = latency
        self.polls_until_ready = polls_until_ready
        self.artifact_bytes = artifact_bytes
        self.remaining_credits = remaining_credits

        self.calls: list[tuple[str, str]] = []
        self.in_flight = 0
        self.max_in_flight = 0
        # When set (and unset), submissions block until it is set.
        self.submit_gate: asyncio.Event | None = None

        self._submit: dict[str, deque[SubmitScript]] = defaultdict(deque)
        self._poll: dict[str, deque[PollScript]] = defaultdict(deque)
        self._download: dict[str, deque[DownloadScript]] = defaultdict(deque)
        self._upload: dict[str, deque[UploadScript]] = defaultdict(deque)
        self._operations: dict[str, str] = {}
        self._pending_polls: dict[str, int] = defaultdict(int)
        self._counter = 0

    # ------------------------------------------------------------------
    # Scripting
    # ------------------------------------------------------------------

    def script_submit(self, item_id: str, *results: SubmitScript) -> None:
        self._submit[item_id].extend(results)

    def script_poll(self, item_id: str, *results: PollScript) -> None:
        self._poll[item_id].extend(results)

    def script_download(self, item_id: str, *results: DownloadScript) -> None:
        self._download[item_id].extend(results)

    def script_upload(self, source_image: str, *results: UploadScript) -> None:
        self._upload[source_image].extend(results)

    def count(self, method: str, item_id: str | None = None) -> int:
        return sum(
            1 for m, target in self.calls
            if m == method and (item_id is None or target == item_id)
        )

    # ------------------------------------------------------------------
    # GenerationClient
    # ------------------------------------------------------------------

    async def submit(self, item: WorkItem) -> SubmitResult:
        async with self._call("submit", item.id):
            if self.submit_gate is not None:
                await self.submit_gate.wait()
            scripted = self._next(self._submit, item.id)
            if isinstance(scripted, RemoteError):
                return SubmitResult(error=scripted)
            if scripted is not None:
                return scripted
            self._counter += 1
            operation = f"sim-{item.id}-{self._counter}"
            self._operations[operation] = item.id
            return SubmitResult(
                handle=RemoteHandle(operation=operation, scene_id=f"scene-{self._counter}"),
                remaining_credits=self.remaining_credits,
            )

    async def poll_status(self, handle: RemoteHandle) -> PollResult:
        item_id = self._operations.get(handle.operation, handle.operation)
        async with self._call("poll", item_id):
            scripted = self._next(self._poll, item_id)
            if isinstance(scripted, RemoteError):
                return PollResult(error=scripted)
            if isinstance(scripted, PollState):
                return self._poll_result(item_id, scripted)
            if scripted is not None:
                return scripted

            if self._pending_polls[handle.operation] < self.polls_until_ready:
                self._pending_polls[handle.operation] += 1
                return PollResult(state=PollState.PENDING)
            return self._poll_result(item_id, PollState.COMPLETED)

    async def download(self, artifact_url: str, dest_path: Path) -> DownloadResult:
        item_id = artifact_url.rsplit("/", 1)[-1].removesuffix(".mp4")
        async with self._call("download", item_id):
            scripted = self._next(self._download, item_id)
            if isinstance(scripted, RemoteError):
                return DownloadResult(error=scripted)
            if isinstance(scripted, DownloadResult):
                return scripted
            if scripted is False:
                return DownloadResult(error=RemoteError(message="Simulated download failure"))

            dest_path = Path(dest_path)
            dest_path.parent.mkdir(parents=True, exist_ok=True)
            dest_path.write_bytes(self.artifact_bytes)
            return DownloadResult(ok=True, local_path=str(dest_path))

    async def upload_asset(self, source_image: str) -> UploadResult:
        async with self._call("upload", source_image):
            scripted = self._next(self._upload, source_image)
            if isinstance(scripted, RemoteError):
                return UploadResult(error=scripted)
            if scripted is not None:
                return scripted
            return UploadResult(asset_ref=f"asset-{Path(source_image).stem}")

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    @staticmethod
    def _next(scripts: dict[str, deque], key: str):  # type: ignore[type-arg]
        queue = scripts.get(key)
        return queue.popleft() if queue else None

    @staticmethod
    def _poll_result(item_id: str, state: PollState) -> PollResult:
        if state is PollState.COMPLETED:
            return PollResult(state=state, artifact_url=f"https://sim.invalid/{item_id}.mp4")
        return PollResult(state=state)

    def _call(self, method: str, target: str) -> _CallTracker:
        self.calls.append((method, target))
        logger.debug("simulated %s(%s)", method, target)
        return _CallTracker(self)


class _CallTracker:
    def __init__(self, client: SimulatedGenerationClient):
        self._client = client

    async def __aenter__(self) -> None:
        self._client.in_flight += 1
        self._client.max_in_flight = max(self._client.max_in_flight, self._client.in_flight)
        await asyncio.sleep(self._client.latency)

    async def __aexit__(self, *exc_info: object) -> None:
        self._client.in_flight -= 1
