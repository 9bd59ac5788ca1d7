from clipbatch.models.remote import (
    DownloadResult,
    PollResult,
    PollState,
    RemoteError,
    RemoteHandle,
    SubmitResult,
    UploadResult,
)
from clipbatch.models.run_state import HaltReason, RunPhase, RunState, RunStats
from clipbatch.models.work_item import ItemKind, ItemStatus, WorkItem

__all__ = [
    "DownloadResult",
    "HaltReason",
    "ItemKind",
    "ItemStatus",
    "PollResult",
    "PollState",
    "RemoteError",
    "RemoteHandle",
    "RunPhase",
    "RunState",
    "RunStats",
    "SubmitResult",
    "UploadResult",
    "WorkItem",
]
