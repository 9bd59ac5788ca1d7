"""Request/response values exchanged with the remote generation service.

Remote failures travel as ``RemoteError`` values rather than exceptions so the
retry policy can classify them from two fields only: ``status`` and ``message``.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional

from pydantic import BaseModel


class RemoteError(BaseModel):
    status: Optional[int] = None
    message: str

    def __str__(self) -> str:
        return self.message


class RemoteHandle(BaseModel):
    """Opaque reference to a generation operation on the remote service."""

    operation: str
    scene_id: Optional[str] = None


class SubmitResult(BaseModel):
    handle: Optional[RemoteHandle] = None
    remaining_credits: Optional[int] = None
    error: Optional[RemoteError] = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.handle is not None


class PollState(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class PollResult(BaseModel):
    state: PollState = PollState.PENDING
    artifact_url: Optional[str] = None
    error: Optional[RemoteError] = None


class DownloadResult(BaseModel):
    ok: bool = False
    local_path: Optional[str] = None
    error: Optional[RemoteError] = None


class UploadResult(BaseModel):
    asset_ref: Optional[str] = None
    error: Optional[RemoteError] = None
