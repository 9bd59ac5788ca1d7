from __future__ import annotations

from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field

from clipbatch.models.remote import RemoteHandle


class ItemKind(str, Enum):
    TEXT_TO_VIDEO = "text_to_video"
    IMAGE_TO_VIDEO = "image_to_video"

    @property
    def tag(self) -> str:
        return "txt" if self is ItemKind.TEXT_TO_VIDEO else "img"


class ItemStatus(str, Enum):
    PENDING = "pending"
    SUBMITTING = "submitting"
    AWAITING_COMPLETION = "awaiting_completion"
    DOWNLOADING = "downloading"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self in (ItemStatus.COMPLETED, ItemStatus.FAILED, ItemStatus.SKIPPED)

    @property
    def is_active(self) -> bool:
        return self in (
            ItemStatus.SUBMITTING,
            ItemStatus.AWAITING_COMPLETION,
            ItemStatus.DOWNLOADING,
        )


class WorkItem(BaseModel):
    """One requested clip: a text prompt or a source image."""

    id: str
    kind: ItemKind
    prompt: Optional[str] = None
    source_image: Optional[str] = None
    status: ItemStatus = ItemStatus.PENDING
    progress: int = Field(default=0, ge=0, le=100)

    remote_handle: Optional[RemoteHandle] = None
    uploaded_asset_ref: Optional[str] = None

    retry_count: int = 0
    download_retry_count: int = 0

    local_path: Optional[str] = None
    artifact_url: Optional[str] = None
    error: Optional[str] = None

    first_started_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None

    @property
    def display_name(self) -> str:
        if self.prompt:
            return self.prompt
        if self.source_image:
            return Path(self.source_image).name
        return self.id

    @property
    def duration_seconds(self) -> float | None:
        if self.started_at is None or self.ended_at is None:
            return None
        return (self.ended_at - self.started_at).total_seconds()

    def export_row(self) -> dict:
        """Flat row for run-level reporting (one per terminal item)."""
        return {
            "item_id": self.id,
            "kind": self.kind.value,
            "status": self.status.value,
            "input": self.prompt if self.kind is ItemKind.TEXT_TO_VIDEO else self.source_image,
            "prompt": self.prompt,
            "local_path": self.local_path,
            "artifact_url": self.artifact_url,
            "error": self.error,
            "retry_count": self.retry_count,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "ended_at": self.ended_at.isoformat() if self.ended_at else None,
            "duration_seconds": self.duration_seconds,
        }
