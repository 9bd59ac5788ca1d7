from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class RunPhase(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    STOPPING = "stopping"
    STOPPED = "stopped"
    FINISHED = "finished"

    @property
    def is_active(self) -> bool:
        return self in (RunPhase.RUNNING, RunPhase.PAUSED, RunPhase.STOPPING)


class HaltReason(str, Enum):
    USER_STOP = "user_stop"
    UNAUTHORIZED = "unauthorized"


class RunStats(BaseModel):
    """Aggregate counts; always recomputed from the item map, never patched."""

    total: int = 0
    queued: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    skipped: int = 0

    @property
    def done(self) -> int:
        return self.completed + self.failed + self.skipped


class RunState(BaseModel):
    """The single authoritative description of the current (or last) run."""

    run_id: Optional[str] = None
    phase: RunPhase = RunPhase.IDLE
    concurrency: int = 2
    stop_requested: bool = False
    halt_reason: Optional[HaltReason] = None
    error: Optional[str] = None
    stats: RunStats = Field(default_factory=RunStats)
    remaining_credits: Optional[int] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
