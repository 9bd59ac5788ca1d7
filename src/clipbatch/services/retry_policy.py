"""Classify remote failures and decide how an item recovers from them.

Decisions:

- rate limited (429)      -> retry the current step after ``rate_limit_delay``, forever
- unauthorized (401/403)  -> abort the whole run
- anything else           -> retry the current step after ``transient_delay``, forever
- server-side generation failure -> restart the item after ``restart_delay``
- download failure        -> retry below ``max_download_attempts``, then fail the item

``max_retry_seconds`` optionally caps how long an item may keep retrying,
measured from its first submission. It is unset by default.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING

from clipbatch.models.remote import RemoteError
from clipbatch.models.work_item import WorkItem
from clipbatch.services.cancellation import CancellationToken

if TYPE_CHECKING:
    from clipbatch.utils.config import Config

logger = logging.getLogger(__name__)

UNAUTHORIZED_ERROR = "Invalid or expired API token"

_STATUS_IN_MESSAGE = re.compile(r"status:\s*(\d{3})")
_RATE_LIMIT_MARKERS = ("429", "resource_exhausted", "rate limit")
_AUTH_MARKERS = ("401", "403", "authorization", "unauthorized")


class FailureKind(str, Enum):
    RATE_LIMITED = "rate_limited"
    UNAUTHORIZED = "unauthorized"
    TRANSIENT = "transient"
    GENERATION_FAILED = "generation_failed"
    DOWNLOAD_FAILED = "download_failed"
    USER_SKIP = "user_skip"
    USER_STOP = "user_stop"


class RetryAction(str, Enum):
    RETRY = "retry"
    ABORT_ITEM = "abort_item"
    ABORT_RUN = "abort_run"


@dataclass(frozen=True)
class RetryDecision:
    kind: FailureKind
    action: RetryAction
    delay: float = 0.0
    reason: str | None = None

    @property
    def should_retry(self) -> bool:
        return self.action is RetryAction.RETRY


def status_code_of(error: RemoteError) -> int | None:
    if error.status is not None:
        return error.status
    match = _STATUS_IN_MESSAGE.search(error.message or "")
    return int(match.group(1)) if match else None


class RetryPolicy:
    def __init__(
        self,
        rate_limit_delay: float = 10.0,
        transient_delay: float = 5.0,
        restart_delay: float = 5.0,
        poll_interval: float = 10.0,
        max_download_attempts: int = 5,
        max_retry_seconds: float | None = None,
    ):
        self.rate_limit_delay = rate_limit_delay
        self.transient_delay = transient_delay
        self.restart_delay = restart_delay
        self.poll_interval = poll_interval
        self.max_download_attempts = max_download_attempts
        self.max_retry_seconds = max_retry_seconds

    @classmethod
    def from_config(cls, config: Config) -> RetryPolicy:
        return cls(
            rate_limit_delay=config.rate_limit_delay,
            transient_delay=config.transient_delay,
            restart_delay=config.restart_delay,
            poll_interval=config.poll_interval,
            max_download_attempts=config.max_download_attempts,
            max_retry_seconds=config.max_retry_seconds,
        )

    # ------------------------------------------------------------------
    # Classification
    # ------------------------------------------------------------------

    def classify(self, error: RemoteError) -> FailureKind:
        status = status_code_of(error)
        message = (error.message or "").lower()

        if status == 429 or any(marker in message for marker in _RATE_LIMIT_MARKERS):
            return FailureKind.RATE_LIMITED
        if status in (401, 403) or any(marker in message for marker in _AUTH_MARKERS):
            return FailureKind.UNAUTHORIZED
        return FailureKind.TRANSIENT

    # ------------------------------------------------------------------
    # Decisions
    # ------------------------------------------------------------------

    def decide(self, error: RemoteError, item: WorkItem) -> RetryDecision:
        """Decision for a failed submit, upload or poll call."""
        kind = self.classify(error)
        if kind is FailureKind.UNAUTHORIZED:
            return RetryDecision(kind, RetryAction.ABORT_RUN, reason=UNAUTHORIZED_ERROR)
        delay = self.rate_limit_delay if kind is FailureKind.RATE_LIMITED else self.transient_delay
        return self._retry_or_expire(kind, delay, item, error.message)

    def on_generation_failed(self, item: WorkItem) -> RetryDecision:
        return self._retry_or_expire(
            FailureKind.GENERATION_FAILED,
            self.restart_delay,
            item,
            "Generation failed on server",
        )

    def on_download_failed(self, item: WorkItem, error: RemoteError | None) -> RetryDecision:
        """Decision after ``item.download_retry_count`` consecutive download failures."""
        message = error.message if error else "Download failed"
        if item.download_retry_count >= self.max_download_attempts:
            return RetryDecision(
                FailureKind.DOWNLOAD_FAILED,
                RetryAction.ABORT_ITEM,
                reason=(
                    f"Download failed after {item.download_retry_count} attempts: {message}"
                ),
            )
        return RetryDecision(
            FailureKind.DOWNLOAD_FAILED,
            RetryAction.RETRY,
            delay=self.poll_interval,
            reason=message,
        )

    def _retry_or_expire(
        self, kind: FailureKind, delay: float, item: WorkItem, message: str
    ) -> RetryDecision:
        if self.max_retry_seconds is not None and item.first_started_at is not None:
            elapsed = (datetime.now() - item.first_started_at).total_seconds()
            if elapsed >= self.max_retry_seconds:
                return RetryDecision(
                    kind,
                    RetryAction.ABORT_ITEM,
                    reason=f"Gave up after {int(elapsed)}s of retries: {message}",
                )
        return RetryDecision(kind, RetryAction.RETRY, delay=delay, reason=message)

    # ------------------------------------------------------------------
    # Waiting
    # ------------------------------------------------------------------

    async def wait_before_retry(
        self, item: WorkItem, delay: float, token: CancellationToken
    ) -> bool:
        """Wait ``delay`` seconds, then re-check the escape hatches.

        Returns False (and changes nothing) when the run was stopped or the
        item was skipped while waiting; the caller must then abandon the retry.
        """
        completed = await token.sleep(delay)
        if not completed or token.cancelled:
            reason = token.reason.value if token.reason else "cancelled"
            logger.info("Retry abandoned for %s: %s", item.id, reason)
            return False
        if item.status.is_terminal:
            logger.info("Retry abandoned for %s: item is %s", item.id, item.status.value)
            return False
        return True
