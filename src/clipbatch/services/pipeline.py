from __future__ import annotations

import logging
from enum import Enum
from pathlib import Path
from typing import Callable

from clipbatch.models.remote import PollState, RemoteError
from clipbatch.models.work_item import ItemKind, ItemStatus, WorkItem
from clipbatch.services.cancellation import CancellationToken
from clipbatch.services.item_store import ItemStore
from clipbatch.services.prompt_enricher import FALLBACK_IMAGE_PROMPT, PromptEnricher
from clipbatch.services.remote_client import GenerationClient
from clipbatch.services.retry_policy import RetryAction, RetryPolicy, UNAUTHORIZED_ERROR
from clipbatch.services.state_machine import polling_progress
from clipbatch.utils.naming import generate_filename

logger = logging.getLogger(__name__)

UnauthorizedHook = Callable[[WorkItem, RemoteError], None]
CreditsHook = Callable[[int], None]


class Step(str, Enum):
    SUBMIT = "submit"
    POLL = "poll"
    DOWNLOAD = "download"
    DONE = "done"


class ItemPipeline:
    """Drives one item from submission to a terminal state.

    The pipeline is a loop over steps rather than a chain of recursive
    calls, so an item may retry indefinitely without growing the stack.
    Before each network call and after each wait it checks the item's
    cancellation token and its status; a skipped item or a stopped run ends
    the loop without further changes.
    """

    def __init__(
        self,
        store: ItemStore,
        client: GenerationClient,
        policy: RetryPolicy,
        output_dir: Path,
        enricher: PromptEnricher | None = None,
        on_unauthorized: UnauthorizedHook | None = None,
        on_credits: CreditsHook | None = None,
    ):
        self.store = store
        self.client = client
        self.policy = policy
        self.output_dir = Path(output_dir)
        self.enricher = enricher
        self._on_unauthorized = on_unauthorized
        self._on_credits = on_credits

    async def run(self, item_id: str, token: CancellationToken) -> None:
        item = self.store.get(item_id)
        step = Step.SUBMIT if item.remote_handle is None else Step.POLL
        poll_attempts = 0

        while step is not Step.DONE:
            if self._halted(item, token):
                return
            if step is Step.SUBMIT:
                poll_attempts = 0
                step = await self._submit(item, token)
            elif step is Step.POLL:
                step, poll_attempts = await self._poll(item, token, poll_attempts)
            else:
                step = await self._download(item, token)

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    async def _submit(self, item: WorkItem, token: CancellationToken) -> Step:
        if item.status is ItemStatus.PENDING:
            self.store.transition(item.id, ItemStatus.SUBMITTING)
        logger.info("Start %s: %s", item.kind.value, item.display_name)

        if item.kind is ItemKind.IMAGE_TO_VIDEO:
            if not item.prompt:
                await self._derive_prompt(item)
                if self._halted(item, token):
                    return Step.DONE

            if not item.uploaded_asset_ref:
                upload = await self.client.upload_asset(item.source_image or "")
                if self._halted(item, token):
                    return Step.DONE
                if upload.error or not upload.asset_ref:
                    error = upload.error or RemoteError(message="Image upload failed")
                    return await self._recover(item, error, token, Step.SUBMIT)
                self.store.update(item.id, uploaded_asset_ref=upload.asset_ref)

        result = await self.client.submit(item)
        if self._halted(item, token):
            return Step.DONE
        if not result.ok:
            error = result.error or RemoteError(message="Generation failed")
            return await self._recover(item, error, token, Step.SUBMIT)

        handle = result.handle
        assert handle is not None
        if result.remaining_credits is not None and self._on_credits:
            self._on_credits(result.remaining_credits)
        self.store.transition(item.id, ItemStatus.AWAITING_COMPLETION, remote_handle=handle)
        logger.info("Submitted %s (operation %s)", item.id, handle.operation)
        return Step.POLL

    async def _poll(
        self, item: WorkItem, token: CancellationToken, attempts: int
    ) -> tuple[Step, int]:
        assert item.remote_handle is not None
        result = await self.client.poll_status(item.remote_handle)
        if self._halted(item, token):
            return Step.DONE, attempts

        if result.error:
            return await self._recover(item, result.error, token, Step.POLL), attempts

        if result.state is PollState.COMPLETED and result.artifact_url:
            self.store.transition(
                item.id, ItemStatus.DOWNLOADING, artifact_url=result.artifact_url
            )
            return Step.DOWNLOAD, attempts

        if result.state is PollState.FAILED:
            return await self._restart(item, token), 0

        attempts += 1
        self.store.update(item.id, progress=polling_progress(attempts))
        logger.debug("Still generating %s (poll attempt %d)", item.id, attempts)
        if not await self.policy.wait_before_retry(item, self.policy.poll_interval, token):
            return Step.DONE, attempts
        return Step.POLL, attempts

    async def _download(self, item: WorkItem, token: CancellationToken) -> Step:
        assert item.artifact_url is not None
        dest = self.output_dir / generate_filename(item)
        result = await self.client.download(item.artifact_url, dest)
        if self._halted(item, token):
            return Step.DONE

        if result.ok:
            self.store.transition(
                item.id,
                ItemStatus.COMPLETED,
                local_path=result.local_path or str(dest),
                error=None,
            )
            duration = item.duration_seconds
            logger.info(
                "Completed %s: %s%s",
                item.kind.value,
                item.display_name,
                f" in {duration:.0f}s" if duration is not None else "",
            )
            return Step.DONE

        self.store.update(item.id, download_retry_count=item.download_retry_count + 1)
        decision = self.policy.on_download_failed(item, result.error)
        if decision.action is RetryAction.ABORT_ITEM:
            logger.error("Item %s failed: %s", item.id, decision.reason)
            self.store.transition(item.id, ItemStatus.FAILED, error=decision.reason)
            return Step.DONE

        logger.warning(
            "Download failed for %s (attempt %d): %s",
            item.id,
            item.download_retry_count,
            decision.reason,
        )
        self.store.transition(item.id, ItemStatus.AWAITING_COMPLETION)
        if not await self.policy.wait_before_retry(item, decision.delay, token):
            return Step.DONE
        return Step.POLL

    # ------------------------------------------------------------------
    # Recovery
    # ------------------------------------------------------------------

    async def _recover(
        self, item: WorkItem, error: RemoteError, token: CancellationToken, step: Step
    ) -> Step:
        decision = self.policy.decide(error, item)

        if decision.action is RetryAction.ABORT_RUN:
            logger.error("Authentication error on %s, halting run: %s", item.id, error.message)
            self.store.transition(item.id, ItemStatus.FAILED, error=UNAUTHORIZED_ERROR)
            if self._on_unauthorized:
                self._on_unauthorized(item, error)
            return Step.DONE

        if decision.action is RetryAction.ABORT_ITEM:
            logger.error("Item %s failed: %s", item.id, decision.reason)
            self.store.transition(item.id, ItemStatus.FAILED, error=decision.reason)
            return Step.DONE

        self.store.update(item.id, retry_count=item.retry_count + 1)
        logger.warning(
            "%s during %s for %s (attempt %d), retrying in %.0fs: %s",
            decision.kind.value,
            step.value,
            item.id,
            item.retry_count,
            decision.delay,
            error.message,
        )
        if not await self.policy.wait_before_retry(item, decision.delay, token):
            return Step.DONE
        return step

    async def _restart(self, item: WorkItem, token: CancellationToken) -> Step:
        decision = self.policy.on_generation_failed(item)
        if decision.action is RetryAction.ABORT_ITEM:
            logger.error("Item %s failed: %s", item.id, decision.reason)
            self.store.transition(item.id, ItemStatus.FAILED, error=decision.reason)
            return Step.DONE

        logger.warning(
            "Generation failed on server for %s, restarting in %.0fs",
            item.id,
            decision.delay,
        )
        self.store.transition(item.id, ItemStatus.PENDING)
        if not await self.policy.wait_before_retry(item, decision.delay, token):
            return Step.DONE
        return Step.SUBMIT

    async def _derive_prompt(self, item: WorkItem) -> None:
        prompt = None
        if self.enricher is not None and item.source_image:
            prompt = await self.enricher.describe_image(item.source_image)
        self.store.update(item.id, prompt=(prompt or "").strip() or FALLBACK_IMAGE_PROMPT)

    @staticmethod
    def _halted(item: WorkItem, token: CancellationToken) -> bool:
        return token.cancelled or item.status.is_terminal
