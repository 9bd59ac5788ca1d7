from __future__ import annotations

import base64
import logging
import mimetypes
import random
import time
import uuid
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

import httpx

from clipbatch.models.remote import (
    DownloadResult,
    PollResult,
    PollState,
    RemoteError,
    RemoteHandle,
    SubmitResult,
    UploadResult,
)
from clipbatch.models.work_item import ItemKind, WorkItem

logger = logging.getLogger(__name__)


@runtime_checkable
class GenerationClient(Protocol):
    """What the orchestration engine needs from the remote service.

    Implementations never raise for remote or transport failures; they
    return a result whose ``error`` carries the HTTP status (when known)
    and a readable message.
    """

    async def submit(self, item: WorkItem) -> SubmitResult: ...

    async def poll_status(self, handle: RemoteHandle) -> PollResult: ...

    async def download(self, artifact_url: str, dest_path: Path) -> DownloadResult: ...

    async def upload_asset(self, source_image: str) -> UploadResult: ...


# ----------------------------------------------------------------------
# HTTP implementation
# ----------------------------------------------------------------------

ASPECT_RATIOS = ("LANDSCAPE 16:9", "PORTRAIT 9:16")
MODEL_VARIANTS = ("veo-3-fast", "veo-3-fast-low", "veo-3")

_MODEL_KEYS: dict[str, dict[str, str]] = {
    "LANDSCAPE 16:9": {
        "aspect_ratio": "VIDEO_ASPECT_RATIO_LANDSCAPE",
        "image_aspect_ratio": "IMAGE_ASPECT_RATIO_LANDSCAPE",
        "text_fast": "veo_3_1_t2v_fast_ultra",
        "text_fast_low": "veo_3_1_t2v_fast_ultra_relaxed",
        "text_quality": "veo_3_1_t2v",
        "image_fast": "veo_3_0_r2v_fast_ultra",
        "image_quality": "veo_3_0_r2v_fast_ultra",
    },
    "PORTRAIT 9:16": {
        "aspect_ratio": "VIDEO_ASPECT_RATIO_PORTRAIT",
        "image_aspect_ratio": "IMAGE_ASPECT_RATIO_PORTRAIT",
        "text_fast": "veo_3_0_t2v_fast_portrait_ultra",
        "text_fast_low": "veo_3_1_t2v_fast_portrait_ultra_relaxed",
        "text_quality": "veo_3_0_t2v_fast_portrait_ultra",
        "image_fast": "veo_3_0_r2v_fast_portrait_ultra",
        "image_quality": "veo_3_0_r2v_fast_portrait_ultra",
    },
}

STATUS_COMPLETED = "MEDIA_GENERATION_STATUS_COMPLETED"
STATUS_FAILED = "MEDIA_GENERATION_STATUS_FAILED"
STATUS_PENDING = "MEDIA_GENERATION_STATUS_PENDING"


def resolve_model(aspect_ratio: str, kind: ItemKind, variant: str) -> tuple[str, str]:
    """Return ``(aspect ratio enum, video model key)`` for a request."""
    try:
        keys = _MODEL_KEYS[aspect_ratio]
    except KeyError:
        raise ValueError(f"Unsupported aspect ratio: {aspect_ratio}") from None
    if variant not in MODEL_VARIANTS:
        raise ValueError(f"Unsupported model variant: {variant}")

    quality = variant == "veo-3"
    if kind is ItemKind.IMAGE_TO_VIDEO:
        model = keys["image_quality"] if quality else keys["image_fast"]
    elif variant == "veo-3-fast-low":
        model = keys["text_fast_low"]
    else:
        model = keys["text_quality"] if quality else keys["text_fast"]
    return keys["aspect_ratio"], model


def _bearer(token: str) -> str:
    return token if token.lower().startswith("bearer ") else f"Bearer {token}"


def _error_from_response(response: httpx.Response) -> RemoteError:
    details = ""
    try:
        body = response.text
    except httpx.HTTPError:
        body = ""
    if body:
        details = f" | body: {body[:500]}"
    return RemoteError(
        status=response.status_code,
        message=f"HTTP error! status: {response.status_code}{details}",
    )


def _error_from_exception(exc: Exception) -> RemoteError:
    return RemoteError(status=None, message=str(exc) or exc.__class__.__name__)


class HttpGenerationClient:
    """httpx client for the video generation API.

    Every request is bounded by ``timeout`` seconds.
    """

    def __init__(
        self,
        token: str,
        base_url: str = "https://aisandbox-pa.googleapis.com/v1",
        aspect_ratio: str = "LANDSCAPE 16:9",
        model_variant: str = "veo-3-fast",
        project_id: str | None = None,
        timeout: float = 15.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        resolve_model(aspect_ratio, ItemKind.TEXT_TO_VIDEO, model_variant)
        self.base_url = base_url.rstrip("/")
        self.aspect_ratio = aspect_ratio
        self.model_variant = model_variant
        self.project_id = project_id
        self._timeout = httpx.Timeout(timeout)
        self._transport = transport
        self._http = httpx.AsyncClient(
            timeout=self._timeout,
            follow_redirects=True,
            transport=transport,
            headers={
                "authorization": _bearer(token),
                "content-type": "text/plain;charset=UTF-8",
                "accept": "*/*",
            },
        )
        self.remaining_credits: int | None = None

    async def __aenter__(self) -> HttpGenerationClient:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    def update_token(self, token: str) -> None:
        self._http.headers["authorization"] = _bearer(token)

    # ------------------------------------------------------------------
    # GenerationClient
    # ------------------------------------------------------------------

    async def submit(self, item: WorkItem) -> SubmitResult:
        aspect, model_key = resolve_model(self.aspect_ratio, item.kind, self.model_variant)
        scene_id = str(uuid.uuid4())
        request: dict[str, Any] = {
            "aspectRatio": aspect,
            "seed": random.randint(1, 99_999),
            "textInput": {"prompt": (item.prompt or "").replace('"', "")},
            "videoModelKey": model_key,
            "metadata": {"sceneId": scene_id},
        }
        if item.kind is ItemKind.IMAGE_TO_VIDEO:
            if not item.uploaded_asset_ref:
                return SubmitResult(
                    error=RemoteError(message="Image item submitted without an uploaded asset")
                )
            request["referenceImages"] = [
                {"imageUsageType": "IMAGE_USAGE_TYPE_ASSET", "mediaId": item.uploaded_asset_ref}
            ]
            endpoint = "video:batchAsyncGenerateVideoReferenceImages"
        else:
            endpoint = "video:batchAsyncGenerateVideoText"

        body = {"clientContext": self._client_context("PINHOLE"), "requests": [request]}
        try:
            response = await self._http.post(f"{self.base_url}/{endpoint}", json=body)
        except httpx.HTTPError as exc:
            return SubmitResult(error=_error_from_exception(exc))
        if not response.is_success:
            return SubmitResult(error=_error_from_response(response))

        data = response.json()
        operations = data.get("operations") or [{}]
        operation_name = (operations[0].get("operation") or {}).get("name")
        if not operation_name:
            return SubmitResult(error=RemoteError(message="No operation name in generation response"))

        credits = data.get("remainingCredits")
        if isinstance(credits, int):
            self.remaining_credits = credits
        logger.debug("Submitted %s as operation %s", item.id, operation_name)
        return SubmitResult(
            handle=RemoteHandle(operation=operation_name, scene_id=scene_id),
            remaining_credits=credits if isinstance(credits, int) else None,
        )

    async def poll_status(self, handle: RemoteHandle) -> PollResult:
        body = {
            "operations": [
                {
                    "operation": {"name": handle.operation},
                    "sceneId": handle.scene_id,
                    "status": STATUS_PENDING,
                }
            ]
        }
        try:
            response = await self._http.post(
                f"{self.base_url}/video:batchCheckAsyncVideoGenerationStatus", json=body
            )
        except httpx.HTTPError as exc:
            return PollResult(error=_error_from_exception(exc))
        if not response.is_success:
            return PollResult(error=_error_from_response(response))

        operations = response.json().get("operations") or [{}]
        entry = operations[0]
        metadata = (entry.get("operation") or {}).get("metadata") or {}
        url = (metadata.get("video") or {}).get("fifeUrl")
        if url:
            return PollResult(state=PollState.COMPLETED, artifact_url=url)
        status = metadata.get("status") or entry.get("status")
        if status == STATUS_FAILED:
            return PollResult(state=PollState.FAILED)
        return PollResult(state=PollState.PENDING)

    async def download(self, artifact_url: str, dest_path: Path) -> DownloadResult:
        dest_path = Path(dest_path)
        partial = dest_path.with_name(dest_path.name + ".part")
        try:
            dest_path.parent.mkdir(parents=True, exist_ok=True)
            # Artifact URLs are pre-signed; the API bearer token must not leak to them.
            async with httpx.AsyncClient(
                timeout=self._timeout,
                follow_redirects=True,
                transport=self._transport,
            ) as plain:
                async with plain.stream("GET", artifact_url) as response:
                    if not response.is_success:
                        await response.aread()
                        return DownloadResult(error=_error_from_response(response))
                    with partial.open("wb") as fh:
                        async for chunk in response.aiter_bytes():
                            fh.write(chunk)
            partial.replace(dest_path)
        except (httpx.HTTPError, OSError) as exc:
            partial.unlink(missing_ok=True)
            return DownloadResult(error=_error_from_exception(exc))
        return DownloadResult(ok=True, local_path=str(dest_path))

    async def upload_asset(self, source_image: str) -> UploadResult:
        path = Path(source_image)
        try:
            raw = base64.b64encode(path.read_bytes()).decode("ascii")
        except OSError as exc:
            return UploadResult(error=_error_from_exception(exc))

        mime_type = mimetypes.guess_type(path.name)[0] or "image/jpeg"
        keys = _MODEL_KEYS[self.aspect_ratio]
        body = {
            "imageInput": {
                "rawImageBytes": raw,
                "mimeType": mime_type,
                "isUserUploaded": True,
                "aspectRatio": keys["image_aspect_ratio"],
            },
            "clientContext": self._client_context("ASSET_MANAGER"),
        }
        try:
            response = await self._http.post(f"{self.base_url}:uploadUserImage", json=body)
        except httpx.HTTPError as exc:
            return UploadResult(error=_error_from_exception(exc))
        if not response.is_success:
            return UploadResult(error=_error_from_response(response))

        media_id = (response.json().get("mediaGenerationId") or {}).get("mediaGenerationId")
        if not media_id:
            return UploadResult(error=RemoteError(message="No mediaGenerationId returned from upload"))
        return UploadResult(asset_ref=media_id)

    async def test_token(self) -> RemoteError | None:
        """Return None when the token is accepted, else the rejection."""
        handle = RemoteHandle(operation="clipbatch-token-test", scene_id="clipbatch-token-test")
        result = await self.poll_status(handle)
        if result.error and result.error.status in (401, 403):
            return RemoteError(
                status=result.error.status,
                message="Unauthorized: bearer token is invalid or expired",
            )
        if result.error and result.error.status is None:
            return result.error
        return None

    def _client_context(self, tool: str) -> dict[str, Any]:
        context: dict[str, Any] = {
            "sessionId": f"clipbatch-{int(time.time() * 1000)}",
            "tool": tool,
        }
        if self.project_id and tool == "PINHOLE":
            context["projectId"] = self.project_id
        return context
