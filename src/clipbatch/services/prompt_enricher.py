from __future__ import annotations

import base64
import logging
import mimetypes
from pathlib import Path
from typing import Any

from clipbatch.utils.config import Config

logger = logging.getLogger(__name__)

FALLBACK_IMAGE_PROMPT = "Best camera movement based on picture"

_IMAGE_INSTRUCTION = (
    "Generate a concise, high-quality English video generation prompt based on "
    "this image. Use 1-2 sentences, describing the scene, style, and camera "
    "movement. Respond with the prompt only."
)


class PromptEnricher:
    """LLM-powered prompt derivation for image-to-video items."""

    def __init__(self, config: Config):
        self._model = config.enrich_model
        self._client: Any | None = None

        if config.anthropic_api_key:
            try:
                import anthropic

                self._client = anthropic.AsyncAnthropic(api_key=config.anthropic_api_key)
            except Exception:
                logger.warning("Failed to initialize Anthropic client")
        else:
            logger.warning("ANTHROPIC_API_KEY not set - image prompts use the fallback")

    @property
    def enabled(self) -> bool:
        return self._client is not None

    async def describe_image(self, image_path: str | Path) -> str | None:
        """Return a generation prompt for the image, or None when unavailable."""
        if not self._client:
            return None

        path = Path(image_path)
        try:
            data = base64.b64encode(path.read_bytes()).decode("ascii")
        except OSError as exc:
            logger.error("Failed to read image for prompt enrichment %s: %s", path, exc)
            return None
        media_type = mimetypes.guess_type(path.name)[0] or "image/jpeg"

        try:
            response = await self._client.messages.create(
                model=self._model,
                max_tokens=300,
                messages=[
                    {
                        "role": "user",
                        "content": [
                            {
                                "type": "image",
                                "source": {"type": "base64", "media_type": media_type, "data": data},
                            },
                            {"type": "text", "text": _IMAGE_INSTRUCTION},
                        ],
                    }
                ],
            )
            text = " ".join(
                block.text for block in response.content if getattr(block, "text", None)
            ).strip()
        except Exception as exc:
            logger.error("Error deriving prompt for %s: %s", path, exc)
            return None

        if not text:
            logger.warning("Prompt enrichment returned no text for %s", path)
            return None
        logger.info("Derived prompt for %s: %s", path.name, text)
        return text
