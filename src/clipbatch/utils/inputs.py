from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Iterable

from clipbatch.models.work_item import ItemKind, WorkItem

logger = logging.getLogger(__name__)

IMAGE_EXTENSIONS = frozenset({".jpg", ".jpeg", ".png", ".gif", ".bmp", ".webp"})


def load_prompts(path: str | Path) -> list[str]:
    """Read one prompt per non-empty line."""
    text = Path(path).read_text(encoding="utf-8")
    prompts = [line.strip() for line in text.splitlines() if line.strip()]
    logger.info("Loaded %d prompt(s) from %s", len(prompts), path)
    return prompts


def scan_image_folder(folder: str | Path) -> list[Path]:
    """Return image files directly inside ``folder``, sorted by name."""
    folder = Path(folder)
    if not folder.is_dir():
        raise NotADirectoryError(f"Not a directory: {folder}")
    images = sorted(
        p for p in folder.iterdir()
        if p.is_file() and p.suffix.lower() in IMAGE_EXTENSIONS
    )
    logger.info("Found %d image(s) in %s", len(images), folder)
    return images


def _base_id() -> int:
    return int(time.time() * 1000)


def build_text_items(prompts: Iterable[str], base_id: int | None = None) -> list[WorkItem]:
    base = base_id if base_id is not None else _base_id()
    return [
        WorkItem(id=f"txt-{base}-{index}", kind=ItemKind.TEXT_TO_VIDEO, prompt=prompt)
        for index, prompt in enumerate(prompts)
    ]


def build_image_items(
    images: Iterable[str | Path],
    prompt: str | None = None,
    base_id: int | None = None,
) -> list[WorkItem]:
    """Image items; without ``prompt`` one is derived lazily during submission."""
    base = base_id if base_id is not None else _base_id()
    return [
        WorkItem(
            id=f"img-{base}-{index}",
            kind=ItemKind.IMAGE_TO_VIDEO,
            source_image=str(image),
            prompt=prompt,
        )
        for index, image in enumerate(images)
    ]
