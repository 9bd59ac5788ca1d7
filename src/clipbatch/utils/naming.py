from __future__ import annotations

import re
from datetime import datetime, timezone
from pathlib import PurePath

from clipbatch.models.work_item import WorkItem

SLUG_MAX_LENGTH = 60
ARTIFACT_EXTENSION = ".mp4"

_NON_SLUG_CHARS = re.compile(r"[^a-z0-9\s-]")
_WHITESPACE = re.compile(r"\s+")
_DASHES = re.compile(r"-+")


def slugify(text: str, max_length: int = SLUG_MAX_LENGTH) -> str:
    """Lower-case ``text`` and collapse everything but ``[a-z0-9]`` into dashes."""
    slug = _NON_SLUG_CHARS.sub(" ", text.lower()).strip()
    slug = _DASHES.sub("-", _WHITESPACE.sub("-", slug))
    return slug[:max_length]


def filename_timestamp(now: datetime | None = None) -> str:
    """ISO-8601 UTC timestamp with ``:`` and ``.`` replaced by ``-``."""
    now = (now or datetime.now(timezone.utc)).astimezone(timezone.utc)
    iso = now.strftime("%Y-%m-%dT%H:%M:%S") + f".{now.microsecond // 1000:03d}Z"
    return iso.replace(":", "-").replace(".", "-")


def generate_filename(item: WorkItem, now: datetime | None = None) -> str:
    """Build the output filename for ``item``.

    The item id is always part of the name, so two items with identical
    prompts downloaded in the same millisecond still get distinct files.
    """
    if item.prompt:
        slug = slugify(item.prompt)
    elif item.source_image:
        slug = slugify(PurePath(item.source_image).stem)
    else:
        slug = ""

    parts = [item.kind.tag, filename_timestamp(now)]
    if slug:
        parts.append(slug)
    parts.append(item.id)
    return "_".join(parts) + ARTIFACT_EXTENSION
