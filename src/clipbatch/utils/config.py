from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()


def _optional_float(name: str) -> float | None:
    raw = os.environ.get(name, "").strip()
    return float(raw) if raw else None


@dataclass(frozen=True)
class Config:
    """Central configuration loaded from environment variables."""

    # Remote generation API
    api_token: str | None = field(
        default_factory=lambda: os.environ.get("CLIPBATCH_API_TOKEN")
    )
    api_base_url: str = field(
        default_factory=lambda: os.environ.get(
            "CLIPBATCH_API_BASE_URL", "https://aisandbox-pa.googleapis.com/v1"
        )
    )
    project_id: str | None = field(
        default_factory=lambda: os.environ.get("CLIPBATCH_PROJECT_ID")
    )
    aspect_ratio: str = field(
        default_factory=lambda: os.environ.get("CLIPBATCH_ASPECT_RATIO", "LANDSCAPE 16:9")
    )
    model_variant: str = field(
        default_factory=lambda: os.environ.get("CLIPBATCH_MODEL_VARIANT", "veo-3-fast")
    )
    request_timeout: float = field(
        default_factory=lambda: float(os.environ.get("CLIPBATCH_REQUEST_TIMEOUT", "15"))
    )

    # Output
    output_dir: Path = field(
        default_factory=lambda: Path(os.environ.get("CLIPBATCH_OUTPUT_DIR", "output"))
    )

    # Scheduling
    concurrency: int = field(
        default_factory=lambda: int(os.environ.get("CLIPBATCH_CONCURRENCY", "2"))
    )
    poll_interval: float = field(
        default_factory=lambda: float(os.environ.get("CLIPBATCH_POLL_INTERVAL", "10"))
    )

    # Retry / backoff
    rate_limit_delay: float = field(
        default_factory=lambda: float(os.environ.get("CLIPBATCH_RATE_LIMIT_DELAY", "10"))
    )
    transient_delay: float = field(
        default_factory=lambda: float(os.environ.get("CLIPBATCH_TRANSIENT_DELAY", "5"))
    )
    restart_delay: float = field(
        default_factory=lambda: float(os.environ.get("CLIPBATCH_RESTART_DELAY", "5"))
    )
    max_download_attempts: int = field(
        default_factory=lambda: int(os.environ.get("CLIPBATCH_MAX_DOWNLOAD_ATTEMPTS", "5"))
    )
    # Unset means retry forever.
    max_retry_seconds: float | None = field(
        default_factory=lambda: _optional_float("CLIPBATCH_MAX_RETRY_SECONDS")
    )

    # Run history
    db_path: Path = field(
        default_factory=lambda: Path(
            os.environ.get("CLIPBATCH_DB_PATH", "data/clipbatch.db")
        )
    )

    # LLM (for image prompt enrichment)
    anthropic_api_key: str | None = field(
        default_factory=lambda: os.environ.get("ANTHROPIC_API_KEY")
    )
    enrich_model: str = field(
        default_factory=lambda: os.environ.get("CLIPBATCH_ENRICH_MODEL", "claude-sonnet-4-20250514")
    )

    # Logging
    log_level: str = field(
        default_factory=lambda: os.environ.get("CLIPBATCH_LOG_LEVEL", "INFO")
    )


def get_config() -> Config:
    """Return a Config instance (singleton-friendly via module caching)."""
    return Config()
