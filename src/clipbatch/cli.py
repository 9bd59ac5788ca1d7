from __future__ import annotations

import asyncio
import signal
from pathlib import Path
from typing import Any

import click

from clipbatch import __version__
from clipbatch.models.run_state import HaltReason, RunState
from clipbatch.models.work_item import WorkItem
from clipbatch.services.remote_client import ASPECT_RATIOS, MODEL_VARIANTS
from clipbatch.services.scheduler import MAX_CONCURRENCY, MIN_CONCURRENCY

EXIT_ITEMS_FAILED = 1
EXIT_UNAUTHORIZED = 2


@click.group()
@click.version_option(version=__version__, prog_name="clipbatch")
def main() -> None:
    """clipbatch: batch video generation with retries and rate-limit handling."""


@main.command()
@click.option(
    "--db-path",
    default="data/clipbatch.db",
    show_default=True,
    help="Path for the SQLite run-history file.",
)
def init(db_path: str) -> None:
    """Initialize the run-history database."""
    from clipbatch.db.database import Database

    async def _init() -> None:
        db = Database(db_path)
        await db.initialize()
        await db.close()
        click.echo(f"Database initialized at {db_path}")

    asyncio.run(_init())


@main.command()
def serve() -> None:
    """Start the clipbatch MCP server over stdio."""
    from clipbatch.server import mcp

    click.echo("Starting clipbatch MCP server...", err=True)
    mcp.run()


@main.command()
def version() -> None:
    """Print the version and exit."""
    click.echo(f"clipbatch {__version__}")


@main.command("check-token")
def check_token() -> None:
    """Verify that the configured API token is accepted."""
    from clipbatch.services.remote_client import HttpGenerationClient
    from clipbatch.utils.config import get_config

    config = get_config()
    if not config.api_token:
        raise click.UsageError("CLIPBATCH_API_TOKEN is not set")

    async def _check() -> Any:
        async with HttpGenerationClient(
            config.api_token, base_url=config.api_base_url, timeout=config.request_timeout
        ) as client:
            return await client.test_token()

    error = asyncio.run(_check())
    if error is not None:
        click.echo(f"Token rejected: {error.message}", err=True)
        raise SystemExit(EXIT_UNAUTHORIZED if error.status in (401, 403) else 1)
    click.echo("Token OK")


def _format_item(item: dict[str, Any]) -> str:
    name = item.get("prompt") or Path(item.get("source_image") or "").name or item["id"]
    if len(name) > 50:
        name = name[:47] + "..."
    line = f"[{item['status']:<19}] {item['progress']:>3}%  {item['id']}  {name}"
    if item["status"] in ("failed", "skipped") and item.get("error"):
        line += f"  ({item['error']})"
    elif item["status"] == "completed" and item.get("local_path"):
        line += f"  -> {item['local_path']}"
    return line


async def _run_batch(
    items: list[WorkItem],
    *,
    output: Path,
    concurrency: int,
    aspect_ratio: str,
    model_variant: str,
    dry_run: bool,
    record: bool,
) -> RunState:
    from clipbatch.db.database import Database
    from clipbatch.services.event_bus import EventBus
    from clipbatch.services.prompt_enricher import PromptEnricher
    from clipbatch.services.remote_client import HttpGenerationClient
    from clipbatch.services.retry_policy import RetryPolicy
    from clipbatch.services.run_controller import RunController
    from clipbatch.services.simulated_client import SimulatedGenerationClient
    from clipbatch.utils.config import get_config

    config = get_config()
    if dry_run:
        client: Any = SimulatedGenerationClient(latency=0.2, polls_until_ready=2)
        policy = RetryPolicy(
            rate_limit_delay=0.5, transient_delay=0.5, restart_delay=0.5, poll_interval=0.5
        )
    else:
        if not config.api_token:
            raise click.UsageError("CLIPBATCH_API_TOKEN is not set (or use --dry-run)")
        client = HttpGenerationClient(
            config.api_token,
            base_url=config.api_base_url,
            aspect_ratio=aspect_ratio,
            model_variant=model_variant,
            project_id=config.project_id,
            timeout=config.request_timeout,
        )
        policy = RetryPolicy.from_config(config)

    db = Database(config.db_path) if record else None
    if db is not None:
        await db.initialize()

    events = EventBus()
    last_status: dict[str, str] = {}

    async def on_item(event: dict[str, Any]) -> None:
        item = event["item"]
        if last_status.get(item["id"]) != item["status"]:
            last_status[item["id"]] = item["status"]
            click.echo(_format_item(item))

    async def on_unauthorized(event: dict[str, Any]) -> None:
        click.echo(
            "Credentials rejected: update CLIPBATCH_API_TOKEN and start again.", err=True
        )

    events.subscribe("item_updated", on_item)
    events.subscribe("run_unauthorized", on_unauthorized)

    controller = RunController(
        client,
        output,
        policy=policy,
        event_bus=events,
        enricher=PromptEnricher(config) if not dry_run else None,
        db=db,
        default_concurrency=concurrency,
    )

    loop = asyncio.get_running_loop()
    stop_handler_installed = False
    try:
        await controller.start(items, concurrency)
        try:
            loop.add_signal_handler(signal.SIGINT, lambda: asyncio.ensure_future(controller.stop()))
            stop_handler_installed = True
        except (NotImplementedError, RuntimeError):
            pass
        return await controller.wait()
    finally:
        if stop_handler_installed:
            loop.remove_signal_handler(signal.SIGINT)
        await controller.shutdown()
        if hasattr(client, "aclose"):
            await client.aclose()
        if db is not None:
            await db.close()


@main.command()
@click.option(
    "--prompts",
    "prompts_file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Text file with one prompt per line (text-to-video).",
)
@click.option(
    "--images",
    "images_dir",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    help="Folder of source images (image-to-video).",
)
@click.option(
    "--image-prompt",
    default=None,
    help="Prompt shared by every image (otherwise derived per image).",
)
@click.option(
    "--output",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Output folder for clips [default: CLIPBATCH_OUTPUT_DIR].",
)
@click.option(
    "--concurrency",
    type=click.IntRange(MIN_CONCURRENCY, MAX_CONCURRENCY),
    default=None,
    help="Clips generated at once [default: CLIPBATCH_CONCURRENCY].",
)
@click.option(
    "--aspect-ratio",
    type=click.Choice(ASPECT_RATIOS),
    default=None,
    help="Video aspect ratio [default: CLIPBATCH_ASPECT_RATIO].",
)
@click.option(
    "--model",
    "model_variant",
    type=click.Choice(MODEL_VARIANTS),
    default=None,
    help="Model variant [default: CLIPBATCH_MODEL_VARIANT].",
)
@click.option("--dry-run", is_flag=True, help="Use the in-process simulated service.")
@click.option("--no-history", is_flag=True, help="Do not record the run in the database.")
def run(
    prompts_file: Path | None,
    images_dir: Path | None,
    image_prompt: str | None,
    output: Path | None,
    concurrency: int | None,
    aspect_ratio: str | None,
    model_variant: str | None,
    dry_run: bool,
    no_history: bool,
) -> None:
    """Generate one clip per prompt or image."""
    from clipbatch.utils.config import get_config
    from clipbatch.utils.inputs import (
        build_image_items,
        build_text_items,
        load_prompts,
        scan_image_folder,
    )
    from clipbatch.utils.logger import setup_logging

    if (prompts_file is None) == (images_dir is None):
        raise click.UsageError("Pass exactly one of --prompts or --images")

    config = get_config()
    setup_logging(config.log_level)

    if prompts_file is not None:
        items = build_text_items(load_prompts(prompts_file))
    else:
        items = build_image_items(scan_image_folder(images_dir), prompt=image_prompt)  # type: ignore[arg-type]
    if not items:
        raise click.UsageError("No prompts or images to process")

    try:
        state = asyncio.run(
            _run_batch(
                items,
                output=output or config.output_dir,
                concurrency=concurrency or config.concurrency,
                aspect_ratio=aspect_ratio or config.aspect_ratio,
                model_variant=model_variant or config.model_variant,
                dry_run=dry_run,
                record=not no_history,
            )
        )
    except ValueError as exc:
        raise click.UsageError(str(exc)) from exc

    stats = state.stats
    click.echo(
        f"Run {state.run_id} {state.phase.value}: {stats.completed} completed, "
        f"{stats.failed} failed, {stats.skipped} skipped, {stats.queued} not started"
    )
    if state.halt_reason is HaltReason.UNAUTHORIZED:
        raise SystemExit(EXIT_UNAUTHORIZED)
    if stats.failed:
        raise SystemExit(EXIT_ITEMS_FAILED)


if __name__ == "__main__":
    main()
