from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from mcp.server.fastmcp import FastMCP

from clipbatch.db.database import Database
from clipbatch.services.event_bus import EventBus
from clipbatch.services.prompt_enricher import PromptEnricher
from clipbatch.services.remote_client import HttpGenerationClient
from clipbatch.services.retry_policy import RetryPolicy
from clipbatch.services.run_controller import RunController
from clipbatch.tools import items as item_tools
from clipbatch.tools import runs as run_tools
from clipbatch.utils.config import get_config
from clipbatch.utils.logger import setup_logging

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(server: FastMCP) -> AsyncIterator[None]:
    """Startup / shutdown lifecycle for clipbatch."""
    config = get_config()
    if not config.api_token:
        raise RuntimeError("CLIPBATCH_API_TOKEN is not set")

    # --- Database ---
    db = Database(config.db_path)
    await db.initialize()

    # --- Services ---
    client = HttpGenerationClient(
        config.api_token,
        base_url=config.api_base_url,
        aspect_ratio=config.aspect_ratio,
        model_variant=config.model_variant,
        project_id=config.project_id,
        timeout=config.request_timeout,
    )
    event_bus = EventBus()
    controller = RunController(
        client,
        config.output_dir,
        policy=RetryPolicy.from_config(config),
        event_bus=event_bus,
        enricher=PromptEnricher(config),
        db=db,
        default_concurrency=config.concurrency,
    )

    # --- Register MCP tools ---
    run_tools.register(server, controller, db)
    item_tools.register(server, controller)

    # --- Register MCP resource ---
    @server.resource("clipbatch://stats")
    async def get_stats() -> str:
        state = controller.state
        stats = state.stats
        return (
            "clipbatch status:\n"
            f"- Run: {state.run_id or 'none'} ({state.phase.value})\n"
            f"- Queued: {stats.queued}\n"
            f"- Active: {stats.active}\n"
            f"- Completed: {stats.completed}\n"
            f"- Failed: {stats.failed}\n"
            f"- Skipped: {stats.skipped}\n"
            f"- Remaining credits: {state.remaining_credits if state.remaining_credits is not None else 'unknown'}\n"
        )

    logger.info("clipbatch MCP server ready (output: %s)", config.output_dir)

    try:
        yield
    finally:
        await controller.shutdown()
        await client.aclose()
        await db.close()
        logger.info("clipbatch MCP server stopped")


def create_server() -> FastMCP:
    """Build and return the configured FastMCP server."""
    config = get_config()
    setup_logging(config.log_level)

    server = FastMCP("clipbatch", lifespan=lifespan)
    return server


# Module-level instance used by the CLI and ``python -m``
mcp = create_server()

if __name__ == "__main__":
    mcp.run()
