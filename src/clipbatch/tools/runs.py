from __future__ import annotations

from mcp.server.fastmcp import FastMCP

from clipbatch.db.database import Database
from clipbatch.services.run_controller import (
    RunAlreadyActiveError,
    RunController,
    RunNotActiveError,
)
from clipbatch.utils.inputs import build_image_items, build_text_items, scan_image_folder


def register(mcp: FastMCP, controller: RunController, db: Database) -> None:
    """Register run-level MCP tools."""

    @mcp.tool()
    async def start_text_run(prompts: list[str], concurrency: int | None = None) -> dict:
        """Start generating one video clip per text prompt.

        Args:
            prompts: Prompts in submission order; blank entries are ignored
            concurrency: Clips generated at once, 1-10 (default from config)
        """
        cleaned = [p.strip() for p in prompts if p and p.strip()]
        try:
            state = await controller.start(build_text_items(cleaned), concurrency)
        except (RunAlreadyActiveError, ValueError) as exc:
            return {"success": False, "error": str(exc)}
        return {"success": True, "run": state.model_dump(mode="json")}

    @mcp.tool()
    async def start_image_run(
        folder: str,
        prompt: str | None = None,
        concurrency: int | None = None,
    ) -> dict:
        """Start generating one video clip per image found in a folder.

        Args:
            folder: Directory containing .jpg/.png/.gif/.bmp/.webp images
            prompt: Prompt shared by every image; derived per image when omitted
            concurrency: Clips generated at once, 1-10 (default from config)
        """
        try:
            images = scan_image_folder(folder)
            state = await controller.start(build_image_items(images, prompt=prompt), concurrency)
        except (RunAlreadyActiveError, ValueError, OSError) as exc:
            return {"success": False, "error": str(exc)}
        return {"success": True, "run": state.model_dump(mode="json")}

    @mcp.tool()
    async def stop_run() -> dict:
        """Stop the current run. In-flight requests finish; nothing new starts."""
        state = await controller.stop()
        return {"success": True, "run": state.model_dump(mode="json")}

    @mcp.tool()
    async def pause_run() -> dict:
        """Stop starting new clips until resume_run is called."""
        try:
            state = await controller.pause()
        except RunNotActiveError as exc:
            return {"success": False, "error": str(exc)}
        return {"success": True, "run": state.model_dump(mode="json")}

    @mcp.tool()
    async def resume_run() -> dict:
        """Resume starting new clips after pause_run."""
        try:
            state = await controller.resume()
        except RunNotActiveError as exc:
            return {"success": False, "error": str(exc)}
        return {"success": True, "run": state.model_dump(mode="json")}

    @mcp.tool()
    async def get_run_state() -> dict:
        """Current run phase, counters and remaining credits."""
        return controller.state.model_dump(mode="json")

    @mcp.tool()
    async def get_run_history(run_id: str | None = None, limit: int = 20) -> dict:
        """Finished items of one run, or the most recent runs when run_id is omitted."""
        if run_id is None:
            return {"runs": await db.get_recent_runs(limit)}
        run = await db.get_run(run_id)
        if run is None:
            return {"success": False, "error": f"Unknown run: {run_id}"}
        return {"run": run, "items": await db.get_run_items(run_id)}
