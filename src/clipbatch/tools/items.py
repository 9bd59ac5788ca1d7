from __future__ import annotations

from mcp.server.fastmcp import FastMCP

from clipbatch.models.work_item import ItemStatus
from clipbatch.services.item_store import UnknownItemError
from clipbatch.services.run_controller import RunController


def register(mcp: FastMCP, controller: RunController) -> None:
    """Register item-level MCP tools."""

    @mcp.tool()
    async def list_items(status: str | None = None) -> dict:
        """List the items of the current run, optionally filtered by status.

        Args:
            status: pending, submitting, awaiting_completion, downloading,
                completed, failed or skipped
        """
        try:
            wanted = ItemStatus(status) if status else None
        except ValueError:
            return {"success": False, "error": f"Unknown status: {status}"}
        return {
            "items": [
                {
                    "id": item.id,
                    "kind": item.kind.value,
                    "status": item.status.value,
                    "progress": item.progress,
                    "name": item.display_name,
                    "retry_count": item.retry_count,
                    "local_path": item.local_path,
                    "error": item.error,
                }
                for item in controller.items(wanted)
            ]
        }

    @mcp.tool()
    async def skip_item(item_id: str) -> dict:
        """Skip one item immediately, cancelling any retry it is waiting on."""
        try:
            item = await controller.skip(item_id)
        except UnknownItemError as exc:
            return {"success": False, "error": str(exc)}
        return {"success": True, "item_id": item.id, "status": item.status.value}

    @mcp.tool()
    async def skip_all_items() -> dict:
        """Skip every item that has not finished yet."""
        skipped = await controller.skip_all()
        return {"success": True, "skipped": skipped}
