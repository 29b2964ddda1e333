from __future__ import annotations

import logging
from pathlib import Path
from typing import Annotated

from fastmcp import FastMCP
from fastmcp.exceptions import ToolError
from mcp.types import ToolAnnotations
from pydantic import Field

from threadwatch.agent_adapter import PROGRESS_SERVER_NAME, PROGRESS_TOOL_NAME
from threadwatch.observability import log_event
from threadwatch.progress import ProgressChannel


LOGGER = logging.getLogger("threadwatch.progress_server")


def build_progress_server(channel: ProgressChannel) -> FastMCP:
    """Expose the progress channel to the agent as a single MCP tool.

    The agent never talks to GitLab directly. It replaces the channel content,
    and the relay in the controlling process mirrors it to the tracking note.
    """
    mcp = FastMCP(name=PROGRESS_SERVER_NAME)

    @mcp.tool(
        name=PROGRESS_TOOL_NAME,
        description=(
            "Replace the progress report shown on the GitLab tracking note. "
            "Send the complete current status every time; earlier text is discarded."
        ),
        annotations=ToolAnnotations(readOnlyHint=False, destructiveHint=False),
    )
    async def tool_update_progress(
        body: Annotated[
            str, Field(description="full markdown progress report to show on the tracking note")
        ],
    ) -> dict[str, object]:
        if not body.strip():
            raise ToolError("Progress body must not be empty")
        try:
            channel.replace(body)
        except OSError as exc:
            raise ToolError(f"Could not write progress: {exc}") from exc
        log_event(LOGGER, "progress_channel_written", length=len(body))
        return {"ok": True, "length": len(body)}

    return mcp


def run_progress_server(channel_path: Path) -> None:
    log_event(LOGGER, "progress_server_started", channel=str(channel_path))
    build_progress_server(ProgressChannel(channel_path)).run(transport="stdio")
