from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path


PROGRESS_SERVER_NAME = "threadwatch_progress"
PROGRESS_TOOL_NAME = "update_progress"
PROGRESS_TOOL_ID = f"mcp__{PROGRESS_SERVER_NAME}__{PROGRESS_TOOL_NAME}"

PIPELINE_SERVER_NAME = "threadwatch_pipeline"
PIPELINE_TOOL_NAMES = ("get_pipeline_status", "get_pipeline_jobs", "download_job_log")
PIPELINE_TOOL_IDS = tuple(f"mcp__{PIPELINE_SERVER_NAME}__{name}" for name in PIPELINE_TOOL_NAMES)


class AgentTimeoutError(RuntimeError):
    pass


@dataclass(frozen=True)
class AgentRunRequest:
    prompt: str
    append_system_prompt: str
    progress_channel_path: Path
    cwd: Path
    pipeline_tools: bool = False


@dataclass(frozen=True)
class AgentRunResult:
    final_message: str | None
    turn_count: int | None = None


class AgentAdapter(ABC):
    @abstractmethod
    def run(self, request: AgentRunRequest) -> AgentRunResult:
        """Run the agent to completion; raise AgentTimeoutError past the deadline."""
