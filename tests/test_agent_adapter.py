from __future__ import annotations

from pathlib import Path

import pytest

from threadwatch.agent_adapter import (
    PROGRESS_TOOL_ID,
    AgentAdapter,
    AgentRunRequest,
    AgentRunResult,
)


class DummyAdapter(AgentAdapter):
    def run(self, request: AgentRunRequest) -> AgentRunResult:
        return AgentRunResult(final_message=request.prompt.upper(), turn_count=1)


def test_adapter_contract(tmp_path: Path) -> None:
    request = AgentRunRequest(
        prompt="hi",
        append_system_prompt="",
        progress_channel_path=tmp_path / "progress.md",
        cwd=tmp_path,
    )

    result = DummyAdapter().run(request)

    assert result == AgentRunResult(final_message="HI", turn_count=1)
    assert PROGRESS_TOOL_ID == "mcp__threadwatch_progress__update_progress"


def test_adapter_is_abstract() -> None:
    with pytest.raises(TypeError):
        AgentAdapter()  # type: ignore[abstract]
