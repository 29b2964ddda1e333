from __future__ import annotations

import json
from pathlib import Path

import pytest

from threadwatch.agent_adapter import (
    PIPELINE_SERVER_NAME,
    PIPELINE_TOOL_IDS,
    PROGRESS_SERVER_NAME,
    PROGRESS_TOOL_ID,
    AgentRunRequest,
    AgentTimeoutError,
)
from threadwatch.claude_adapter import ClaudeCodeAdapter, _extract_result, _parse_event_line
from threadwatch.config import AgentConfig
from threadwatch.shell import CommandTimeoutError


def _config(**overrides: object) -> AgentConfig:
    fields: dict[str, object] = {
        "model": None,
        "max_turns": None,
        "timeout_minutes": 30,
        "allowed_tools": ("Read", "Edit"),
        "disallowed_tools": ("WebSearch",),
    }
    fields.update(overrides)
    return AgentConfig(**fields)  # type: ignore[arg-type]


def _request(tmp_path: Path) -> AgentRunRequest:
    return AgentRunRequest(
        prompt="Do the thing",
        append_system_prompt="Git rules",
        progress_channel_path=tmp_path / "progress.md",
        cwd=tmp_path,
    )


def _events(*payloads: dict[str, object]) -> str:
    lines = ["not json output"] + [json.dumps(payload) for payload in payloads]
    return "\n".join(lines) + "\n"


def test_build_command_includes_tools_prompt_and_mcp_config(tmp_path: Path) -> None:
    adapter = ClaudeCodeAdapter(
        _config(model="sonnet", max_turns=12), python_executable="/usr/bin/python3"
    )

    cmd = adapter.build_command(_request(tmp_path))

    assert cmd[:5] == ["claude", "-p", "--output-format", "stream-json", "--verbose"]
    assert cmd[cmd.index("--allowedTools") + 1] == f"Read,Edit,{PROGRESS_TOOL_ID}"
    assert cmd[cmd.index("--disallowedTools") + 1] == "WebSearch"
    assert cmd[cmd.index("--append-system-prompt") + 1] == "Git rules"
    assert cmd[cmd.index("--model") + 1] == "sonnet"
    assert cmd[cmd.index("--max-turns") + 1] == "12"

    mcp_config = json.loads(cmd[cmd.index("--mcp-config") + 1])
    server = mcp_config["mcpServers"][PROGRESS_SERVER_NAME]
    assert server["command"] == "/usr/bin/python3"
    assert server["args"] == [
        "-m",
        "threadwatch",
        "progress-server",
        "--channel",
        str(tmp_path / "progress.md"),
    ]


def test_build_command_omits_optional_flags(tmp_path: Path) -> None:
    adapter = ClaudeCodeAdapter(
        _config(allowed_tools=(PROGRESS_TOOL_ID,), disallowed_tools=())
    )
    request = AgentRunRequest(
        prompt="p", append_system_prompt="", progress_channel_path=tmp_path, cwd=tmp_path
    )

    cmd = adapter.build_command(request)

    assert cmd[cmd.index("--allowedTools") + 1] == PROGRESS_TOOL_ID
    for flag in ("--disallowedTools", "--append-system-prompt", "--model", "--max-turns"):
        assert flag not in cmd


def test_pipeline_tools_are_registered_only_when_requested(tmp_path: Path) -> None:
    adapter = ClaudeCodeAdapter(_config(), python_executable="/usr/bin/python3")
    request = AgentRunRequest(
        prompt="p",
        append_system_prompt="",
        progress_channel_path=tmp_path / "progress.md",
        cwd=tmp_path,
        pipeline_tools=True,
    )

    cmd = adapter.build_command(request)

    servers = json.loads(cmd[cmd.index("--mcp-config") + 1])["mcpServers"]
    assert servers[PIPELINE_SERVER_NAME] == {
        "command": "/usr/bin/python3",
        "args": ["-m", "threadwatch", "pipeline-server"],
    }
    allowed = cmd[cmd.index("--allowedTools") + 1].split(",")
    assert allowed == ["Read", "Edit", PROGRESS_TOOL_ID, *PIPELINE_TOOL_IDS]

    plain = adapter.build_command(_request(tmp_path))
    plain_servers = json.loads(plain[plain.index("--mcp-config") + 1])["mcpServers"]
    assert list(plain_servers) == [PROGRESS_SERVER_NAME]
    assert "pipeline" not in plain[plain.index("--allowedTools") + 1]


def test_run_passes_prompt_on_stdin_and_parses_result(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    captured: dict[str, object] = {}

    def fake_run(argv: list[str], **kwargs: object) -> str:
        captured["argv"] = argv
        captured.update(kwargs)
        return _events(
            {"type": "system", "subtype": "init"},
            {"type": "result", "subtype": "success", "result": " Done. ", "num_turns": 4},
        )

    monkeypatch.setattr("threadwatch.claude_adapter.run", fake_run)

    result = ClaudeCodeAdapter(_config(timeout_minutes=2)).run(_request(tmp_path))

    assert result.final_message == "Done."
    assert result.turn_count == 4
    assert captured["input_text"] == "Do the thing"
    assert captured["cwd"] == tmp_path
    assert captured["timeout_seconds"] == 120.0


def test_run_converts_command_timeout(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    def fake_run(argv: list[str], **kwargs: object) -> str:
        _ = argv, kwargs
        raise CommandTimeoutError("Command timed out after 1800.0 seconds")

    monkeypatch.setattr("threadwatch.claude_adapter.run", fake_run)

    with pytest.raises(AgentTimeoutError, match="within 30 minutes"):
        ClaudeCodeAdapter(_config()).run(_request(tmp_path))


def test_extract_result_uses_last_result_event() -> None:
    raw = _events(
        {"type": "result", "result": "first"},
        {"type": "assistant", "message": {}},
        {"type": "result", "result": "", "num_turns": True},
    )

    result = _extract_result(raw)

    assert result.final_message is None
    assert result.turn_count is None


def test_extract_result_errors() -> None:
    with pytest.raises(RuntimeError, match="did not emit a result event"):
        _extract_result(_events({"type": "assistant"}))
    with pytest.raises(RuntimeError, match="Agent run failed: error_max_turns"):
        _extract_result(_events({"type": "result", "is_error": True, "subtype": "error_max_turns"}))


def test_parse_event_line() -> None:
    assert _parse_event_line('{"type": "result"}') == {"type": "result"}
    assert _parse_event_line("[1, 2]") is None
    assert _parse_event_line("{broken") is None
    assert _parse_event_line("") is None
