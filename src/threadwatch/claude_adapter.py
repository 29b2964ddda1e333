from __future__ import annotations

import json
import logging
import sys
import time
from typing import cast

from threadwatch.agent_adapter import (
    PIPELINE_SERVER_NAME,
    PIPELINE_TOOL_IDS,
    PROGRESS_SERVER_NAME,
    PROGRESS_TOOL_ID,
    AgentAdapter,
    AgentRunRequest,
    AgentRunResult,
    AgentTimeoutError,
)
from threadwatch.config import AgentConfig
from threadwatch.observability import log_event
from threadwatch.shell import CommandTimeoutError, run


LOGGER = logging.getLogger("threadwatch.claude_adapter")


class ClaudeCodeAdapter(AgentAdapter):
    def __init__(self, config: AgentConfig, *, python_executable: str | None = None) -> None:
        self._config = config
        self._python_executable = python_executable or sys.executable

    def run(self, request: AgentRunRequest) -> AgentRunResult:
        cmd = self.build_command(request)
        log_event(
            LOGGER,
            "agent_invocation_started",
            model=self._config.model or "default",
            max_turns=self._config.max_turns,
            timeout_minutes=self._config.timeout_minutes,
            allowed_tool_count=len(self._allowed_tools(request)),
        )
        started = time.monotonic()
        try:
            raw_events = run(
                cmd,
                cwd=request.cwd,
                input_text=request.prompt,
                timeout_seconds=self._config.timeout_seconds,
            )
        except CommandTimeoutError as exc:
            log_event(
                LOGGER,
                "agent_invocation_timed_out",
                timeout_minutes=self._config.timeout_minutes,
            )
            raise AgentTimeoutError(
                f"Agent did not finish within {self._config.timeout_minutes} minutes"
            ) from exc

        result = _extract_result(raw_events)
        log_event(
            LOGGER,
            "agent_invocation_finished",
            duration_seconds=round(time.monotonic() - started, 1),
            turn_count=result.turn_count,
            has_final_message=result.final_message is not None,
        )
        return result

    def build_command(self, request: AgentRunRequest) -> list[str]:
        cmd = [
            "claude",
            "-p",
            "--output-format",
            "stream-json",
            "--verbose",
            "--mcp-config",
            json.dumps(self.mcp_config(request)),
            "--allowedTools",
            ",".join(self._allowed_tools(request)),
        ]
        if self._config.disallowed_tools:
            cmd.extend(["--disallowedTools", ",".join(self._config.disallowed_tools)])
        if request.append_system_prompt:
            cmd.extend(["--append-system-prompt", request.append_system_prompt])
        if self._config.model:
            cmd.extend(["--model", self._config.model])
        if self._config.max_turns is not None:
            cmd.extend(["--max-turns", str(self._config.max_turns)])
        return cmd

    def mcp_config(self, request: AgentRunRequest) -> dict[str, object]:
        servers: dict[str, object] = {
            PROGRESS_SERVER_NAME: {
                "command": self._python_executable,
                "args": [
                    "-m",
                    "threadwatch",
                    "progress-server",
                    "--channel",
                    str(request.progress_channel_path),
                ],
            }
        }
        if request.pipeline_tools:
            # Credentials and the merge request come from the inherited CI environment.
            servers[PIPELINE_SERVER_NAME] = {
                "command": self._python_executable,
                "args": ["-m", "threadwatch", "pipeline-server"],
            }
        return {"mcpServers": servers}

    def _allowed_tools(self, request: AgentRunRequest) -> tuple[str, ...]:
        required = [PROGRESS_TOOL_ID]
        if request.pipeline_tools:
            required.extend(PIPELINE_TOOL_IDS)
        tools = tuple(self._config.allowed_tools)
        return tools + tuple(tool for tool in required if tool not in tools)


def _extract_result(raw_events: str) -> AgentRunResult:
    result_payload: dict[str, object] | None = None
    for line in raw_events.splitlines():
        payload = _parse_event_line(line.strip())
        if payload is not None and payload.get("type") == "result":
            result_payload = payload
    if result_payload is None:
        raise RuntimeError("Agent run did not emit a result event")
    if result_payload.get("is_error") is True:
        detail = result_payload.get("result") or result_payload.get("subtype") or "unknown error"
        raise RuntimeError(f"Agent run failed: {detail}")

    message = result_payload.get("result")
    final_message = message.strip() if isinstance(message, str) else ""
    turns = result_payload.get("num_turns")
    return AgentRunResult(
        final_message=final_message or None,
        turn_count=turns if isinstance(turns, int) and not isinstance(turns, bool) else None,
    )


def _parse_event_line(line: str) -> dict[str, object] | None:
    if not line.startswith("{"):
        return None
    try:
        payload = json.loads(line)
    except json.JSONDecodeError:
        return None
    if not isinstance(payload, dict):
        return None
    if not all(isinstance(key, str) for key in payload.keys()):
        return None
    return cast(dict[str, object], payload)
