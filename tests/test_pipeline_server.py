from __future__ import annotations

from pathlib import Path

from fastmcp import Client
from fastmcp.exceptions import ToolError
import pytest

from threadwatch.agent_adapter import PIPELINE_TOOL_NAMES
from threadwatch.config import load_config
from threadwatch.gitlab_gateway import GitLabApiError
from threadwatch.models import PipelineJob, PipelineSummary
from threadwatch.pipeline_server import (
    build_pipeline_server,
    extract_error_summary,
    pipeline_log_dir,
)


def _pipeline(pipeline_id: int, status: str) -> PipelineSummary:
    return PipelineSummary(
        pipeline_id=pipeline_id,
        status=status,
        ref="feature",
        sha=f"sha{pipeline_id}",
        web_url=f"https://gitlab.example.com/p/{pipeline_id}",
        created_at="2024-05-01T10:00:00Z",
        updated_at="2024-05-01T10:05:00Z",
    )


class _FakePipelines:
    def __init__(self, *, trace: str = "", error: Exception | None = None) -> None:
        self.trace = trace
        self.error = error
        self.calls: list[tuple[str, int]] = []

    def list_merge_request_pipelines(self, iid: int) -> tuple[PipelineSummary, ...]:
        self.calls.append(("pipelines", iid))
        if self.error is not None:
            raise self.error
        return (
            _pipeline(3, "failed"),
            _pipeline(2, "success"),
            _pipeline(1, "running"),
            _pipeline(0, "skipped"),
        )

    def list_pipeline_jobs(self, pipeline_id: int) -> tuple[PipelineJob, ...]:
        self.calls.append(("jobs", pipeline_id))
        return (
            PipelineJob(401, "build", "build", "success", "u/401"),
            PipelineJob(402, "unit", "test", "failed", "u/402", failure_reason="script_failure"),
            PipelineJob(403, "flaky", "test", "failed", "u/403", allow_failure=True),
        )

    def get_job_trace(self, job_id: int) -> str:
        self.calls.append(("trace", job_id))
        return self.trace


def _data(result: object) -> dict[str, object]:
    data = getattr(result, "data", None) or getattr(result, "structured_content", None)
    assert isinstance(data, dict), "No data returned from tool call"
    return data


@pytest.mark.asyncio
async def test_pipeline_server_lists_three_tools(tmp_path: Path) -> None:
    server = build_pipeline_server(_FakePipelines(), iid=7, log_dir=tmp_path)
    async with Client(server) as client:
        tools = await client.list_tools()
    assert sorted(tool.name for tool in tools) == sorted(PIPELINE_TOOL_NAMES)


@pytest.mark.asyncio
async def test_get_pipeline_status_summarizes_and_filters(tmp_path: Path) -> None:
    source = _FakePipelines()
    async with Client(build_pipeline_server(source, iid=7, log_dir=tmp_path)) as client:
        everything = _data(await client.call_tool("get_pipeline_status", {}))
        failed_only = _data(await client.call_tool("get_pipeline_status", {"status": "failed"}))

    summary = everything["summary"]
    assert isinstance(summary, dict)
    assert summary["total_pipelines"] == 4
    assert (summary["failed"], summary["passed"], summary["running"]) == (1, 1, 1)
    assert summary["pending"] == 0
    latest = summary["latest_pipeline"]
    assert isinstance(latest, dict)
    assert latest["id"] == 3

    pipelines = failed_only["pipelines"]
    assert isinstance(pipelines, list)
    assert [p["id"] for p in pipelines] == [3]
    assert source.calls == [("pipelines", 7), ("pipelines", 7)]


@pytest.mark.asyncio
async def test_get_pipeline_jobs_groups_by_stage(tmp_path: Path) -> None:
    async with Client(build_pipeline_server(_FakePipelines(), iid=7, log_dir=tmp_path)) as client:
        result = _data(await client.call_tool("get_pipeline_jobs", {"pipeline_id": 31}))

    assert result["total_jobs"] == 3
    assert result["failed_jobs"] == 1
    stages = result["stages"]
    assert isinstance(stages, dict)
    assert [job["name"] for job in stages["test"]] == ["unit", "flaky"]
    jobs = result["jobs"]
    assert isinstance(jobs, list)
    assert jobs[1]["failure_message"] == "Job failed: script_failure"
    assert "failure_message" not in jobs[0]


@pytest.mark.asyncio
async def test_download_job_log_writes_file_and_error_excerpt(tmp_path: Path) -> None:
    trace = "$ make test\nok 1\nERROR: test_cache failed\n  assert 1 == 2\n"
    log_dir = tmp_path / "pipeline-logs"
    source = _FakePipelines(trace=trace)
    async with Client(build_pipeline_server(source, iid=7, log_dir=log_dir)) as client:
        result = _data(await client.call_tool("download_job_log", {"job_id": 402}))

    log_path = log_dir / "job-402.log"
    assert result["path"] == str(log_path)
    assert log_path.read_text(encoding="utf-8") == trace
    assert result["line_count"] == 5
    assert result["size_bytes"] == len(trace)
    assert result["error_summary"] == "ERROR: test_cache failed\n  assert 1 == 2\n"


@pytest.mark.asyncio
async def test_download_job_log_without_errors_has_no_excerpt(tmp_path: Path) -> None:
    source = _FakePipelines(trace="all good\n")
    async with Client(build_pipeline_server(source, iid=7, log_dir=tmp_path)) as client:
        result = _data(await client.call_tool("download_job_log", {"job_id": 401}))

    assert "error_summary" not in result


@pytest.mark.asyncio
async def test_gitlab_failure_becomes_tool_error(tmp_path: Path) -> None:
    source = _FakePipelines(error=GitLabApiError("GitLab API request failed with status 403"))
    async with Client(build_pipeline_server(source, iid=7, log_dir=tmp_path)) as client:
        with pytest.raises(ToolError, match="status 403"):
            await client.call_tool("get_pipeline_status", {})


def test_extract_error_summary_caps_excerpt_length() -> None:
    lines = ["setup"] + ["FAIL case"] + [f"detail {i}" for i in range(40)]

    excerpt = extract_error_summary(lines).split("\n")

    assert excerpt[0] == "FAIL case"
    assert len(excerpt) == 21
    assert extract_error_summary(["fine", "still fine"]) == ""


def test_pipeline_log_dir_lives_under_work_dir() -> None:
    config = load_config(
        {
            "CI_PROJECT_ID": "42",
            "CI_MERGE_REQUEST_IID": "7",
            "GITLAB_TOKEN": "secret",
            "RUNNER_TEMP": "/work",
        }
    )
    assert pipeline_log_dir(config) == Path("/work/threadwatch/pipeline-logs")
