from __future__ import annotations

from collections import Counter
import logging
from pathlib import Path
from typing import Annotated, Literal, Protocol

from fastmcp import FastMCP
from fastmcp.exceptions import ToolError
from mcp.types import ToolAnnotations
from pydantic import Field

from threadwatch.agent_adapter import PIPELINE_SERVER_NAME, PIPELINE_TOOL_NAMES
from threadwatch.config import AppConfig
from threadwatch.gitlab_gateway import GitLabApiError, GitLabGateway
from threadwatch.models import PipelineJob, PipelineSummary
from threadwatch.observability import log_event


LOGGER = logging.getLogger("threadwatch.pipeline_server")

PipelineStatus = Literal[
    "created",
    "waiting_for_resource",
    "preparing",
    "pending",
    "running",
    "success",
    "failed",
    "canceled",
    "skipped",
    "manual",
    "scheduled",
]

_STATUS_BUCKETS: dict[str, str] = {
    "success": "passed",
    "failed": "failed",
    "running": "running",
    "preparing": "running",
    "pending": "pending",
    "created": "pending",
    "waiting_for_resource": "pending",
    "canceled": "canceled",
}
_ERROR_MARKERS = ("ERROR:", "FAILED:", "error:", "Error:", "✗", "FAIL")
_ERROR_SUMMARY_MAX_LINES = 21

_STATUS_TOOL, _JOBS_TOOL, _LOG_TOOL = PIPELINE_TOOL_NAMES


class PipelineSource(Protocol):
    def list_merge_request_pipelines(self, iid: int) -> tuple[PipelineSummary, ...]: ...

    def list_pipeline_jobs(self, pipeline_id: int) -> tuple[PipelineJob, ...]: ...

    def get_job_trace(self, job_id: int) -> str: ...


def build_pipeline_server(source: PipelineSource, *, iid: int, log_dir: Path) -> FastMCP:
    """Read-only CI tools for the merge request under review.

    Pipelines are listed newest first as GitLab returns them. Job logs are
    written under ``log_dir`` so the agent can inspect them with its file tools.
    """
    mcp = FastMCP(name=PIPELINE_SERVER_NAME)
    read_only = ToolAnnotations(readOnlyHint=True, destructiveHint=False)

    @mcp.tool(
        name=_STATUS_TOOL,
        description="Get the pipeline status summary for this merge request.",
        annotations=read_only,
    )
    async def tool_get_pipeline_status(
        status: Annotated[
            PipelineStatus | None, Field(description="only include pipelines with this status")
        ] = None,
    ) -> dict[str, object]:
        try:
            pipelines = source.list_merge_request_pipelines(iid)
        except GitLabApiError as exc:
            raise ToolError(str(exc)) from exc
        if status is not None:
            pipelines = tuple(p for p in pipelines if p.status == status)
        log_event(LOGGER, "pipeline_status_served", iid=iid, count=len(pipelines))
        return summarize_pipelines(pipelines)

    @mcp.tool(
        name=_JOBS_TOOL,
        description="Get job details for one pipeline, grouped by stage.",
        annotations=read_only,
    )
    async def tool_get_pipeline_jobs(
        pipeline_id: Annotated[int, Field(description="the pipeline id", ge=1)],
    ) -> dict[str, object]:
        try:
            jobs = source.list_pipeline_jobs(pipeline_id)
        except GitLabApiError as exc:
            raise ToolError(str(exc)) from exc
        log_event(LOGGER, "pipeline_jobs_served", pipeline_id=pipeline_id, count=len(jobs))
        return summarize_jobs(jobs)

    @mcp.tool(
        name=_LOG_TOOL,
        description=(
            "Download a job log to disk for analysis. Returns the file path and, "
            "when the log shows errors, a short excerpt starting at the first one."
        ),
        annotations=ToolAnnotations(readOnlyHint=False, destructiveHint=False),
    )
    async def tool_download_job_log(
        job_id: Annotated[int, Field(description="the job id", ge=1)],
    ) -> dict[str, object]:
        try:
            trace = source.get_job_trace(job_id)
        except GitLabApiError as exc:
            raise ToolError(str(exc)) from exc
        log_path = log_dir / f"job-{job_id}.log"
        try:
            log_dir.mkdir(parents=True, exist_ok=True)
            log_path.write_text(trace, encoding="utf-8")
        except OSError as exc:
            raise ToolError(f"Could not write job log: {exc}") from exc

        lines = trace.split("\n")
        result: dict[str, object] = {
            "path": str(log_path),
            "size_bytes": len(trace.encode("utf-8")),
            "line_count": len(lines),
        }
        excerpt = extract_error_summary(lines)
        if excerpt:
            result["error_summary"] = excerpt
        log_event(LOGGER, "job_log_downloaded", job_id=job_id, path=str(log_path))
        return result

    return mcp


def summarize_pipelines(pipelines: tuple[PipelineSummary, ...]) -> dict[str, object]:
    counts = Counter(_STATUS_BUCKETS.get(p.status) for p in pipelines)
    rendered = [_pipeline_dict(p) for p in pipelines]
    return {
        "summary": {
            "total_pipelines": len(pipelines),
            "failed": counts["failed"],
            "passed": counts["passed"],
            "running": counts["running"],
            "pending": counts["pending"],
            "canceled": counts["canceled"],
            "latest_pipeline": rendered[0] if rendered else None,
        },
        "pipelines": rendered,
    }


def summarize_jobs(jobs: tuple[PipelineJob, ...]) -> dict[str, object]:
    rendered = [_job_dict(job) for job in jobs]
    stages: dict[str, list[dict[str, object]]] = {}
    for job, entry in zip(jobs, rendered):
        stages.setdefault(job.stage, []).append(entry)
    return {
        "total_jobs": len(jobs),
        "failed_jobs": sum(1 for job in jobs if job.status == "failed" and not job.allow_failure),
        "stages": stages,
        "jobs": rendered,
    }


def extract_error_summary(lines: list[str]) -> str:
    collected: list[str] = []
    for line in lines:
        if not collected and not any(marker in line for marker in _ERROR_MARKERS):
            continue
        collected.append(line)
        if len(collected) >= _ERROR_SUMMARY_MAX_LINES:
            break
    return "\n".join(collected)


def _pipeline_dict(pipeline: PipelineSummary) -> dict[str, object]:
    return {
        "id": pipeline.pipeline_id,
        "status": pipeline.status,
        "ref": pipeline.ref,
        "sha": pipeline.sha,
        "web_url": pipeline.web_url,
        "created_at": pipeline.created_at,
        "updated_at": pipeline.updated_at,
    }


def _job_dict(job: PipelineJob) -> dict[str, object]:
    entry: dict[str, object] = {
        "id": job.job_id,
        "name": job.name,
        "stage": job.stage,
        "status": job.status,
        "started_at": job.started_at,
        "finished_at": job.finished_at,
        "duration": job.duration,
        "web_url": job.web_url,
        "failure_reason": job.failure_reason,
        "allow_failure": job.allow_failure,
    }
    if job.status == "failed":
        entry["failure_message"] = f"Job failed: {job.failure_reason or 'Unknown reason'}"
    return entry


def pipeline_log_dir(config: AppConfig) -> Path:
    return config.work_dir / "threadwatch" / "pipeline-logs"


def run_pipeline_server(config: AppConfig) -> None:
    gateway = GitLabGateway(
        api_url=config.api_url, token=config.token, project_id=config.project_id
    )
    log_event(LOGGER, "pipeline_server_started", iid=config.iid)
    server = build_pipeline_server(gateway, iid=config.iid, log_dir=pipeline_log_dir(config))
    server.run(transport="stdio")
