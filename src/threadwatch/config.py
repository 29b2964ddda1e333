from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
import re
from urllib.parse import urlparse

from threadwatch.models import ReviewUnitKind
from threadwatch.triggers import (
    DEFAULT_AGENT_IDENTITY_PATTERN,
    DEFAULT_TRIGGER_PHRASE,
    AgentIdentity,
)


DEFAULT_API_URL = "https://gitlab.com/api/v4"
DEFAULT_ACTIVATION_LABEL = "claude"
DEFAULT_ALLOWED_TOOLS: tuple[str, ...] = (
    "Edit",
    "MultiEdit",
    "Glob",
    "Grep",
    "LS",
    "Read",
    "Write",
    "Bash",
    "TodoWrite",
)
DEFAULT_DISALLOWED_TOOLS: tuple[str, ...] = ("WebSearch", "WebFetch")


@dataclass(frozen=True)
class AgentConfig:
    model: str | None
    max_turns: int | None
    timeout_minutes: int
    allowed_tools: tuple[str, ...]
    disallowed_tools: tuple[str, ...]

    @property
    def timeout_seconds(self) -> float:
        return float(self.timeout_minutes * 60)


@dataclass(frozen=True)
class AppConfig:
    project_id: str
    project_path: str
    web_url: str
    api_url: str
    token: str
    is_merge_request: bool
    iid: int
    trigger_phrase: str
    agent_identity_pattern: str
    activation_label: str
    trigger_user: str
    default_branch: str
    source_branch: str | None
    target_branch: str | None
    job_url: str
    pipeline_id: str
    pipeline_url: str
    work_dir: Path
    progress_poll_seconds: float
    git_user_name: str
    git_user_email: str
    agent: AgentConfig

    @property
    def unit_kind(self) -> ReviewUnitKind:
        return "merge_request" if self.is_merge_request else "issue"

    @property
    def identity(self) -> AgentIdentity:
        return AgentIdentity(self.agent_identity_pattern)

    @property
    def api_host(self) -> str:
        return urlparse(self.api_url).netloc

    @property
    def progress_path(self) -> Path:
        return _progress_path_under(self.work_dir)

    @property
    def prompt_dir(self) -> Path:
        return self.work_dir / "threadwatch" / "prompts"

    @property
    def working_branch(self) -> str:
        if self.is_merge_request and self.source_branch:
            return self.source_branch
        return self.default_branch


class ConfigError(ValueError):
    pass


def load_config(environ: Mapping[str, str]) -> AppConfig:
    """Build the invocation config from GitLab CI variables.

    Raises ConfigError before anything touches the remote thread.
    """
    merge_request_iid = _first(environ, "CI_MERGE_REQUEST_IID")
    is_merge_request = merge_request_iid is not None
    raw_iid = merge_request_iid if is_merge_request else _first(environ, "CI_ISSUE_IID")
    if raw_iid is None:
        raise ConfigError(
            "No merge request or issue IID found. Set CI_MERGE_REQUEST_IID or CI_ISSUE_IID."
        )
    iid_key = "CI_MERGE_REQUEST_IID" if is_merge_request else "CI_ISSUE_IID"
    iid = _parse_positive_int(raw_iid, key=iid_key)

    token = _first(environ, "GITLAB_TOKEN", "THREADWATCH_BOT_TOKEN", "CI_JOB_TOKEN")
    if token is None:
        raise ConfigError(
            "No GitLab token found. Set GITLAB_TOKEN or THREADWATCH_BOT_TOKEN in CI/CD variables."
        )

    project_id = _first(environ, "CI_PROJECT_ID")
    if project_id is None:
        raise ConfigError("CI_PROJECT_ID is required and must be a non-empty string")

    api_url = (_first(environ, "CI_API_V4_URL") or DEFAULT_API_URL).rstrip("/")
    api_host = urlparse(api_url).netloc
    if not api_host:
        raise ConfigError(f"CI_API_V4_URL must be an absolute URL, got {api_url!r}")

    trigger_phrase = _first(environ, "THREADWATCH_TRIGGER_PHRASE") or DEFAULT_TRIGGER_PHRASE
    identity_pattern = (
        _first(environ, "THREADWATCH_AGENT_IDENTITY") or DEFAULT_AGENT_IDENTITY_PATTERN
    )
    try:
        re.compile(identity_pattern)
    except re.error as exc:
        raise ConfigError(
            f"THREADWATCH_AGENT_IDENTITY is not a valid regular expression: {exc}"
        ) from exc

    project_url = _first(environ, "CI_PROJECT_URL") or ""
    return AppConfig(
        project_id=project_id,
        project_path=_first(environ, "CI_PROJECT_PATH") or "",
        web_url=project_url,
        api_url=api_url,
        token=token,
        is_merge_request=is_merge_request,
        iid=iid,
        trigger_phrase=trigger_phrase,
        agent_identity_pattern=identity_pattern,
        activation_label=_first(environ, "THREADWATCH_ACTIVATION_LABEL")
        or DEFAULT_ACTIVATION_LABEL,
        trigger_user=_first(environ, "GITLAB_USER_LOGIN", "CI_COMMIT_AUTHOR") or "",
        default_branch=_first(environ, "CI_DEFAULT_BRANCH") or "main",
        source_branch=_first(environ, "CI_MERGE_REQUEST_SOURCE_BRANCH_NAME"),
        target_branch=_first(environ, "CI_MERGE_REQUEST_TARGET_BRANCH_NAME"),
        job_url=_first(environ, "CI_JOB_URL") or "",
        pipeline_id=_first(environ, "CI_PIPELINE_ID") or "",
        pipeline_url=_first(environ, "CI_PIPELINE_URL") or "",
        work_dir=Path(_first(environ, "RUNNER_TEMP") or "/tmp"),
        progress_poll_seconds=_positive_float_with_default(
            environ, "THREADWATCH_PROGRESS_POLL_SECONDS", 2.0
        ),
        git_user_name=_first(environ, "THREADWATCH_GIT_USER_NAME") or "Claude Bot",
        git_user_email=_first(environ, "THREADWATCH_GIT_USER_EMAIL")
        or f"claude-bot@{api_host}",
        agent=AgentConfig(
            model=_first(environ, "THREADWATCH_AGENT_MODEL"),
            max_turns=_optional_positive_int(environ, "THREADWATCH_AGENT_MAX_TURNS"),
            timeout_minutes=_optional_positive_int(environ, "THREADWATCH_AGENT_TIMEOUT_MINUTES")
            or 30,
            allowed_tools=_csv_with_default(
                environ, "THREADWATCH_ALLOWED_TOOLS", DEFAULT_ALLOWED_TOOLS
            ),
            disallowed_tools=_csv_with_default(
                environ, "THREADWATCH_DISALLOWED_TOOLS", DEFAULT_DISALLOWED_TOOLS
            ),
        ),
    )


def _first(environ: Mapping[str, str], *keys: str) -> str | None:
    for key in keys:
        value = environ.get(key)
        if value is not None and value.strip():
            return value.strip()
    return None


def _parse_positive_int(raw: str, *, key: str) -> int:
    try:
        value = int(raw)
    except ValueError as exc:
        raise ConfigError(f"{key} must be an integer, got {raw!r}") from exc
    if value < 1:
        raise ConfigError(f"{key} must be >= 1")
    return value


def _optional_positive_int(environ: Mapping[str, str], key: str) -> int | None:
    raw = _first(environ, key)
    if raw is None:
        return None
    return _parse_positive_int(raw, key=key)


def _positive_float_with_default(environ: Mapping[str, str], key: str, default: float) -> float:
    raw = _first(environ, key)
    if raw is None:
        return default
    try:
        value = float(raw)
    except ValueError as exc:
        raise ConfigError(f"{key} must be a number, got {raw!r}") from exc
    if value <= 0:
        raise ConfigError(f"{key} must be > 0")
    return value


def _csv_with_default(
    environ: Mapping[str, str], key: str, default: tuple[str, ...]
) -> tuple[str, ...]:
    raw = _first(environ, key)
    if raw is None:
        return default
    return tuple(item.strip() for item in raw.split(",") if item.strip())


def resolve_progress_path(environ: Mapping[str, str]) -> Path:
    explicit = _first(environ, "THREADWATCH_PROGRESS_PATH")
    if explicit is not None:
        return Path(explicit)
    return _progress_path_under(Path(_first(environ, "RUNNER_TEMP") or "/tmp"))


def _progress_path_under(work_dir: Path) -> Path:
    return work_dir / "threadwatch" / "progress.md"
