from __future__ import annotations

from dataclasses import dataclass
import json
import logging
from typing import cast
from urllib.parse import quote, urlencode, urlparse

from threadwatch.models import (
    CommitSummary,
    Discussion,
    MergeRequestChange,
    Note,
    NoteAuthor,
    PipelineJob,
    PipelineSummary,
    ReviewUnit,
    ReviewUnitKind,
)
from threadwatch.observability import log_event
from threadwatch.shell import run


LOGGER = logging.getLogger("threadwatch.gitlab_gateway")
_PAGE_SIZE = 100
_MAX_PAGES = 50


class GitLabApiError(RuntimeError):
    """A GitLab API call failed or returned an unexpected payload."""


@dataclass(frozen=True)
class GitLabGateway:
    api_url: str
    token: str
    project_id: str

    @property
    def host(self) -> str:
        return urlparse(self.api_url).netloc

    def list_discussions(self, kind: ReviewUnitKind, iid: int) -> tuple[Discussion, ...]:
        path = f"{self._unit_path(kind, iid)}/discussions"
        payload = self._api_json_pages(path)
        discussions: list[Discussion] = []
        for item in payload:
            item_obj = _as_object_dict(item)
            if item_obj is None:
                continue
            discussions.append(_parse_discussion(item_obj))
        log_event(
            LOGGER,
            "gitlab_read",
            endpoint="discussions",
            kind=kind,
            iid=iid,
            count=len(discussions),
            note_count=sum(len(discussion.notes) for discussion in discussions),
        )
        return tuple(discussions)

    def get_review_unit(self, kind: ReviewUnitKind, iid: int) -> ReviewUnit:
        payload_obj = _as_object_dict(self._api_json("GET", self._unit_path(kind, iid)))
        if payload_obj is None:
            raise GitLabApiError(f"Unexpected GitLab response: expected object for {kind}")
        unit = _parse_review_unit(payload_obj, kind=kind)
        log_event(LOGGER, "gitlab_read", endpoint=kind, iid=unit.iid)
        return unit

    def create_note(self, kind: ReviewUnitKind, iid: int, body: str) -> Note:
        path = f"{self._unit_path(kind, iid)}/notes"
        try:
            note = self._note_from_payload(self._api_json("POST", path, payload={"body": body}))
        except Exception as exc:  # noqa: BLE001
            log_event(
                LOGGER,
                "gitlab_note_create_failed",
                kind=kind,
                iid=iid,
                error_type=type(exc).__name__,
            )
            raise
        log_event(LOGGER, "gitlab_note_created", kind=kind, iid=iid, note_id=note.note_id)
        return note

    def create_discussion_reply(
        self, kind: ReviewUnitKind, iid: int, discussion_id: str, body: str
    ) -> Note:
        path = f"{self._unit_path(kind, iid)}/discussions/{quote(discussion_id, safe='')}/notes"
        try:
            note = self._note_from_payload(self._api_json("POST", path, payload={"body": body}))
        except Exception as exc:  # noqa: BLE001
            log_event(
                LOGGER,
                "gitlab_discussion_reply_failed",
                kind=kind,
                iid=iid,
                discussion_id=discussion_id,
                error_type=type(exc).__name__,
            )
            raise
        log_event(
            LOGGER,
            "gitlab_discussion_reply_created",
            kind=kind,
            iid=iid,
            discussion_id=discussion_id,
            note_id=note.note_id,
        )
        return note

    def edit_note(self, kind: ReviewUnitKind, iid: int, note_id: int, body: str) -> Note:
        path = f"{self._unit_path(kind, iid)}/notes/{note_id}"
        try:
            note = self._note_from_payload(self._api_json("PUT", path, payload={"body": body}))
        except Exception as exc:  # noqa: BLE001
            log_event(
                LOGGER,
                "gitlab_note_edit_failed",
                kind=kind,
                iid=iid,
                note_id=note_id,
                error_type=type(exc).__name__,
            )
            raise
        log_event(LOGGER, "gitlab_note_edited", kind=kind, iid=iid, note_id=note_id)
        return note

    def create_branch(self, branch: str, ref: str) -> None:
        path = f"{self._project_path()}/repository/branches"
        self._api_json("POST", path, payload={"branch": branch, "ref": ref})
        log_event(LOGGER, "gitlab_branch_created", branch=branch, ref=ref)

    def branch_exists(self, branch: str) -> bool:
        path = f"{self._project_path()}/repository/branches/{quote(branch, safe='')}"
        status_code, body = self._request("GET", path)
        if status_code == 404:
            return False
        _raise_for_status(status_code, body, path=path)
        return True

    def create_merge_request(
        self,
        *,
        source_branch: str,
        target_branch: str,
        title: str,
        description: str,
        labels: tuple[str, ...] = (),
    ) -> ReviewUnit:
        path = f"{self._project_path()}/merge_requests"
        payload: dict[str, object] = {
            "source_branch": source_branch,
            "target_branch": target_branch,
            "title": title,
            "description": description,
            "remove_source_branch": True,
        }
        if labels:
            payload["labels"] = ",".join(labels)
        payload_obj = _as_object_dict(self._api_json("POST", path, payload=payload))
        if payload_obj is None:
            raise GitLabApiError("Unexpected GitLab response: expected object for merge request")
        unit = _parse_review_unit(payload_obj, kind="merge_request")
        log_event(
            LOGGER,
            "gitlab_merge_request_created",
            iid=unit.iid,
            source_branch=source_branch,
            target_branch=target_branch,
        )
        return unit

    def list_merge_request_changes(self, iid: int) -> tuple[MergeRequestChange, ...]:
        path = f"{self._unit_path('merge_request', iid)}/diffs"
        changes: list[MergeRequestChange] = []
        for item in self._api_json_pages(path):
            item_obj = _as_object_dict(item)
            if item_obj is None:
                continue
            changes.append(
                MergeRequestChange(
                    old_path=_as_string(item_obj.get("old_path")),
                    new_path=_as_string(item_obj.get("new_path")),
                    new_file=item_obj.get("new_file") is True,
                    renamed_file=item_obj.get("renamed_file") is True,
                    deleted_file=item_obj.get("deleted_file") is True,
                )
            )
        log_event(
            LOGGER, "gitlab_read", endpoint="merge_request_diffs", iid=iid, count=len(changes)
        )
        return tuple(changes)

    def list_merge_request_commits(self, iid: int) -> tuple[CommitSummary, ...]:
        path = f"{self._unit_path('merge_request', iid)}/commits"
        commits: list[CommitSummary] = []
        for item in self._api_json_pages(path):
            item_obj = _as_object_dict(item)
            if item_obj is None:
                continue
            commits.append(
                CommitSummary(
                    short_id=_as_string(item_obj.get("short_id")),
                    title=_as_string(item_obj.get("title")),
                    author_name=_as_string(item_obj.get("author_name")),
                )
            )
        log_event(
            LOGGER, "gitlab_read", endpoint="merge_request_commits", iid=iid, count=len(commits)
        )
        return tuple(commits)

    def list_merge_request_pipelines(self, iid: int) -> tuple[PipelineSummary, ...]:
        path = f"{self._unit_path('merge_request', iid)}/pipelines"
        pipelines: list[PipelineSummary] = []
        for item in self._api_json_pages(path):
            item_obj = _as_object_dict(item)
            if item_obj is None:
                continue
            pipelines.append(
                PipelineSummary(
                    pipeline_id=_as_int(item_obj.get("id"), field="pipeline.id"),
                    status=_as_string(item_obj.get("status")),
                    ref=_as_string(item_obj.get("ref")),
                    sha=_as_string(item_obj.get("sha")),
                    web_url=_as_string(item_obj.get("web_url")),
                    created_at=_as_string(item_obj.get("created_at")),
                    updated_at=_as_string(item_obj.get("updated_at")),
                )
            )
        log_event(
            LOGGER,
            "gitlab_read",
            endpoint="merge_request_pipelines",
            iid=iid,
            count=len(pipelines),
        )
        return tuple(pipelines)

    def list_pipeline_jobs(self, pipeline_id: int) -> tuple[PipelineJob, ...]:
        path = f"{self._project_path()}/pipelines/{pipeline_id}/jobs"
        jobs: list[PipelineJob] = []
        for item in self._api_json_pages(path):
            item_obj = _as_object_dict(item)
            if item_obj is None:
                continue
            duration = item_obj.get("duration")
            jobs.append(
                PipelineJob(
                    job_id=_as_int(item_obj.get("id"), field="job.id"),
                    name=_as_string(item_obj.get("name")),
                    stage=_as_string(item_obj.get("stage")),
                    status=_as_string(item_obj.get("status")),
                    web_url=_as_string(item_obj.get("web_url")),
                    started_at=_as_optional_str(item_obj.get("started_at")),
                    finished_at=_as_optional_str(item_obj.get("finished_at")),
                    duration=(
                        float(duration)
                        if isinstance(duration, (int, float)) and not isinstance(duration, bool)
                        else None
                    ),
                    failure_reason=_as_optional_str(item_obj.get("failure_reason")),
                    allow_failure=item_obj.get("allow_failure") is True,
                )
            )
        log_event(
            LOGGER,
            "gitlab_read",
            endpoint="pipeline_jobs",
            pipeline_id=pipeline_id,
            count=len(jobs),
        )
        return tuple(jobs)

    def get_job_trace(self, job_id: int) -> str:
        path = f"{self._project_path()}/jobs/{job_id}/trace"
        status_code, body = self._request("GET", path)
        _raise_for_status(status_code, body, path=path)
        log_event(LOGGER, "gitlab_read", endpoint="job_trace", job_id=job_id, length=len(body))
        return body

    def _project_path(self) -> str:
        return f"projects/{quote(self.project_id, safe='')}"

    def _unit_path(self, kind: ReviewUnitKind, iid: int) -> str:
        segment = "merge_requests" if kind == "merge_request" else "issues"
        return f"{self._project_path()}/{segment}/{iid}"

    def _note_from_payload(self, payload: object) -> Note:
        payload_obj = _as_object_dict(payload)
        if payload_obj is None:
            raise GitLabApiError("Unexpected GitLab response: expected object for note")
        return _parse_note(payload_obj)

    def _api_json_pages(self, path: str) -> list[object]:
        items: list[object] = []
        for page in range(1, _MAX_PAGES + 1):
            query = urlencode({"per_page": str(_PAGE_SIZE), "page": str(page)})
            payload = self._api_json("GET", f"{path}?{query}")
            if not isinstance(payload, list):
                raise GitLabApiError(f"Unexpected GitLab response: expected list for {path}")
            items.extend(payload)
            if len(payload) < _PAGE_SIZE:
                break
        return items

    def _api_json(self, method: str, path: str, payload: dict[str, object] | None = None) -> object:
        status_code, body = self._request(method, path, payload=payload)
        _raise_for_status(status_code, body, path=path)
        try:
            return json.loads(body)
        except json.JSONDecodeError as exc:
            raise GitLabApiError(f"GitLab returned invalid JSON for {path}: {exc}") from exc

    def _request(
        self, method: str, path: str, payload: dict[str, object] | None = None
    ) -> tuple[int, str]:
        method_upper = method.upper()
        cmd = ["glab", "api", "--hostname", self.host, "--method", method_upper, "--include"]
        stdin_payload: str | None = None
        if payload is not None:
            cmd.extend(["--header", "Content-Type: application/json", "--input", "-"])
            stdin_payload = json.dumps(payload)
        cmd.append(path)

        raw = run(
            cmd,
            input_text=stdin_payload,
            check=False,
            env={"GITLAB_TOKEN": self.token, "GITLAB_HOST": self.host},
        )
        try:
            status_code, _headers, body = _parse_http_response(raw)
        except GitLabApiError as exc:
            log_event(
                LOGGER,
                "gitlab_request_failed",
                method=method_upper,
                path=path,
                error=str(exc),
                raw_preview=_preview_for_log(raw),
            )
            raise
        return status_code, body


def _raise_for_status(status_code: int, body: str, *, path: str) -> None:
    if 200 <= status_code < 300:
        return
    message = body.strip() or "<empty>"
    log_event(
        LOGGER,
        "gitlab_request_failed",
        path=path,
        status_code=status_code,
        raw_preview=_preview_for_log(message),
    )
    raise GitLabApiError(f"GitLab API request failed with status {status_code}: {message}")


def _parse_discussion(item_obj: dict[str, object]) -> Discussion:
    notes_payload = item_obj.get("notes")
    raw_notes: list[dict[str, object]] = []
    if isinstance(notes_payload, list):
        for entry in notes_payload:
            entry_obj = _as_object_dict(entry)
            if entry_obj is not None:
                raw_notes.append(entry_obj)

    resolved_raw = item_obj.get("resolved")
    if isinstance(resolved_raw, bool):
        resolved = resolved_raw
    else:
        # GitLab reports resolution per resolvable note.
        resolvable = [entry for entry in raw_notes if entry.get("resolvable") is True]
        resolved = bool(resolvable) and all(entry.get("resolved") is True for entry in resolvable)

    return Discussion(
        discussion_id=_as_string(item_obj.get("id")),
        notes=tuple(_parse_note(entry) for entry in raw_notes),
        resolved=resolved,
        individual_note=item_obj.get("individual_note") is True,
    )


def _parse_note(item_obj: dict[str, object]) -> Note:
    author_obj = _as_object_dict(item_obj.get("author"))
    author: NoteAuthor | None = None
    if author_obj is not None:
        username = author_obj.get("username")
        if isinstance(username, str) and username.strip():
            author = NoteAuthor(username=username.strip())
    body = item_obj.get("body")
    return Note(
        note_id=_as_int(item_obj.get("id"), field="note.id"),
        author=author,
        body=body if isinstance(body, str) else None,
        created_at=_as_string(item_obj.get("created_at")),
        system=item_obj.get("system") is True,
    )


def _parse_review_unit(payload_obj: dict[str, object], *, kind: ReviewUnitKind) -> ReviewUnit:
    label_names: list[str] = []
    labels_obj = payload_obj.get("labels")
    if isinstance(labels_obj, list):
        for entry in labels_obj:
            if isinstance(entry, str):
                label_names.append(entry)
            else:
                entry_obj = _as_object_dict(entry)
                if entry_obj is not None and isinstance(entry_obj.get("name"), str):
                    label_names.append(cast(str, entry_obj["name"]))

    assignees: list[str] = []
    assignees_obj = payload_obj.get("assignees")
    candidates = list(assignees_obj) if isinstance(assignees_obj, list) else []
    candidates.append(payload_obj.get("assignee"))
    for entry in candidates:
        username = _username_of(entry)
        if username and username not in assignees:
            assignees.append(username)

    return ReviewUnit(
        kind=kind,
        iid=_as_int(payload_obj.get("iid"), field="iid"),
        title=_as_string(payload_obj.get("title")),
        description=_as_string(payload_obj.get("description")),
        state=_as_string(payload_obj.get("state")),
        web_url=_as_string(payload_obj.get("web_url")),
        author_username=_username_of(payload_obj.get("author")) or "",
        labels=tuple(label_names),
        assignees=tuple(assignees),
        source_branch=_as_optional_str(payload_obj.get("source_branch")),
        target_branch=_as_optional_str(payload_obj.get("target_branch")),
    )


def _username_of(value: object) -> str | None:
    value_obj = _as_object_dict(value)
    if value_obj is None:
        return None
    username = value_obj.get("username")
    if not isinstance(username, str) or not username.strip():
        return None
    return username.strip()


def _parse_http_response(raw: str) -> tuple[int, dict[str, str], str]:
    normalized = raw.replace("\r\n", "\n")
    lines = normalized.split("\n")

    status_line_index = -1
    for index, line in enumerate(lines):
        if line.startswith("HTTP/"):
            status_line_index = index

    if status_line_index < 0:
        raise GitLabApiError("Unexpected GitLab response: missing HTTP status line")

    status_line = lines[status_line_index]
    status_parts = status_line.split(" ", 2)
    if len(status_parts) < 2:
        raise GitLabApiError(f"Unexpected GitLab response status line: {status_line!r}")

    try:
        status_code = int(status_parts[1])
    except ValueError as exc:
        raise GitLabApiError(f"Unexpected GitLab response status line: {status_line!r}") from exc

    headers: dict[str, str] = {}
    body_start = len(lines)
    for index in range(status_line_index + 1, len(lines)):
        line = lines[index]
        if line == "":
            body_start = index + 1
            break
        if ":" not in line:
            continue
        key, value = line.split(":", 1)
        headers[key.strip().lower()] = value.strip()

    body = "\n".join(lines[body_start:])
    return status_code, headers, body


def _preview_for_log(text: str, *, limit: int = 240) -> str:
    compact = text.replace("\n", "\\n").strip()
    if not compact:
        return "<empty>"
    if len(compact) <= limit:
        return compact
    return f"{compact[:limit]}..."


def _as_object_dict(value: object) -> dict[str, object] | None:
    if not isinstance(value, dict):
        return None
    if not all(isinstance(key, str) for key in value.keys()):
        return None
    return cast(dict[str, object], value)


def _as_string(value: object) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return str(value)


def _as_optional_str(value: object) -> str | None:
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return str(value)


def _as_int(value: object, *, field: str) -> int:
    if isinstance(value, bool):
        raise GitLabApiError(f"Unexpected GitLab response type for {field}")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value)
        except ValueError as exc:
            raise GitLabApiError(f"Unexpected GitLab response value for {field}: {value}") from exc
    raise GitLabApiError(f"Unexpected GitLab response type for {field}")
