from __future__ import annotations

from dataclasses import dataclass
from typing import Literal


ReviewUnitKind = Literal["merge_request", "issue"]
TriggerKind = Literal["comment", "assignment", "label", "none"]


@dataclass(frozen=True)
class NoteAuthor:
    username: str


@dataclass(frozen=True)
class Note:
    note_id: int
    author: NoteAuthor | None
    body: str | None
    created_at: str
    system: bool = False

    @property
    def author_username(self) -> str | None:
        if self.author is None:
            return None
        return self.author.username


@dataclass(frozen=True)
class Discussion:
    discussion_id: str
    notes: tuple[Note, ...]
    resolved: bool
    individual_note: bool = False


@dataclass(frozen=True)
class ReviewUnit:
    kind: ReviewUnitKind
    iid: int
    title: str
    description: str
    state: str
    web_url: str
    author_username: str
    labels: tuple[str, ...]
    assignees: tuple[str, ...]
    source_branch: str | None = None
    target_branch: str | None = None

    @property
    def is_merge_request(self) -> bool:
        return self.kind == "merge_request"


@dataclass(frozen=True)
class MergeRequestChange:
    old_path: str
    new_path: str
    new_file: bool
    renamed_file: bool
    deleted_file: bool


@dataclass(frozen=True)
class CommitSummary:
    short_id: str
    title: str
    author_name: str


@dataclass(frozen=True)
class TriggerMatch:
    note: Note
    discussion_id: str
    has_agent_reply: bool


@dataclass(frozen=True)
class CategorizedComments:
    trigger_comments: tuple[Note, ...]
    context_comments: tuple[Note, ...]
    resolved_comments: tuple[Note, ...]
    agent_replies: tuple[Note, ...]


@dataclass(frozen=True)
class ReconciliationResult:
    should_run: bool
    reason: str
    trigger_kind: TriggerKind
    new_triggers: tuple[TriggerMatch, ...] = ()
    has_prior_response: bool = False


@dataclass(frozen=True)
class PipelineSummary:
    pipeline_id: int
    status: str
    ref: str
    sha: str
    web_url: str
    created_at: str
    updated_at: str


@dataclass(frozen=True)
class PipelineJob:
    job_id: int
    name: str
    stage: str
    status: str
    web_url: str
    started_at: str | None = None
    finished_at: str | None = None
    duration: float | None = None
    failure_reason: str | None = None
    allow_failure: bool = False
