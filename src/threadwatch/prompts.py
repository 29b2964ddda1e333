from __future__ import annotations

from threadwatch.agent_adapter import PIPELINE_TOOL_NAMES, PROGRESS_TOOL_ID
from threadwatch.config import AppConfig
from threadwatch.models import (
    CategorizedComments,
    CommitSummary,
    MergeRequestChange,
    Note,
    ReviewUnit,
)


def _render_notes(notes: tuple[Note, ...], *, label_agent: bool = False) -> str:
    blocks: list[str] = []
    for note in notes:
        if note.system:
            continue
        author = "Claude" if label_agent else f"@{note.author_username or 'unknown'}"
        blocks.append(f"**{author}** ({note.created_at or 'unknown time'}):\n{note.body or ''}")
    return "\n\n".join(blocks)


def _change_status(change: MergeRequestChange) -> str:
    if change.new_file:
        return "added"
    if change.deleted_file:
        return "deleted"
    if change.renamed_file:
        return f"renamed from {change.old_path}"
    return "modified"


def _merge_request_url(config: AppConfig) -> str:
    return (
        f"{config.web_url}/-/merge_requests/new"
        "?merge_request[source_branch]=<branch-name>&merge_request[target_branch]=<target>"
    )


def build_git_workflow_system_prompt(config: AppConfig) -> str:
    return f"""
Git workflow requirements (mandatory):

1. Branches
   - Create a new branch for any code change. Never commit to an existing branch.
   - Run `git branch --show-current` before every commit.
   - Issues: `<type>/issue-<number>-<description>`.
   - Merge requests: `<type>/mr-<number>-<description>`.
   - Common types: fix, feat, docs, chore, refactor, test, perf.

2. Commits
   - Use conventional commits: `<type>(<scope>): <description>`.
   - Reference the issue or merge request: `fixes #123` or `relates to !456`.

3. Delivery
   - Push the branch and include a merge request link in your final update:
     [Create MR]({_merge_request_url(config)})

4. Communication
   - Report progress only through the {PROGRESS_TOOL_ID} tool.
   - Each call replaces the whole progress text, so always send the full current status.
""".strip()


def build_review_prompt(
    *,
    config: AppConfig,
    unit: ReviewUnit,
    comments: CategorizedComments,
    changes: tuple[MergeRequestChange, ...] = (),
    commits: tuple[CommitSummary, ...] = (),
) -> str:
    project = config.project_path or config.project_id
    entity = "merge request" if unit.is_merge_request else "issue"
    sections: list[str] = [
        f"""
## GitLab Integration Instructions

You are Claude running in a GitLab CI/CD pipeline for project {project}.
You have been asked to help with a GitLab {entity}.
You can read and modify files in the repository checkout.

All progress updates must go through the `{PROGRESS_TOOL_ID}` tool. Do not use files or any
other channel to communicate. Every call replaces the previous progress text.
""".strip()
    ]

    if comments.trigger_comments:
        sections.append(
            "### Your Task\n\n"
            "Respond to the questions listed under \"Questions for Claude\" below, using the "
            "unresolved discussion context where it helps. Follow the git workflow rules if you "
            "change code."
        )

    if unit.is_merge_request:
        header = [
            f"## Merge Request !{unit.iid}: {unit.title}",
            "",
            f"**Author:** @{unit.author_username or 'unknown'}",
            f"**Source Branch:** {unit.source_branch or 'unknown'}",
            f"**Target Branch:** {unit.target_branch or 'unknown'}",
            f"**State:** {unit.state}",
            f"**URL:** {unit.web_url}",
        ]
    else:
        header = [
            f"## Issue #{unit.iid}: {unit.title}",
            "",
            f"**Author:** @{unit.author_username or 'unknown'}",
            f"**State:** {unit.state}",
            f"**Labels:** {', '.join(unit.labels) or 'none'}",
            f"**URL:** {unit.web_url}",
        ]
    sections.append("\n".join(header))

    if unit.description.strip():
        sections.append(f"### Description\n\n{unit.description.strip()}")

    if commits:
        commit_lines = "\n".join(
            f"- `{commit.short_id}` {commit.title} by {commit.author_name}" for commit in commits
        )
        sections.append(f"### Commits ({len(commits)})\n\n{commit_lines}")

    if changes:
        change_lines = "\n".join(
            f"- {change.new_path} ({_change_status(change)})" for change in changes
        )
        sections.append(f"### Changed Files ({len(changes)})\n\n{change_lines}")

    trigger_text = _render_notes(comments.trigger_comments)
    if trigger_text:
        sections.append(
            "### Questions for Claude\n\n"
            "_These comments asked for Claude's attention:_\n\n"
            f"{trigger_text}"
        )

    context_text = _render_notes(comments.context_comments)
    if context_text:
        sections.append(
            "### Discussion Context\n\n"
            "_Unresolved comments that may be relevant:_\n\n"
            f"{context_text}"
        )

    reply_text = _render_notes(comments.agent_replies, label_agent=True)
    if reply_text:
        sections.append(
            "### Previous Claude Responses\n\n"
            "_Your earlier replies on this review unit:_\n\n"
            f"{reply_text}"
        )

    ci_lines = [
        "### CI/CD Context",
        "",
        f"- **Job:** {config.job_url or 'unknown'}",
        f"- **Pipeline:** {config.pipeline_id or 'unknown'}",
        f"- **Triggered by:** @{config.trigger_user or 'unknown'}",
        f"- **Current branch:** {config.working_branch}",
    ]
    if unit.is_merge_request:
        tool_names = ", ".join(f"`{name}`" for name in PIPELINE_TOOL_NAMES)
        ci_lines.append(f"- **Pipeline tools:** {tool_names} (CI results for this merge request)")
    sections.append("\n".join(ci_lines))
    return "\n\n".join(sections)
