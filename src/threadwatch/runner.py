from __future__ import annotations

from collections.abc import Callable
import logging
from pathlib import Path
import time
from typing import Protocol

from threadwatch.agent_adapter import (
    AgentAdapter,
    AgentRunRequest,
    AgentRunResult,
    AgentTimeoutError,
)
from threadwatch.classifier import categorize_comments
from threadwatch.config import AppConfig
from threadwatch.formatter import (
    StatusKind,
    format_duration,
    render_initial_comment,
    render_status_update,
)
from threadwatch.models import (
    CommitSummary,
    Discussion,
    MergeRequestChange,
    Note,
    ReconciliationResult,
    ReviewUnit,
    ReviewUnitKind,
)
from threadwatch.observability import log_event, log_warning_event
from threadwatch.progress import ProgressChannel, ProgressRelay, ProgressRelayError, TrackingNote
from threadwatch.prompts import build_git_workflow_system_prompt, build_review_prompt
from threadwatch.reconcile import check_trigger


LOGGER = logging.getLogger("threadwatch.runner")

_PROGRESS_MESSAGE = "Claude is working on this request."


class InvocationGateway(Protocol):
    def list_discussions(self, kind: ReviewUnitKind, iid: int) -> tuple[Discussion, ...]: ...

    def get_review_unit(self, kind: ReviewUnitKind, iid: int) -> ReviewUnit: ...

    def create_note(self, kind: ReviewUnitKind, iid: int, body: str) -> Note: ...

    def create_discussion_reply(
        self, kind: ReviewUnitKind, iid: int, discussion_id: str, body: str
    ) -> Note: ...

    def edit_note(self, kind: ReviewUnitKind, iid: int, note_id: int, body: str) -> Note: ...

    def list_merge_request_changes(self, iid: int) -> tuple[MergeRequestChange, ...]: ...

    def list_merge_request_commits(self, iid: int) -> tuple[CommitSummary, ...]: ...


class Workspace(Protocol):
    cwd: Path

    def configure_identity(self, name: str, email: str) -> None: ...

    def checkout(self, branch: str) -> None: ...


class InvocationRunner:
    """One bot invocation: trigger check, tracking note, agent run, final status.

    Once the tracking note exists every outcome ends in a final status written
    through ``TrackingNote.finalize``, after the relay has been stopped.
    """

    def __init__(
        self,
        config: AppConfig,
        *,
        gateway: InvocationGateway,
        agent: AgentAdapter,
        git: Workspace,
        clock: Callable[[], float] = time.monotonic,
        relay_stop_timeout_seconds: float = 30.0,
    ) -> None:
        self._config = config
        self._gateway = gateway
        self._agent = agent
        self._git = git
        self._clock = clock
        self._relay_stop_timeout_seconds = relay_stop_timeout_seconds

    def run(self) -> int:
        result = check_trigger(self._gateway, self._config)
        if not result.should_run:
            log_event(LOGGER, "invocation_skipped", reason=result.reason)
            return 0

        try:
            tracking = self._create_tracking_note(result)
        except Exception as exc:  # noqa: BLE001
            log_warning_event(
                LOGGER,
                "invocation_failed",
                stage="tracking_note",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return 1

        started = self._clock()
        channel = ProgressChannel(self._config.progress_path)

        def publish(content: str) -> None:
            tracking.update(
                render_status_update(
                    "progress",
                    _PROGRESS_MESSAGE,
                    config=self._config,
                    duration=format_duration(self._clock() - started),
                    progress=content,
                )
            )

        relay = ProgressRelay(
            channel=channel,
            publish=publish,
            poll_interval_seconds=self._config.progress_poll_seconds,
        )

        status: StatusKind = "error"
        agent_result: AgentRunResult | None = None
        try:
            channel.clear()
            request = self._prepare(channel)
            relay.start()
            agent_result = self._agent.run(request)
            status = "success"
            message = "Claude finished working on this request."
        except AgentTimeoutError as exc:
            status = "timed_out"
            message = str(exc)
        except KeyboardInterrupt:
            message = "The invocation was interrupted before the agent finished."
        except Exception as exc:  # noqa: BLE001
            message = f"{type(exc).__name__}: {exc}"
        finally:
            final_progress = self._shutdown_relay(relay, channel)

        if status != "success":
            log_warning_event(
                LOGGER,
                "invocation_failed",
                stage="agent",
                status=status,
                error=message,
            )
        if final_progress is None and agent_result is not None:
            final_progress = agent_result.final_message

        body = render_status_update(
            status,
            message,
            config=self._config,
            duration=format_duration(self._clock() - started),
            progress=final_progress,
        )
        try:
            tracking.finalize(body)
        except Exception as exc:  # noqa: BLE001
            log_warning_event(
                LOGGER,
                "tracking_note_finalize_failed",
                note_id=tracking.note_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return 1
        return 0 if status == "success" else 1

    def _create_tracking_note(self, result: ReconciliationResult) -> TrackingNote:
        kind = self._config.unit_kind
        iid = self._config.iid
        body = render_initial_comment(self._config)
        if result.trigger_kind == "comment" and result.new_triggers:
            discussion_id = result.new_triggers[0].discussion_id
            note = self._gateway.create_discussion_reply(kind, iid, discussion_id, body)
        else:
            discussion_id = None
            note = self._gateway.create_note(kind, iid, body)
        log_event(
            LOGGER,
            "tracking_note_created",
            kind=kind,
            iid=iid,
            note_id=note.note_id,
            discussion_id=discussion_id,
            trigger_kind=result.trigger_kind,
        )
        return TrackingNote(self._gateway, kind=kind, iid=iid, note_id=note.note_id)

    def _prepare(self, channel: ProgressChannel) -> AgentRunRequest:
        config = self._config
        kind = config.unit_kind
        unit = self._gateway.get_review_unit(kind, config.iid)
        discussions = self._gateway.list_discussions(kind, config.iid)
        comments = categorize_comments(
            discussions,
            trigger_phrase=config.trigger_phrase,
            identity=config.identity,
        )
        changes: tuple[MergeRequestChange, ...] = ()
        commits: tuple[CommitSummary, ...] = ()
        if unit.is_merge_request:
            changes = self._gateway.list_merge_request_changes(config.iid)
            commits = self._gateway.list_merge_request_commits(config.iid)

        self._git.configure_identity(config.git_user_name, config.git_user_email)
        self._git.checkout(config.working_branch)

        prompt = build_review_prompt(
            config=config,
            unit=unit,
            comments=comments,
            changes=changes,
            commits=commits,
        )
        config.prompt_dir.mkdir(parents=True, exist_ok=True)
        prompt_path = config.prompt_dir / "prompt.txt"
        prompt_path.write_text(prompt, encoding="utf-8")
        log_event(
            LOGGER,
            "prompt_written",
            path=str(prompt_path),
            length=len(prompt),
            trigger_count=len(comments.trigger_comments),
            context_count=len(comments.context_comments),
        )
        return AgentRunRequest(
            prompt=prompt,
            append_system_prompt=build_git_workflow_system_prompt(config),
            progress_channel_path=channel.path,
            cwd=self._git.cwd,
            pipeline_tools=unit.is_merge_request,
        )

    def _shutdown_relay(self, relay: ProgressRelay, channel: ProgressChannel) -> str | None:
        try:
            relay.stop(timeout=self._relay_stop_timeout_seconds)
        except ProgressRelayError as exc:
            log_warning_event(LOGGER, "progress_relay_stop_failed", error=str(exc))
        content = channel.read()
        try:
            channel.clear()
        except OSError as exc:
            log_warning_event(
                LOGGER,
                "progress_channel_clear_failed",
                channel=str(channel.path),
                error_type=type(exc).__name__,
                error=str(exc),
            )
        if content is None or not content.strip():
            return None
        return content
