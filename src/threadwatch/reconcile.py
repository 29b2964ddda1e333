from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
import logging
from typing import Protocol

from threadwatch.classifier import find_trigger_matches
from threadwatch.config import AppConfig
from threadwatch.models import Discussion, ReconciliationResult, ReviewUnit, ReviewUnitKind
from threadwatch.observability import log_event, log_warning_event
from threadwatch.triggers import AgentIdentity


LOGGER = logging.getLogger("threadwatch.reconcile")


class ReviewStateSource(Protocol):
    def list_discussions(self, kind: ReviewUnitKind, iid: int) -> tuple[Discussion, ...]: ...

    def get_review_unit(self, kind: ReviewUnitKind, iid: int) -> ReviewUnit: ...


@dataclass(frozen=True)
class ReviewStateFetched:
    discussions: tuple[Discussion, ...]
    unit: ReviewUnit


@dataclass(frozen=True)
class ReviewStateFetchFailed:
    error_type: str
    message: str

    def describe(self) -> str:
        return f"{self.error_type}: {self.message}"


ReviewStateFetch = ReviewStateFetched | ReviewStateFetchFailed


def reconcile(
    discussions: Sequence[Discussion],
    *,
    unit: ReviewUnit,
    trigger_phrase: str,
    identity: AgentIdentity,
    activation_label: str,
) -> ReconciliationResult:
    """Decide whether the agent should run for this review unit.

    Rules are evaluated in priority order and the first match wins: unanswered
    trigger comments, triggers that were all answered already, merge request
    assignment to the agent, the activation label, and finally nothing. A
    trigger counts as answered when its own discussion holds an agent note;
    agent replies elsewhere in the review unit do not suppress it.
    """
    matches = find_trigger_matches(discussions, trigger_phrase=trigger_phrase, identity=identity)
    new_triggers = tuple(match for match in matches if not match.has_agent_reply)

    if new_triggers:
        return ReconciliationResult(
            should_run=True,
            reason=f"Found {len(new_triggers)} new trigger comment(s)",
            trigger_kind="comment",
            new_triggers=new_triggers,
            has_prior_response=len(matches) > len(new_triggers),
        )

    if matches:
        return ReconciliationResult(
            should_run=False,
            reason="All trigger comments already have agent replies",
            trigger_kind="none",
            new_triggers=(),
            has_prior_response=True,
        )

    if unit.is_merge_request and any(identity.matches(name) for name in unit.assignees):
        return ReconciliationResult(
            should_run=True,
            reason="Agent is assigned to the merge request",
            trigger_kind="assignment",
        )

    if activation_label and activation_label in unit.labels:
        return ReconciliationResult(
            should_run=True,
            reason=f"Found activation label {activation_label!r}",
            trigger_kind="label",
        )

    return ReconciliationResult(should_run=False, reason="No trigger found", trigger_kind="none")


def fetch_review_state(source: ReviewStateSource, config: AppConfig) -> ReviewStateFetch:
    try:
        discussions = source.list_discussions(config.unit_kind, config.iid)
        unit = source.get_review_unit(config.unit_kind, config.iid)
    except Exception as exc:  # noqa: BLE001
        return ReviewStateFetchFailed(error_type=type(exc).__name__, message=str(exc))
    return ReviewStateFetched(discussions=discussions, unit=unit)


def check_trigger(source: ReviewStateSource, config: AppConfig) -> ReconciliationResult:
    fetched = fetch_review_state(source, config)
    if isinstance(fetched, ReviewStateFetchFailed):
        log_warning_event(
            LOGGER,
            "trigger_check_failed",
            kind=config.unit_kind,
            iid=config.iid,
            error_type=fetched.error_type,
            error=fetched.message,
        )
        return ReconciliationResult(
            should_run=False,
            reason=f"Error checking trigger: {fetched.describe()}",
            trigger_kind="none",
        )

    result = reconcile(
        fetched.discussions,
        unit=fetched.unit,
        trigger_phrase=config.trigger_phrase,
        identity=config.identity,
        activation_label=config.activation_label,
    )
    log_event(
        LOGGER,
        "trigger_check_completed",
        kind=config.unit_kind,
        iid=config.iid,
        discussion_count=len(fetched.discussions),
        should_run=result.should_run,
        trigger_kind=result.trigger_kind,
        new_trigger_count=len(result.new_triggers),
        has_prior_response=result.has_prior_response,
        reason=result.reason,
    )
    return result
