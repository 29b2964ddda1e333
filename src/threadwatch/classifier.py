from __future__ import annotations

from collections.abc import Iterable
import logging

from threadwatch.models import CategorizedComments, Discussion, Note, TriggerMatch
from threadwatch.observability import log_event
from threadwatch.triggers import AgentIdentity, contains_trigger, is_agent_note


LOGGER = logging.getLogger("threadwatch.classifier")


def categorize_comments(
    discussions: Iterable[Discussion],
    *,
    trigger_phrase: str,
    identity: AgentIdentity,
) -> CategorizedComments:
    """Partition every note of a review unit into four disjoint categories.

    Agent notes always land in ``agent_replies``. Every other note lands in
    exactly one of trigger, resolved or context, checked in that order, so a
    trigger inside a resolved discussion is still a trigger. Notes missing an
    author or body are treated as non-agent and non-trigger and are placed by
    the resolution state of their discussion alone.
    """
    trigger_comments: list[Note] = []
    context_comments: list[Note] = []
    resolved_comments: list[Note] = []
    agent_replies: list[Note] = []
    discussion_count = 0

    for discussion in discussions:
        discussion_count += 1
        agent_flags = [is_agent_note(note, identity) for note in discussion.notes]
        for note, is_agent in zip(discussion.notes, agent_flags):
            if is_agent:
                agent_replies.append(note)

        for note, is_agent in zip(discussion.notes, agent_flags):
            if is_agent:
                continue
            if _is_trigger_candidate(note) and contains_trigger(note.body, trigger_phrase):
                trigger_comments.append(note)
            elif discussion.resolved:
                resolved_comments.append(note)
            else:
                context_comments.append(note)

    categorized = CategorizedComments(
        trigger_comments=tuple(trigger_comments),
        context_comments=tuple(context_comments),
        resolved_comments=tuple(resolved_comments),
        agent_replies=tuple(agent_replies),
    )
    log_event(
        LOGGER,
        "comments_categorized",
        discussion_count=discussion_count,
        trigger_count=len(categorized.trigger_comments),
        context_count=len(categorized.context_comments),
        resolved_count=len(categorized.resolved_comments),
        agent_reply_count=len(categorized.agent_replies),
    )
    return categorized


def find_trigger_matches(
    discussions: Iterable[Discussion],
    *,
    trigger_phrase: str,
    identity: AgentIdentity,
) -> tuple[TriggerMatch, ...]:
    # has_agent_reply is scoped to the discussion holding the trigger, unlike
    # categorize_comments which reports agent replies for the whole review unit.
    matches: list[TriggerMatch] = []
    for discussion in discussions:
        has_agent_reply = any(is_agent_note(note, identity) for note in discussion.notes)
        for note in discussion.notes:
            if is_agent_note(note, identity) or not _is_trigger_candidate(note):
                continue
            if not contains_trigger(note.body, trigger_phrase):
                continue
            matches.append(
                TriggerMatch(
                    note=note,
                    discussion_id=discussion.discussion_id,
                    has_agent_reply=has_agent_reply,
                )
            )
    return tuple(matches)


def _is_trigger_candidate(note: Note) -> bool:
    # Notes missing an author or body are malformed and never trigger a run.
    return note.author is not None and note.body is not None
