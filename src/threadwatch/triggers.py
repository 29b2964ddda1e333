from __future__ import annotations

from dataclasses import dataclass, field
import re

from threadwatch.models import Note


DEFAULT_TRIGGER_PHRASE = "@claude"
DEFAULT_AGENT_IDENTITY_PATTERN = r"claude[- ]?bot"


@dataclass(frozen=True)
class AgentIdentity:
    """Recognizes notes and assignees that belong to the agent's bot account."""

    pattern: str = DEFAULT_AGENT_IDENTITY_PATTERN
    _compiled: re.Pattern[str] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "_compiled", re.compile(self.pattern, re.IGNORECASE))

    def matches(self, username: str | None) -> bool:
        if not username:
            return False
        return self._compiled.search(username.strip()) is not None


def contains_trigger(body: str | None, phrase: str) -> bool:
    # No word boundaries: "@claudette" matches "@claude".
    if body is None or not phrase:
        return False
    return phrase.lower() in body.lower()


def is_agent_note(note: Note, identity: AgentIdentity) -> bool:
    return identity.matches(note.author_username)
