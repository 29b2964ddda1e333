from __future__ import annotations

import json
import logging
from pathlib import Path
import sys
from typing import Final, Literal, cast


_LOGGER_NAME: Final[str] = "threadwatch"
_MAX_VALUE_LEN: Final[int] = 120
_VERBOSE_FORMAT: Final[str] = "%(asctime)s %(levelname)s %(name)s [%(threadName)s] %(message)s"
_LOW_VERBOSITY_EVENTS: Final[frozenset[str]] = frozenset(
    {
        "trigger_check_completed",
        "trigger_check_failed",
        "tracking_note_created",
        "agent_invocation_started",
        "agent_invocation_finished",
        "agent_invocation_timed_out",
        "progress_relay_started",
        "progress_relay_stopped",
        "progress_published",
        "tracking_note_finalized",
        "invocation_skipped",
        "invocation_failed",
    }
)


VerboseMode = Literal["low", "high"]


def configure_logging(verbose: bool | str | None) -> None:
    logger = logging.getLogger(_LOGGER_NAME)
    logger.propagate = False
    logger.handlers.clear()
    mode = _normalize_verbose_mode(verbose)

    if mode is None:
        logger.addHandler(logging.NullHandler())
        logger.setLevel(logging.CRITICAL + 1)
        return

    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(logging.Formatter(_VERBOSE_FORMAT))
    if mode == "low":
        stream_handler.addFilter(_LowVerbosityFilter())
    logger.addHandler(stream_handler)
    logger.setLevel(logging.INFO)


def log_event(logger: logging.Logger, event: str, **fields: object) -> None:
    logger.info(_build_event_message(event=event, fields=fields), extra={"event": event})


def log_warning_event(logger: logging.Logger, event: str, **fields: object) -> None:
    logger.warning(_build_event_message(event=event, fields=fields), extra={"event": event})


def _build_event_message(*, event: str, fields: dict[str, object]) -> str:
    parts = [f"event={_normalize_field_value(event)}"]
    for key in sorted(fields.keys()):
        parts.append(f"{key}={_normalize_field_value(fields[key])}")
    return " ".join(parts)


def _normalize_field_value(value: object) -> str:
    if value is None:
        normalized = "null"
    elif isinstance(value, bool):
        normalized = "true" if value else "false"
    elif isinstance(value, int | float):
        normalized = str(value)
    elif isinstance(value, str | Path):
        collapsed = " ".join(str(value).split())
        if len(collapsed) > _MAX_VALUE_LEN:
            collapsed = f"{collapsed[:_MAX_VALUE_LEN]}..."
        normalized = collapsed if collapsed else "<empty>"
    else:
        normalized = f"<{type(value).__name__}>"

    if any(ch.isspace() for ch in normalized) or "=" in normalized:
        return json.dumps(normalized)
    return normalized


def _normalize_verbose_mode(verbose: bool | str | None) -> VerboseMode | None:
    if verbose is None:
        return None
    if isinstance(verbose, bool):
        return "high" if verbose else None
    normalized = verbose.strip().lower()
    if normalized in {"low", "high"}:
        return cast(VerboseMode, normalized)
    if normalized in {"off", "none", "quiet"}:
        return None
    raise ValueError(f"Unsupported verbose mode: {verbose!r}")


class _LowVerbosityFilter(logging.Filter):
    """Keep warnings and the lifecycle events emitted through ``log_event``."""

    def filter(self, record: logging.LogRecord) -> bool:
        if record.levelno >= logging.WARNING:
            return True
        return getattr(record, "event", None) in _LOW_VERBOSITY_EVENTS
