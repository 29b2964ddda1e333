from __future__ import annotations

from collections.abc import Callable
import logging
import os
from pathlib import Path
import tempfile
import threading
from types import TracebackType
from typing import Literal, Protocol

from threadwatch.models import Note, ReviewUnitKind
from threadwatch.observability import log_event, log_warning_event


LOGGER = logging.getLogger("threadwatch.progress")

RelayState = Literal["idle", "watching", "publishing", "stopped"]


class ProgressRelayError(RuntimeError):
    pass


class TrackingNoteClosedError(RuntimeError):
    pass


class ProgressChannel:
    """Single-slot, last-write-wins mailbox backed by one file.

    Writers replace the whole content; readers only ever see the latest
    complete value.
    """

    def __init__(self, path: Path) -> None:
        self._path = path

    @property
    def path(self) -> Path:
        return self._path

    def replace(self, text: str) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{self._path.name}.", suffix=".tmp", dir=self._path.parent
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(text)
            os.replace(tmp_name, self._path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def read(self) -> str | None:
        try:
            return self._path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError):
            return None

    def clear(self) -> None:
        self._path.unlink(missing_ok=True)


class NoteEditor(Protocol):
    def edit_note(self, kind: ReviewUnitKind, iid: int, note_id: int, body: str) -> Note: ...


class TrackingNote:
    """The single write path to the note that mirrors the agent's progress.

    ``update`` is used while the agent runs. ``finalize`` writes the closing
    status and refuses every later ``update``, so the final status is always
    the last write.
    """

    def __init__(
        self, editor: NoteEditor, *, kind: ReviewUnitKind, iid: int, note_id: int
    ) -> None:
        self._editor = editor
        self._kind = kind
        self._iid = iid
        self._note_id = note_id
        self._lock = threading.Lock()
        self._finalized = False

    @property
    def note_id(self) -> int:
        return self._note_id

    @property
    def finalized(self) -> bool:
        with self._lock:
            return self._finalized

    def update(self, body: str) -> None:
        with self._lock:
            if self._finalized:
                raise TrackingNoteClosedError(f"Tracking note {self._note_id} is already final")
            self._editor.edit_note(self._kind, self._iid, self._note_id, body)

    def finalize(self, body: str) -> None:
        with self._lock:
            self._finalized = True
            self._editor.edit_note(self._kind, self._iid, self._note_id, body)
        log_event(LOGGER, "tracking_note_finalized", note_id=self._note_id)


class ProgressRelay:
    def __init__(
        self,
        *,
        channel: ProgressChannel,
        publish: Callable[[str], None],
        poll_interval_seconds: float,
        thread_name: str = "threadwatch-progress-relay",
    ) -> None:
        if poll_interval_seconds <= 0:
            raise ValueError("poll_interval_seconds must be > 0")
        self._channel = channel
        self._publish = publish
        self._poll_interval_seconds = poll_interval_seconds
        self._thread_name = thread_name
        self._stop_event = threading.Event()
        self._state_lock = threading.Lock()
        self._state: RelayState = "idle"
        self._thread: threading.Thread | None = None
        self._last_published = ""
        self._publish_count = 0

    @property
    def state(self) -> RelayState:
        with self._state_lock:
            return self._state

    @property
    def last_published(self) -> str:
        return self._last_published

    @property
    def publish_count(self) -> int:
        return self._publish_count

    def start(self) -> None:
        with self._state_lock:
            if self._state != "idle":
                raise ProgressRelayError(f"Cannot start relay in state {self._state}")
            self._state = "watching"
        self._thread = threading.Thread(target=self._run, name=self._thread_name, daemon=True)
        self._thread.start()
        log_event(
            LOGGER,
            "progress_relay_started",
            channel=str(self._channel.path),
            poll_interval_seconds=self._poll_interval_seconds,
        )

    def poll_once(self) -> bool:
        """Run one tick. Returns True when new content was published."""
        content = self._channel.read()
        if not content or content == self._last_published:
            return False

        with self._state_lock:
            if self._state == "stopped":
                return False
            previous_state = self._state
            self._state = "publishing"
        try:
            self._publish(content)
        except TrackingNoteClosedError:
            self._stop_event.set()
            return False
        except Exception as exc:  # noqa: BLE001
            # Retried on the next tick because last_published is unchanged.
            log_warning_event(
                LOGGER,
                "progress_publish_failed",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False
        finally:
            with self._state_lock:
                if self._state == "publishing":
                    self._state = previous_state

        self._last_published = content
        self._publish_count += 1
        log_event(
            LOGGER,
            "progress_published",
            publish_count=self._publish_count,
            length=len(content),
        )
        return True

    def stop(self, timeout: float | None = None) -> None:
        self._stop_event.set()
        thread = self._thread
        if thread is not None:
            thread.join(timeout=timeout)
            if thread.is_alive():
                raise ProgressRelayError(
                    f"Progress relay did not stop within {timeout} seconds"
                )
        with self._state_lock:
            already_stopped = self._state == "stopped"
            self._state = "stopped"
        if not already_stopped:
            log_event(LOGGER, "progress_relay_stopped", publish_count=self._publish_count)

    def __enter__(self) -> ProgressRelay:
        self.start()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.stop()

    def _run(self) -> None:
        while not self._stop_event.wait(self._poll_interval_seconds):
            self.poll_once()
