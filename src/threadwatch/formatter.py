from __future__ import annotations

from datetime import datetime, timezone
from typing import Literal

from threadwatch.config import AppConfig


StatusKind = Literal["success", "error", "timed_out", "progress"]

_STATUS_HEADINGS: dict[StatusKind, str] = {
    "success": "✅ Completed",
    "error": "❌ Error",
    "timed_out": "⏱️ Timed out",
    "progress": "⏳ In Progress",
}


def format_duration(seconds: float) -> str:
    total = max(0, round(seconds))
    if total > 60:
        return f"{total // 60}m {total % 60}s"
    return f"{total}s"


def render_initial_comment(config: AppConfig) -> str:
    entity = "merge request" if config.is_merge_request else "issue"
    requester = config.trigger_user or "user"
    return f"""
Claude is working…

---

<details>
<summary>Task List</summary>

- [ ] Analyzing {entity} #{config.iid}
- [ ] Understanding the request from @{requester}
- [ ] Preparing response
- [ ] Implementing changes (if needed)

</details>
""".strip()


def render_status_update(
    status: StatusKind,
    message: str,
    *,
    config: AppConfig,
    duration: str | None = None,
    progress: str | None = None,
    now: datetime | None = None,
) -> str:
    """Render the tracking-note body for a status change.

    ``progress`` is the agent's latest progress text; it is kept below the
    status block so the final note still shows the agent's own report.
    """
    timestamp = (now or datetime.now(timezone.utc)).strftime("%H:%M:%S UTC")
    details = timestamp if duration is None else f"{timestamp}, duration: {duration}"
    lines = [f"**{_STATUS_HEADINGS[status]}** _({details})_", "", message.strip()]
    if status != "progress" and config.job_url:
        lines.extend(["", f"[View job logs]({config.job_url})"])
    if progress and progress.strip():
        lines.extend(["", "---", "", progress.strip()])
    return "\n".join(lines)
