from __future__ import annotations

from datetime import datetime, timezone

from threadwatch.config import AppConfig, load_config
from threadwatch.formatter import format_duration, render_initial_comment, render_status_update


NOW = datetime(2024, 5, 1, 12, 34, 56, tzinfo=timezone.utc)


def _config(**overrides: str) -> AppConfig:
    env = {
        "CI_PROJECT_ID": "42",
        "CI_ISSUE_IID": "3",
        "GITLAB_TOKEN": "secret",
        "GITLAB_USER_LOGIN": "alice",
        "CI_JOB_URL": "https://gitlab.example.com/group/proj/-/jobs/99",
    }
    env.update(overrides)
    return load_config(env)


def test_format_duration() -> None:
    assert format_duration(0) == "0s"
    assert format_duration(42.4) == "42s"
    assert format_duration(60) == "60s"
    assert format_duration(61) == "1m 1s"
    assert format_duration(754) == "12m 34s"
    assert format_duration(-5) == "0s"


def test_render_initial_comment_mentions_unit_and_requester() -> None:
    body = render_initial_comment(_config())

    assert body.startswith("Claude is working…")
    assert "- [ ] Analyzing issue #3" in body
    assert "@alice" in body
    assert "<details>" in body


def test_render_initial_comment_for_merge_request() -> None:
    body = render_initial_comment(_config(CI_MERGE_REQUEST_IID="8", GITLAB_USER_LOGIN=""))

    assert "- [ ] Analyzing merge request #8" in body
    assert "@user" in body


def test_render_final_status_includes_duration_job_link_and_progress() -> None:
    body = render_status_update(
        "success",
        "Claude finished working on this request.",
        config=_config(),
        duration="1m 5s",
        progress="## Summary\n\nAll done.\n",
        now=NOW,
    )

    assert body.splitlines()[0] == "**✅ Completed** _(12:34:56 UTC, duration: 1m 5s)_"
    assert "[View job logs](https://gitlab.example.com/group/proj/-/jobs/99)" in body
    assert body.endswith("---\n\n## Summary\n\nAll done.")


def test_render_progress_omits_job_link_and_empty_progress() -> None:
    body = render_status_update(
        "progress", "Working", config=_config(), progress="   ", now=NOW
    )

    assert body == "**⏳ In Progress** _(12:34:56 UTC)_\n\nWorking"


def test_render_error_and_timeout_headings() -> None:
    config = _config(CI_JOB_URL="")
    error = render_status_update("error", "RuntimeError: boom", config=config, now=NOW)
    timed_out = render_status_update("timed_out", "too slow", config=config, now=NOW)

    assert error.startswith("**❌ Error**")
    assert "View job logs" not in error
    assert timed_out.startswith("**⏱️ Timed out**")
