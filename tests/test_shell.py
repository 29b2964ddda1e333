from __future__ import annotations

from pathlib import Path
import subprocess

import pytest

from threadwatch.observability import configure_logging
from threadwatch.shell import CommandError, CommandTimeoutError, _preview, run


def test_run_success(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    called: dict[str, object] = {}

    def fake_run(*args: object, **kwargs: object) -> subprocess.CompletedProcess[str]:
        called["args"] = args
        called["kwargs"] = kwargs
        return subprocess.CompletedProcess(args=["echo"], returncode=0, stdout="ok", stderr="")

    monkeypatch.setattr(subprocess, "run", fake_run)

    out = run(["echo", "hello"], cwd=tmp_path, input_text="hi")

    assert out == "ok"
    kwargs = called["kwargs"]
    assert isinstance(kwargs, dict)
    assert kwargs["cwd"] == str(tmp_path)
    assert kwargs["input"] == "hi"
    assert kwargs["check"] is False
    assert kwargs["env"] is None
    assert kwargs["timeout"] is None


def test_run_layers_env_over_process_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    captured: dict[str, object] = {}

    def fake_run(*args: object, **kwargs: object) -> subprocess.CompletedProcess[str]:
        _ = args
        captured.update(kwargs)
        return subprocess.CompletedProcess(args=["glab"], returncode=0, stdout="", stderr="")

    monkeypatch.setenv("THREADWATCH_SHELL_TEST", "inherited")
    monkeypatch.setattr(subprocess, "run", fake_run)

    run(["glab"], env={"GITLAB_TOKEN": "tok"})

    env = captured["env"]
    assert isinstance(env, dict)
    assert env["GITLAB_TOKEN"] == "tok"
    assert env["THREADWATCH_SHELL_TEST"] == "inherited"


def test_run_failure_raises(
    monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    def fake_run(*args: object, **kwargs: object) -> subprocess.CompletedProcess[str]:
        _ = args, kwargs
        return subprocess.CompletedProcess(args=["bad"], returncode=2, stdout="out", stderr="err")

    monkeypatch.setattr(subprocess, "run", fake_run)
    configure_logging(verbose=True)

    with pytest.raises(CommandError, match="Command failed"):
        run(["bad"])
    stderr = capsys.readouterr().err
    assert "event=command_failed command=bad exit_code=2" in stderr
    assert "stderr=err" in stderr
    assert "stdout=out" in stderr


def test_run_failure_ignored_when_check_disabled(monkeypatch: pytest.MonkeyPatch) -> None:
    def fake_run(*args: object, **kwargs: object) -> subprocess.CompletedProcess[str]:
        _ = args, kwargs
        return subprocess.CompletedProcess(args=["x"], returncode=1, stdout="partial", stderr="")

    monkeypatch.setattr(subprocess, "run", fake_run)

    assert run(["x"], check=False) == "partial"


def test_run_timeout_raises_command_timeout_error(monkeypatch: pytest.MonkeyPatch) -> None:
    def fake_run(*args: object, **kwargs: object) -> subprocess.CompletedProcess[str]:
        _ = args
        raise subprocess.TimeoutExpired(cmd=["claude"], timeout=float(str(kwargs["timeout"])))

    monkeypatch.setattr(subprocess, "run", fake_run)

    with pytest.raises(CommandTimeoutError, match="timed out after 1.5 seconds"):
        run(["claude", "-p"], timeout_seconds=1.5)


def test_preview_handles_empty_and_truncation() -> None:
    assert _preview("") == "<empty>"
    assert _preview("x" * 10, limit=4) == "xxxx..."
