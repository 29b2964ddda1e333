from __future__ import annotations

import logging
from pathlib import Path

from threadwatch.observability import log_event
from threadwatch.shell import CommandError, run


LOGGER = logging.getLogger("threadwatch.git_ops")


class GitWorkspace:
    """The CI job's existing checkout, prepared for the agent to work in."""

    def __init__(self, cwd: Path) -> None:
        self.cwd = cwd

    def configure_identity(self, name: str, email: str) -> None:
        log_event(LOGGER, "git_identity_configured", checkout_path=str(self.cwd), name=name)
        run(["git", "-C", str(self.cwd), "config", "user.name", name])
        run(["git", "-C", str(self.cwd), "config", "user.email", email])

    def checkout(self, branch: str) -> None:
        log_event(LOGGER, "git_checkout", checkout_path=str(self.cwd), branch=branch)
        try:
            run(["git", "-C", str(self.cwd), "fetch", "origin", branch])
        except CommandError:
            log_event(
                LOGGER,
                "git_fetch_failed",
                checkout_path=str(self.cwd),
                branch=branch,
            )
            raise
        run(["git", "-C", str(self.cwd), "checkout", "-B", branch, f"origin/{branch}"])

    def current_branch(self) -> str:
        return run(["git", "-C", str(self.cwd), "branch", "--show-current"]).strip()
