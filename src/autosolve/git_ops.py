from __future__ import annotations

from pathlib import Path
import logging

from autosolve.observability import log_event, log_warning_event
from autosolve.shell import CommandError, run


LOGGER = logging.getLogger("autosolve.git_ops")


class GitWorkingCopy:
    """The prepared checkout the agent edits, inspected between sessions."""

    def __init__(self, checkout_path: Path, branch: str) -> None:
        self.checkout_path = checkout_path
        self.branch = branch

    def status_lines(self) -> tuple[str, ...]:
        output = run(["git", "-C", str(self.checkout_path), "status", "--porcelain"])
        return tuple(line for line in output.splitlines() if line.strip())

    def has_uncommitted_changes(self) -> bool:
        return bool(self.status_lines())

    def diff_stat(self) -> str:
        return run(["git", "-C", str(self.checkout_path), "diff", "--stat"]).strip()

    def list_staged_files(self) -> tuple[str, ...]:
        run(["git", "-C", str(self.checkout_path), "add", "-A"])
        diff = run(
            ["git", "-C", str(self.checkout_path), "diff", "--cached", "--name-only"]
        ).strip()
        if not diff:
            return ()
        return tuple(line for line in diff.splitlines() if line.strip())

    def commit_all(self, message: str) -> tuple[str, ...]:
        staged = self.list_staged_files()
        if not staged:
            raise CommandError("No staged changes to commit")
        log_event(
            LOGGER,
            "git_commit",
            checkout_path=str(self.checkout_path),
            file_count=len(staged),
        )
        run(["git", "-C", str(self.checkout_path), "commit", "-m", message])
        return staged

    def push_branch(self) -> None:
        log_event(
            LOGGER,
            "git_push",
            checkout_path=str(self.checkout_path),
            branch=self.branch,
        )
        try:
            run(["git", "-C", str(self.checkout_path), "push", "-u", "origin", self.branch])
        except Exception as exc:  # noqa: BLE001
            log_warning_event(
                LOGGER,
                "git_push_failed",
                checkout_path=str(self.checkout_path),
                branch=self.branch,
                error_type=type(exc).__name__,
            )
            raise

    def commit_and_push(self, message: str) -> None:
        self.commit_all(message)
        self.push_branch()
