from __future__ import annotations

import logging
import re
import subprocess
from collections.abc import Iterable
from pathlib import Path

logger = logging.getLogger(__name__)

_SCP_REMOTE = re.compile(r"^git@(?P<host>[^:]+):(?P<path>.+?)(?:\.git)?$")


class VcsError(RuntimeError):
    """Raised when a git command fails."""


class GitRepository:
    def __init__(self, repo_root: Path) -> None:
        self.repo_root = repo_root.resolve()

    def _run_git(self, args: list[str], check: bool = True) -> subprocess.CompletedProcess[str]:
        proc = subprocess.run(
            ["git", "--no-pager", *args],
            cwd=self.repo_root,
            text=True,
            capture_output=True,
        )
        if check and proc.returncode != 0:
            raise VcsError(proc.stderr.strip() or proc.stdout.strip() or f"git {args[0]} failed")
        return proc

    def is_repository(self) -> bool:
        proc = self._run_git(["rev-parse", "--is-inside-work-tree"], check=False)
        return proc.returncode == 0 and proc.stdout.strip() == "true"

    def has_head(self) -> bool:
        return self._run_git(["rev-parse", "--verify", "-q", "HEAD"], check=False).returncode == 0

    @staticmethod
    def _status_line_path(status_line: str) -> str:
        candidate = status_line[3:].strip()
        if " -> " in candidate:
            candidate = candidate.split(" -> ", maxsplit=1)[1].strip()
        if candidate.startswith('"') and candidate.endswith('"'):
            candidate = candidate[1:-1]
        return candidate

    def changed_files(self) -> list[str]:
        proc = self._run_git(["status", "--porcelain", "--untracked-files=all"])
        paths = [
            self._status_line_path(line) for line in proc.stdout.splitlines() if line.strip()
        ]
        return sorted({path for path in paths if path})

    def staged_files(self) -> list[str]:
        proc = self._run_git(["diff", "--cached", "--name-only"])
        return [line.strip() for line in proc.stdout.splitlines() if line.strip()]

    def stage(self, files: Iterable[str]) -> list[str]:
        changed = set(self.changed_files())
        targets = sorted(
            {path for path in files if path in changed or (self.repo_root / path).exists()}
        )
        if targets:
            self._run_git(["add", "-A", "--", *targets])
        staged = self.staged_files()
        logger.debug("Staged %d files", len(staged))
        return staged

    def unstage(self, files: Iterable[str]) -> None:
        targets = sorted(set(files))
        if not targets:
            return
        if self.has_head():
            self._run_git(["reset", "-q", "HEAD", "--", *targets])
        else:
            self._run_git(["rm", "-r", "-q", "--cached", "--ignore-unmatch", "--", *targets])

    def commit(self, message: str) -> str:
        if not self.staged_files():
            raise VcsError("Nothing is staged; refusing to create an empty commit.")
        self._run_git(["commit", "-q", "-m", message])
        return self._run_git(["rev-parse", "HEAD"]).stdout.strip()

    def head(self) -> tuple[str, str] | None:
        """Revision and subject of HEAD, or ``None`` in a repository without commits."""
        if not self.has_head():
            return None
        proc = self._run_git(["log", "-1", "--format=%H%n%s"])
        revision, _, subject = proc.stdout.strip().partition("\n")
        return revision, subject

    def current_branch(self) -> str:
        proc = self._run_git(["symbolic-ref", "--short", "-q", "HEAD"], check=False)
        if proc.returncode == 0 and proc.stdout.strip():
            return proc.stdout.strip()
        return self._run_git(["rev-parse", "--abbrev-ref", "HEAD"]).stdout.strip()

    def branch_exists(self, name: str) -> bool:
        proc = self._run_git(["rev-parse", "--verify", "-q", f"refs/heads/{name}"], check=False)
        return proc.returncode == 0

    def create_branch(self, name: str) -> None:
        """Creates ``name`` at HEAD and checks it out, keeping working-tree changes."""
        if self.branch_exists(name):
            raise VcsError(f"Branch '{name}' already exists.")
        self._run_git(["checkout", "-q", "-b", name])
        logger.info("Created branch %s", name)

    def switch(self, name: str) -> None:
        self._run_git(["checkout", "-q", name])

    def remote_url(self, remote: str) -> str | None:
        proc = self._run_git(["remote", "get-url", remote], check=False)
        if proc.returncode != 0:
            return None
        return proc.stdout.strip() or None

    @staticmethod
    def browse_url(remote_url: str, branch: str) -> str:
        match = _SCP_REMOTE.match(remote_url)
        if match:
            base = f"https://{match.group('host')}/{match.group('path')}"
        else:
            base = remote_url.removesuffix(".git")
        if base.startswith("https://"):
            return f"{base}/tree/{branch}"
        return base

    def publish(self, branch: str, remote: str = "origin") -> dict[str, str]:
        url = self.remote_url(remote)
        if url is None:
            raise VcsError(f"Remote '{remote}' is not configured.")
        self._run_git(["push", "-u", remote, branch])
        logger.info("Pushed %s to %s", branch, remote)
        return {"branch": branch, "remote": remote, "url": self.browse_url(url, branch)}
