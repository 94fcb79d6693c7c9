"""Minimal git helpers
The helpers below provide just enough structure to clone the upstream
repository, inspect where its ``HEAD`` points, and move it to another ref.
"""

from __future__ import annotations

import logging
import subprocess
from pathlib import Path
from typing import List, Sequence

LOGGER = logging.getLogger(__name__)


class GitError(RuntimeError):
    """Raised when a git command fails or the repository cannot be used."""


def _run(
    args: Sequence[str],
    *,
    cwd: Path,
    check: bool = True,
) -> subprocess.CompletedProcess[str]:
    command = ["git", *args]
    LOGGER.debug("Running %s in %s", " ".join(command), cwd)
    try:
        process = subprocess.run(
            command,
            cwd=cwd,
            capture_output=True,
            text=False,
            check=False,
        )
    except OSError as error:
        raise GitError(f"git {' '.join(args)} could not be started: {error}") from error
    stdout = process.stdout.decode("utf-8", errors="replace") if process.stdout else ""
    stderr = process.stderr.decode("utf-8", errors="replace") if process.stderr else ""
    result = subprocess.CompletedProcess(process.args, process.returncode, stdout, stderr)
    if check and result.returncode != 0:
        message = result.stderr.strip() or result.stdout.strip() or "unknown git error"
        raise GitError(f"git {' '.join(args)} failed: {message}")
    return result


class GitRepository:
    """Lightweight wrapper around ``git`` commands."""

    def __init__(self, root: Path | str) -> None:
        self.root = Path(root).resolve()
        if not self.exists(self.root):
            raise GitError(f"Not a git repository: {self.root}")

    @staticmethod
    def exists(root: Path | str) -> bool:
        """Return ``True`` when ``root`` holds a git checkout."""

        return (Path(root) / ".git").is_dir()

    @classmethod
    def clone(cls, address: str, destination: Path | str, *, branch: str | None = None) -> "GitRepository":
        """Clone ``address`` into ``destination`` (optionally at ``branch``)."""

        target = Path(destination).resolve()
        target.parent.mkdir(parents=True, exist_ok=True)
        args: List[str] = ["clone", address]
        if branch:
            args.extend(["--branch", branch])
        args.append(str(target))
        LOGGER.info("Cloning %s (branch %s) into %s", address, branch or "<default>", target)
        _run(args, cwd=target.parent)
        return cls(target)

    # ------------------------------------------------------------------ git IO
    def _run_git(self, args: Sequence[str], *, check: bool = True) -> subprocess.CompletedProcess[str]:
        return _run(args, cwd=self.root, check=check)

    def git(self, *args: str, check: bool = True) -> subprocess.CompletedProcess[str]:
        """Execute ``git`` with ``args`` relative to the repository root."""

        return self._run_git(list(args), check=check)

    # -------------------------------------------------------------- branches
    def current_branch(self) -> str | None:
        """Return the current branch name or ``None`` when detached."""

        result = self._run_git(["rev-parse", "--abbrev-ref", "HEAD"], check=False)
        if result.returncode != 0:
            return None
        branch = result.stdout.strip()
        if not branch or branch == "HEAD":
            return None
        return branch

    def head(self) -> str:
        """Return the full SHA that ``HEAD`` points at."""

        result = self._run_git(["rev-parse", "--verify", "HEAD"], check=True)
        return result.stdout.strip()

    def resolve_commit(self, rev: str) -> str:
        """Resolve ``rev`` (full or abbreviated SHA, tag, branch) to a full SHA."""

        result = self._run_git(["rev-parse", "--verify", "--quiet", f"{rev}^{{commit}}"], check=False)
        sha = result.stdout.strip()
        if result.returncode != 0 or not sha:
            raise GitError(f"Unknown revision {rev!r} in {self.root}")
        return sha

    def checkout(self, rev: str) -> None:
        """Check out ``rev``; a commit SHA leaves ``HEAD`` detached."""

        LOGGER.info("Checking out %s in %s", rev, self.root)
        self._run_git(["checkout", rev], check=True)


__all__ = ["GitError", "GitRepository"]
