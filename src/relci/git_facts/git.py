# git.py
# Small, focused wrapper around the Git CLI.
# This module centralizes all Git interactions so the rest of the codebase
# never needs to call subprocess("git ...") directly.

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import Dict, List, Optional


class GitError(RuntimeError):
    """A git command exited non-zero (or could not be started)."""

    def __init__(self, args: List[str], returncode: int, stderr: str):
        self.args_ = args
        self.returncode = returncode
        self.stderr = stderr.strip()
        super().__init__(f"git {' '.join(args)} failed (exit={returncode}): {self.stderr}")


def _git(
    args: list[str],
    cwd: Optional[str | Path] = None,
    *,
    env: Optional[Dict[str, str]] = None,
    timeout: Optional[float] = None,
) -> str:
    """
    Execute a git command and return its stdout as a clean string.

    This is the single low-level entry point for all Git operations in this file.

    Args:
        args: List of git arguments (e.g. ["status", "--porcelain"])
        cwd: Optional working directory in which to run the git command.
        env: Optional full environment for the child (credentials travel here,
             never on the command line shown in errors).
        timeout: Seconds before the command is killed.

    Returns:
        Stdout from the git command with surrounding whitespace removed.

    Raises:
        GitError: on a non-zero exit, a timeout or a missing git binary.
    """
    try:
        proc = subprocess.run(
            ["git", *args],
            cwd=str(cwd) if cwd else None,
            env=env,
            text=True,
            capture_output=True,
            timeout=timeout,
            stdin=subprocess.DEVNULL,
        )
    except subprocess.TimeoutExpired:
        raise GitError(args, -1, f"timed out after {timeout}s") from None
    except FileNotFoundError:
        raise GitError(args, -1, "git command not found. Please install Git.") from None

    if proc.returncode != 0:
        raise GitError(args, proc.returncode, proc.stderr or proc.stdout)

    # Strip trailing newlines so callers can do clean string comparisons
    return proc.stdout.strip()


def clone(url: str, dest: Path, **kw) -> Path:
    """Clone url into dest (which must not exist yet)."""
    dest.parent.mkdir(parents=True, exist_ok=True)
    _git(["clone", url, str(dest)], **kw)
    return dest


def checkout(ref: str, cwd: Path, **kw) -> None:
    _git(["checkout", "--quiet", ref], cwd, **kw)


def update_submodules(cwd: Path, **kw) -> None:
    _git(["submodule", "update", "--init", "--recursive"], cwd, **kw)


def head_sha(cwd: Path, **kw) -> str:
    """
    Return the full SHA hash of the current HEAD commit.

    Returns:
        Full commit SHA as a string.
    """
    return _git(["rev-parse", "HEAD"], cwd, **kw)


def is_dirty(cwd: Path, **kw) -> bool:
    """
    Check whether the working tree has uncommitted changes.

    This includes modified, staged and untracked files.
    """
    # `git status --porcelain` produces stable, machine-readable output.
    # Any output at all indicates the working tree is not clean.
    return _git(["status", "--porcelain"], cwd, **kw) != ""


def add_all(cwd: Path, **kw) -> None:
    _git(["add", "--all"], cwd, **kw)


def commit(cwd: Path, message: str, *, author_name: str, author_email: str, **kw) -> None:
    _git(
        ["-c", f"user.name={author_name}", "-c", f"user.email={author_email}", "commit", "--quiet", "-m", message],
        cwd,
        **kw,
    )


def push(cwd: Path, remote: str = "origin", ref: str = "HEAD", **kw) -> None:
    _git(["push", remote, ref], cwd, **kw)


def init(cwd: Path, **kw) -> None:
    cwd.mkdir(parents=True, exist_ok=True)
    _git(["init", "--quiet"], cwd, **kw)


def set_remote(cwd: Path, url: str, name: str = "origin", **kw) -> None:
    _git(["remote", "add", name, url], cwd, **kw)


def fetch_all(cwd: Path, remote: str = "origin", **kw) -> None:
    """Fetch every branch and tag (full history, no shallow clone)."""
    _git(["fetch", "--quiet", "--tags", "--force", remote, f"+refs/heads/*:refs/remotes/{remote}/*"], cwd, **kw)
