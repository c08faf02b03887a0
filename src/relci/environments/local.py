# environments/local.py
from __future__ import annotations

import os
import signal
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Optional

from ..cancel import CancelToken, JobCancelled

# coreutils `timeout` convention
TIMEOUT_EXIT = 124
POLL_INTERVAL = 0.2
KILL_GRACE = 5.0
# host variables a build step inherits; nothing else crosses over
HOST_ENV_ALLOWLIST = ("PATH", "LANG", "LC_ALL", "LC_CTYPE", "TERM", "USER", "LOGNAME", "SHELL", "TMPDIR", "TZ")


@dataclass(frozen=True)
class ProcessResult:
    exit_code: int
    timed_out: bool = False


def _terminate(proc: subprocess.Popen) -> None:
    """SIGTERM the whole process group, then SIGKILL after a grace period."""
    try:
        os.killpg(proc.pid, signal.SIGTERM)
    except ProcessLookupError:
        return
    try:
        proc.wait(timeout=KILL_GRACE)
    except subprocess.TimeoutExpired:
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except ProcessLookupError:
            pass
        proc.wait()


def _stop(proc: subprocess.Popen, on_stop: Callable[[], None] | None) -> None:
    if on_stop is not None:
        on_stop()
    _terminate(proc)


def run_process(
    args: List[str],
    *,
    cwd: Path | None,
    env: Dict[str, str] | None,
    log_path: Path,
    timeout: Optional[float] = None,
    cancel: CancelToken | None = None,
    on_stop: Callable[[], None] | None = None,
) -> ProcessResult:
    """
    Run args to completion, streaming stdout+stderr into log_path.

    A deadline expiry kills the process and reports TIMEOUT_EXIT; a cancel
    kills it and raises JobCancelled. on_stop runs first in both cases, for
    work the process started outside its own process group.
    """
    log_path.parent.mkdir(parents=True, exist_ok=True)
    deadline = time.monotonic() + timeout if timeout else None

    with log_path.open("wb") as log:
        proc = subprocess.Popen(
            args,
            cwd=str(cwd) if cwd else None,
            env=env,
            stdout=log,
            stderr=subprocess.STDOUT,
            stdin=subprocess.DEVNULL,
            start_new_session=True,   # own process group so children die with it
        )
        while True:
            try:
                return ProcessResult(exit_code=proc.wait(timeout=POLL_INTERVAL))
            except subprocess.TimeoutExpired:
                pass

            if cancel is not None and cancel.cancelled:
                _stop(proc, on_stop)
                raise JobCancelled("run cancelled")
            if deadline is not None and time.monotonic() >= deadline:
                _stop(proc, on_stop)
                return ProcessResult(exit_code=TIMEOUT_EXIT, timed_out=True)


def tail(path: Path, lines: int = 40) -> str:
    """Last lines of a step log, for failure reports."""
    if not path.exists():
        return ""
    text = path.read_text(encoding="utf-8", errors="replace")
    return "\n".join(text.splitlines()[-lines:])


class LocalEnvironment:
    """Runs steps directly on the host, inside the job workspace."""

    kind = "host"

    def __init__(self, workspace: Path, *, home: Path | None = None, shell: str = "bash"):
        self.workspace = workspace
        self.home = home or Path.home()
        self.shell = shell

    def resolve_path(self, path: str) -> Path:
        """Map a cache/class path to a host path (~ is the runner's home)."""
        if path == "~" or path.startswith("~/"):
            return self.home / path[2:]
        p = Path(path)
        return p if p.is_absolute() else self.workspace / p

    def step_env(self, extra: Dict[str, str]) -> Dict[str, str]:
        env = {k: os.environ[k] for k in HOST_ENV_ALLOWLIST if k in os.environ}
        env["HOME"] = str(self.home)
        env.update(extra)
        return env

    def run(
        self,
        command: str,
        *,
        cwd: str | None,
        env: Dict[str, str],
        log_path: Path,
        timeout: Optional[float] = None,
        cancel: CancelToken | None = None,
    ) -> ProcessResult:
        workdir = (self.workspace / (cwd or ".")).resolve()
        if not workdir.exists():
            raise FileNotFoundError(f"step cwd not found: {workdir}")
        return run_process(
            [self.shell, "-c", command],
            cwd=workdir,
            env=self.step_env(env),
            log_path=log_path,
            timeout=timeout,
            cancel=cancel,
        )
