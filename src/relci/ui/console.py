"""Console output formatting utilities for relci."""

from __future__ import annotations

import sys
import threading
from typing import Optional


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False, redact=None, progress_to_stderr: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
            redact: Optional callable scrubbing secret values from output
            progress_to_stderr: Keep stdout free for machine-readable output
        """
        self.debug = debug
        self.progress_to_stderr = progress_to_stderr
        self._redact = redact
        # jobs print from worker threads; keep their lines whole
        self._lock = threading.Lock()

    def set_redactor(self, redact) -> None:
        self._redact = redact

    def _emit(self, text: str, *, err: bool = False) -> None:
        if self._redact is not None:
            text = self._redact(text)
        with self._lock:
            print(text, file=sys.stderr if err or self.progress_to_stderr else sys.stdout, flush=True)

    def print_header(self, title: str) -> None:
        """Print a section header."""
        self._emit(f"\n{title}\n" + "-" * len(title))

    def print_run_started(self, ref: str, pipelines: list[str], job_count: int) -> None:
        """Print run start information."""
        self._emit("\nRUN STARTED")
        self._emit(f"Ref: {ref}")
        self._emit(f"Pipelines: {', '.join(pipelines) if pipelines else '(none triggered)'}")
        self._emit(f"Jobs: {job_count}\n")

    def print_not_triggered(self, ref: str) -> None:
        self._emit(f"No pipeline matched {ref}; nothing to do.")

    def print_job_start(self, job_id: str, image: str | None) -> None:
        """Print job start message."""
        self._emit(f"[{job_id}] JOB STARTED ({image or 'host'})")

    def print_step(self, job_id: str, name: str) -> None:
        """Print step start message."""
        self._emit(f"[{job_id}] STEP: {name}")

    def print_step_allowed_failure(self, job_id: str, name: str, exit_code: int) -> None:
        self._emit(f"[{job_id}] STEP FAILED (allowed): {name} exit={exit_code}")

    def print_job_done(self, job_id: str, status: str) -> None:
        self._emit(f"[{job_id}] STATUS: {status}")

    def print_failure(
        self,
        name: str,
        reason: str,
        exit_code: Optional[int] = None,
        hint: Optional[str] = None,
        is_job: bool = False,
    ) -> None:
        """
        Print failure message.

        Args:
            name: Job or step name
            reason: Failure reason/error message
            exit_code: Optional exit code
            hint: Optional hint for user
            is_job: If True, print "JOB FAILED", otherwise "STEP FAILED"
        """
        prefix = "JOB FAILED" if is_job else "STEP FAILED"
        lines = [f"{prefix}: {name}"]
        if exit_code is not None:
            lines.append(f"Exit code: {exit_code}")
        if hint:
            lines.append(f"Hint: {hint}")
        if self.debug:
            lines.append(f"Error details: {reason}")
        else:
            # first line only outside debug mode
            error_line = reason.split("\n")[0] if reason else "Unknown error"
            lines.append(f"Error: {error_line}")
        self._emit("\n".join(lines))

    def print_cache_hit(self, job_id: str, cache_class: str, reason: str) -> None:
        """Print cache hit message."""
        self._emit(f"[{job_id}] CACHE {cache_class}: hit ({reason})")

    def print_cache_miss(self, job_id: str, cache_class: str, reason: str = "cache miss") -> None:
        """Print cache miss message."""
        self._emit(f"[{job_id}] CACHE {cache_class}: {reason}")

    def print_cache_saved(self, job_id: str, cache_class: str, key: str) -> None:
        """Print cache save message."""
        short_key = key[:48] + "..." if len(key) > 48 else key
        self._emit(f"[{job_id}] CACHE {cache_class}: saved ({short_key})")

    def print_cache_warning(self, job_id: str, cache_class: str, message: str) -> None:
        self._emit(f"[{job_id}] CACHE {cache_class}: {message}", err=True)

    def print_publish(self, job_id: str, target: str, status: str, detail: str = "") -> None:
        suffix = f" ({detail})" if detail else ""
        self._emit(f"[{job_id}] PUBLISH {target}: {status}{suffix}")

    def print_plan_job(self, job_id: str, image: str | None, steps: int, targets: list[str]) -> None:
        """Print one expanded job instance."""
        dest = ", ".join(targets) if targets else "no publish targets"
        self._emit(f"  {job_id} ({image or 'host'}, {steps} steps -> {dest})")

    def print_results(self, report) -> None:
        """Print final per-job and per-destination results."""
        lines = ["", "=" * 40, "RESULTS", "=" * 40]
        for jr in report.jobs:
            job = jr.job
            lines.append(f"  {job.job_id}: {job.status.upper()}")
            if job.error:
                lines.append(f"    error: {job.error.splitlines()[0] if job.error else ''}")
            for p in jr.publishes:
                detail = f" ({p.detail})" if p.detail else ""
                lines.append(f"    -> {p.target}: {p.status.upper()}{detail}")
        if report.cancelled:
            lines.append("  (run was cancelled)")
        lines.append(f"OVERALL: {report.status.upper()}")
        self._emit("\n".join(lines))

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[list[str]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        """
        Print structured error message.

        Args:
            title: Error title
            message: Main error message
            details: Optional list of detail lines
            suggestion: Optional suggestion for user
        """
        lines = [f"\nERROR: {title}", message]
        for detail in details or []:
            lines.append(f"  {detail}")
        if suggestion:
            lines.append(f"\n{suggestion}")
        self._emit("\n".join(lines), err=True)

    def print_exception(self, exc: Exception) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback

            self._emit("".join(traceback.format_exception(exc)), err=True)
        else:
            self._emit(f"Error: {exc}", err=True)

    def print_info(self, message: str) -> None:
        """Print informational message."""
        self._emit(message)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            self._emit(f"[DEBUG] {message}", err=True)


# Global console instance (will be initialized by CLI)
_console: Optional[Console] = None


def get_console() -> Console:
    """Get the global console instance."""
    global _console
    if _console is None:
        _console = Console()
    return _console


def set_console(console: Console) -> None:
    """Set the global console instance."""
    global _console
    _console = console
