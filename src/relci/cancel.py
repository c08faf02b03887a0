# cancel.py
from __future__ import annotations

import threading


class JobCancelled(Exception):
    """Raised inside a job when the run was cancelled by the operator."""


class CancelToken:
    """Run-wide cancellation flag shared by every job worker."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise JobCancelled("run cancelled")
