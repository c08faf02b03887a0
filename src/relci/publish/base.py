# publish/base.py
from __future__ import annotations

from dataclasses import dataclass, field
from fnmatch import fnmatch
from pathlib import Path
from typing import List, Optional

from ..model import Artifact, PublishOutcome, TriggerEvent
from ..secrets import Secrets


class PublishFailure(Exception):
    """A destination rejected or could not receive this job's artifacts."""

    def __init__(self, target: str, message: str):
        super().__init__(f"{target}: {message}")
        self.target = target
        self.message = message


@dataclass
class PublishContext:
    """Everything a destination adapter may use for one job's publication."""
    job_id: str
    event: TriggerEvent
    workspace: Path
    artifacts: List[Artifact]
    secrets: Secrets = field(default_factory=Secrets)

    @property
    def version(self) -> str:
        return self.event.ref_name

    def relpath(self, artifact: Artifact) -> str:
        try:
            return artifact.path.relative_to(self.workspace).as_posix()
        except ValueError:
            return artifact.name

    def matching(self, patterns: List[str]) -> List[Artifact]:
        return [a for a in self.artifacts if any(fnmatch(self.relpath(a), p) for p in patterns)]

    def unmatched(self, patterns: List[str]) -> List[str]:
        return [p for p in patterns if not any(fnmatch(self.relpath(a), p) for a in self.artifacts)]


class PublishTarget:
    """
    A destination for build artifacts.

    Subclasses own their credential reference and idempotency rule, and apply
    `timeout` to every blocking call they make.
    """

    name: str = "target"
    timeout: Optional[float] = 120

    def artifact_patterns(self) -> List[str]:
        """Workspace globs this target needs collected after a successful job."""
        return []

    def publish(self, ctx: PublishContext) -> PublishOutcome:
        raise NotImplementedError
