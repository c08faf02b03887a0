# model.py
from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

# ---------------------------------------------------------------------
# Status vocabularies
# ---------------------------------------------------------------------

PENDING = "pending"
RUNNING = "running"
SUCCEEDED = "succeeded"
FAILED = "failed"

# publish outcomes
PUBLISHED = "published"
UNCHANGED = "unchanged"

# overall run status
RUN_SUCCESS = "success"
RUN_PARTIAL = "partial"
RUN_FAILED = "failed"
RUN_NOT_TRIGGERED = "not_triggered"


# ---------------------------------------------------------------------
# Trigger
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class TriggerEvent:
    """A pushed ref, as delivered by the event source."""
    ref_kind: str          # "tag" | "branch"
    ref_name: str
    commit_sha: str = ""

    @classmethod
    def from_ref(cls, ref: str, commit_sha: str = "") -> TriggerEvent:
        """Parse a full git ref such as refs/tags/2023.01.01."""
        if ref.startswith("refs/tags/"):
            return cls("tag", ref[len("refs/tags/"):], commit_sha)
        if ref.startswith("refs/heads/"):
            return cls("branch", ref[len("refs/heads/"):], commit_sha)
        raise ValueError(f"Unsupported ref (expected refs/tags/* or refs/heads/*): {ref!r}")

    @property
    def is_tag(self) -> bool:
        return self.ref_kind == "tag"


# ---------------------------------------------------------------------
# Steps (polymorphic)
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class Step:
    """Base of every step kind. Steps run strictly in declared order."""
    name: str
    may_fail: bool = False
    timeout: Optional[float] = None   # seconds; expiry counts as a failed exit


@dataclass(frozen=True)
class ShellStep(Step):
    """A shell command run inside the job's environment."""
    command: str = ""
    cwd: str | None = None


@dataclass(frozen=True)
class CheckoutStep(Step):
    """Clone the pipeline repository at the triggering commit."""
    submodules: bool = True


@dataclass(frozen=True)
class CacheClass:
    """A logical category of reusable build state."""
    name: str                       # e.g. "cargo-registry"
    path: str                       # e.g. "~/.cargo/registry" or "target"
    lockfile: str = "Cargo.lock"    # its hash keys the cache entry


@dataclass(frozen=True)
class CacheRestoreStep(Step):
    cache_class: CacheClass | None = None


@dataclass(frozen=True)
class CacheSaveStep(Step):
    cache_class: CacheClass | None = None


# ---------------------------------------------------------------------
# Pipeline definition
# ---------------------------------------------------------------------

@dataclass
class JobTemplate:
    """
    One platform's job: runner identity, ordered steps, cache classes and
    publish destinations.

    `axes` adds matrix dimensions beyond the platform (e.g. {"arch": [...]});
    each combination expands to its own job instance.
    """
    platform_id: str
    steps: List[Step]
    runner_image: str | None = None
    cache_classes: List[CacheClass] = field(default_factory=list)
    publish_targets: list = field(default_factory=list)
    axes: Dict[str, List[str]] = field(default_factory=dict)
    env: Dict[str, str] = field(default_factory=dict)


@dataclass
class PipelineDefinition:
    name: str
    trigger_patterns: List[str]
    job_templates: List[JobTemplate]
    repository: str | None = None     # clone URL/path used by CheckoutStep


@dataclass
class JobInstance:
    """A job template bound to one trigger event."""
    job_id: str
    pipeline: str
    platform_id: str
    template: JobTemplate
    event: TriggerEvent
    repository: str | None = None
    params: Dict[str, str] = field(default_factory=dict)
    status: str = PENDING
    produced_artifacts: List["Artifact"] = field(default_factory=list)

    @property
    def variant(self) -> str:
        """Extra-axis values joined for cache keys ("None" when there are none)."""
        extra = [v for k, v in self.params.items() if k != "platform"]
        return "-".join(extra) if extra else "None"


# ---------------------------------------------------------------------
# Artifacts and results
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class Artifact:
    """A packaged file produced by a job. Immutable once produced."""
    name: str
    path: Path
    sha256: str
    size: int

    def read_bytes(self) -> bytes:
        return self.path.read_bytes()


@dataclass
class StepResult:
    name: str
    status: str                     # succeeded | failed | skipped
    exit_code: Optional[int] = None
    duration: float = 0.0
    detail: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "status": self.status,
            "exit_code": self.exit_code,
            "duration": round(self.duration, 3),
            "detail": self.detail,
        }


@dataclass
class JobResult:
    job_id: str
    platform_id: str
    status: str
    steps: List[StepResult] = field(default_factory=list)
    artifacts: List[Artifact] = field(default_factory=list)
    error: str | None = None
    workspace: Path | None = None

    @property
    def succeeded(self) -> bool:
        return self.status == SUCCEEDED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "platform_id": self.platform_id,
            "status": self.status,
            "error": self.error,
            "steps": [s.to_dict() for s in self.steps],
            "artifacts": [{"name": a.name, "sha256": a.sha256, "size": a.size} for a in self.artifacts],
        }


@dataclass
class PublishOutcome:
    target: str
    status: str                     # published | unchanged | failed
    files: List[str] = field(default_factory=list)
    detail: str = ""

    @property
    def ok(self) -> bool:
        return self.status in (PUBLISHED, UNCHANGED)

    def to_dict(self) -> Dict[str, Any]:
        return {"target": self.target, "status": self.status, "files": self.files, "detail": self.detail}


@dataclass
class JobReport:
    job: JobResult
    publishes: List[PublishOutcome] = field(default_factory=list)
    pipeline: str = ""

    def to_dict(self) -> Dict[str, Any]:
        d = self.job.to_dict()
        d["pipeline"] = self.pipeline
        d["publishes"] = [p.to_dict() for p in self.publishes]
        return d


def tally(jobs: List[JobReport]) -> Tuple[int, int]:
    """(succeeded slots, failed slots) over jobs and publish targets."""
    ok = bad = 0
    for jr in jobs:
        if jr.job.succeeded:
            ok += 1
        else:
            bad += 1
        for p in jr.publishes:
            if p.ok:
                ok += 1
            else:
                bad += 1
    return ok, bad


@dataclass
class RunReport:
    event: TriggerEvent
    status: str
    jobs: List[JobReport] = field(default_factory=list)
    triggered: List[str] = field(default_factory=list)
    cancelled: bool = False
    run_id: str = ""

    def counts(self) -> Tuple[int, int]:
        return tally(self.jobs)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event": {
                "ref_kind": self.event.ref_kind,
                "ref_name": self.event.ref_name,
                "commit_sha": self.event.commit_sha,
            },
            "run_id": self.run_id,
            "status": self.status,
            "cancelled": self.cancelled,
            "triggered": list(self.triggered),
            "jobs": [j.to_dict() for j in self.jobs],
        }
