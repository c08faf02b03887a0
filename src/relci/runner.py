# runner.py
from __future__ import annotations

import runpy
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

from .cache import CacheKey, CacheStore, hash_file, hash_lockfile
from .cancel import CancelToken, JobCancelled
from .environments.docker import DockerEnvironment, check_docker_available
from .environments.local import LocalEnvironment, tail
from .git_facts import git
from .model import (
    FAILED,
    RUNNING,
    SUCCEEDED,
    Artifact,
    CacheClass,
    CacheRestoreStep,
    CacheSaveStep,
    CheckoutStep,
    JobInstance,
    JobResult,
    PipelineDefinition,
    ShellStep,
    Step,
    StepResult,
)
from .ui.console import Console, get_console


# ----------------------------------------------------------------------
# Errors
# ----------------------------------------------------------------------

@dataclass
class CIError(Exception):
    """
    Structured CI error with enough context for:
      - clean CLI output
      - the run report
      - debugging without full tracebacks
    """
    kind: str
    job: str
    step: str | None
    message: str
    details: dict

    def __str__(self) -> str:
        lines = [f"{self.kind}: {self.message}", f"job={self.job}"]
        if self.step:
            lines.append(f"step={self.step}")
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)


@dataclass
class StepFailure(Exception):
    """A step exited non-zero or ran past its deadline; halts the owning job only."""
    job: str
    step: str
    cmd: str
    exit_code: int
    timed_out: bool = False
    output_tail: str = ""

    def __str__(self) -> str:
        why = "timed out" if self.timed_out else f"exit={self.exit_code}"
        return f"[{self.job}] step '{self.step}' failed ({why}): {self.cmd}"


TOOL_HINTS = {
    "docker": "Install Docker and ensure the daemon is running.",
    "git": "Install Git or fix PATH.",
    "bash": "Install bash or fix PATH.",
}


# ----------------------------------------------------------------------
# Pipeline loading (local file/module)
# ----------------------------------------------------------------------

def load_pipelines(path: str | Path) -> List[PipelineDefinition]:
    """
    Load pipeline definitions from a python file path.

    The file must define either:
      - pipelines() -> List[PipelineDefinition]
      - PIPELINES = [PipelineDefinition, ...]
    """
    pl_path = Path(path).expanduser().resolve()
    if not pl_path.exists():
        raise FileNotFoundError(f"Pipeline file not found: {pl_path}")
    if pl_path.suffix != ".py":
        raise ValueError(f"Pipeline file must be a .py file, got: {pl_path.name}")

    module_name = f"relci_pipelines_{pl_path.stem}"
    globals_dict = runpy.run_path(str(pl_path), run_name=module_name)

    defs = None
    if "pipelines" in globals_dict and callable(globals_dict["pipelines"]):
        defs = globals_dict["pipelines"]()
    elif "PIPELINES" in globals_dict:
        defs = globals_dict["PIPELINES"]

    if not isinstance(defs, list) or not all(isinstance(d, PipelineDefinition) for d in defs):
        raise TypeError(
            "Pipeline file must return/define a List[PipelineDefinition]. "
            "Define pipelines() -> List[PipelineDefinition] or PIPELINES = [...]."
        )

    names = [d.name for d in defs]
    if len(set(names)) != len(names):
        dupes = sorted({n for n in names if names.count(n) > 1})
        raise ValueError(f"Duplicate pipeline names found: {dupes}")
    return defs


# ----------------------------------------------------------------------
# Job context + step kinds
# ----------------------------------------------------------------------

@dataclass
class JobContext:
    job: JobInstance
    environment: object
    workspace: Path
    log_dir: Path
    cache: CacheStore
    console: Console
    cancel: CancelToken | None = None
    step_index: int = 0
    # (key, class) pairs that missed on restore; saved once the job succeeds
    pending_saves: List[Tuple[CacheKey, CacheClass]] = field(default_factory=list)

    def step_env(self) -> Dict[str, str]:
        env = dict(self.job.template.env)
        event = self.job.event
        env.update({
            "RELCI_PIPELINE": self.job.pipeline,
            "RELCI_PLATFORM": self.job.platform_id,
            "RELCI_REF_NAME": event.ref_name,
            "RELCI_TAG": event.ref_name if event.is_tag else "",
            "RELCI_SHA": event.commit_sha,
        })
        for k, v in self.job.params.items():
            env[f"RELCI_{k.upper()}"] = v
        return env

    def cache_key(self, cache_class: CacheClass) -> CacheKey:
        return CacheKey(
            platform_id=self.job.platform_id,
            lockfile_hash=hash_lockfile(self.workspace / cache_class.lockfile),
            cache_class=cache_class.name,
            variant=self.job.variant,
        )


StepHandler = Callable[[JobContext, Step], Optional[str]]
STEP_HANDLERS: Dict[type, StepHandler] = {}


def step_kind(cls: type):
    """Register the handler for a Step subclass; the executor loop never changes."""
    def deco(fn: StepHandler) -> StepHandler:
        STEP_HANDLERS[cls] = fn
        return fn
    return deco


def _handler_for(step: Step) -> StepHandler:
    for klass in type(step).__mro__:
        if klass in STEP_HANDLERS:
            return STEP_HANDLERS[klass]
    raise TypeError(f"No handler registered for step kind {type(step).__name__}")


def _log_path(ctx: JobContext, index: int, step: Step) -> Path:
    safe = "".join(c if c.isalnum() or c in "-_." else "_" for c in step.name)
    return ctx.log_dir / f"{index:02d}-{safe}.log"


@step_kind(ShellStep)
def _run_shell(ctx: JobContext, step: ShellStep) -> Optional[str]:
    log = _log_path(ctx, ctx.step_index, step)
    res = ctx.environment.run(
        step.command,
        cwd=step.cwd,
        env=ctx.step_env(),
        log_path=log,
        timeout=step.timeout,
        cancel=ctx.cancel,
    )
    if res.exit_code != 0:
        raise StepFailure(
            job=ctx.job.job_id,
            step=step.name,
            cmd=step.command,
            exit_code=res.exit_code,
            timed_out=res.timed_out,
            output_tail=tail(log),
        )
    return None


@step_kind(CheckoutStep)
def _run_checkout(ctx: JobContext, step: CheckoutStep) -> Optional[str]:
    repo = ctx.job.repository
    if not repo:
        raise CIError(
            kind="checkout_failed",
            job=ctx.job.job_id,
            step=step.name,
            message="pipeline has no repository to check out",
            details={"hint": "set repository= on the pipeline or pass --repo"},
        )

    event = ctx.job.event
    ref = event.commit_sha or (f"refs/tags/{event.ref_name}" if event.is_tag else f"origin/{event.ref_name}")
    kw = {"timeout": step.timeout}
    try:
        git.init(ctx.workspace, **kw)
        git.set_remote(ctx.workspace, repo, **kw)
        git.fetch_all(ctx.workspace, **kw)
        git.checkout(ref, ctx.workspace, **kw)
        if step.submodules:
            git.update_submodules(ctx.workspace, **kw)
        sha = git.head_sha(ctx.workspace)
    except git.GitError as e:
        raise CIError(
            kind="checkout_failed",
            job=ctx.job.job_id,
            step=step.name,
            message=str(e),
            details={"ref": ref},
        ) from e
    return f"checked out {sha[:12]}"


@step_kind(CacheRestoreStep)
def _run_cache_restore(ctx: JobContext, step: CacheRestoreStep) -> Optional[str]:
    cc = step.cache_class
    key = ctx.cache_key(cc)
    hit = ctx.cache.restore(key, ctx.environment.resolve_path(cc.path))
    if hit.hit:
        ctx.console.print_cache_hit(ctx.job.job_id, cc.name, hit.reason)
    else:
        ctx.console.print_cache_miss(ctx.job.job_id, cc.name, hit.reason)
        ctx.pending_saves.append((key, cc))
    return hit.reason


@step_kind(CacheSaveStep)
def _run_cache_save(ctx: JobContext, step: CacheSaveStep) -> Optional[str]:
    cc = step.cache_class
    key = ctx.cache_key(cc)
    return _save_cache(ctx, key, cc)


def _save_cache(ctx: JobContext, key: CacheKey, cc: CacheClass) -> str:
    # caching is an optimization: a failed write is reported, never fatal
    try:
        saved = ctx.cache.save(key, ctx.environment.resolve_path(cc.path))
    except Exception as e:
        ctx.console.print_cache_warning(ctx.job.job_id, cc.name, f"save failed: {e}")
        return f"save failed: {e}"
    if not saved:
        ctx.console.print_cache_miss(ctx.job.job_id, cc.name, "nothing to save")
        return "nothing to save"
    ctx.console.print_cache_saved(ctx.job.job_id, cc.name, str(key))
    return f"saved {key}"


# ----------------------------------------------------------------------
# Execution
# ----------------------------------------------------------------------

def make_environment(job: JobInstance, workspace: Path, *, home: Path | None = None):
    image = job.template.runner_image
    if image:
        check_docker_available()
        return DockerEnvironment(workspace, image)
    return LocalEnvironment(workspace, home=home)


def artifact_patterns(job: JobInstance) -> List[str]:
    patterns: List[str] = []
    for target in job.template.publish_targets:
        for p in target.artifact_patterns():
            if p not in patterns:
                patterns.append(p)
    return patterns


def collect_artifacts(workspace: Path, patterns: List[str]) -> List[Artifact]:
    """Hash every workspace file matching one of the patterns (deduplicated, sorted)."""
    seen: Dict[Path, Artifact] = {}
    for pat in patterns:
        for p in sorted(workspace.glob(pat)):
            if p.is_file() and p not in seen:
                seen[p] = Artifact(name=p.name, path=p, sha256=hash_file(p), size=p.stat().st_size)
    return sorted(seen.values(), key=lambda a: a.name)


def run_job(
    job: JobInstance,
    cache: CacheStore,
    *,
    workspace: Path,
    log_dir: Path | None = None,
    cancel: CancelToken | None = None,
    console: Console | None = None,
    home: Path | None = None,
    environment=None,
) -> JobResult:
    """
    Run a job's steps strictly in order.

    The first failing step (may_fail=False) marks the job failed and skips the
    rest; siblings are never affected. On success, missed cache classes are
    saved and the job's artifacts are collected.
    """
    console = console or get_console()
    workspace.mkdir(parents=True, exist_ok=True)
    log_dir = log_dir or workspace.parent / "logs"
    result = JobResult(job_id=job.job_id, platform_id=job.platform_id, status=RUNNING, workspace=workspace)
    job.status = RUNNING
    console.print_job_start(job.job_id, job.template.runner_image)

    steps = list(job.template.steps)
    try:
        env = environment or make_environment(job, workspace, home=home)
    except CIError as e:
        return _finish(job, result, FAILED, str(e), steps, 0, console)

    ctx = JobContext(job=job, environment=env, workspace=workspace, log_dir=log_dir,
                     cache=cache, console=console, cancel=cancel)

    for i, step in enumerate(steps):
        if cancel is not None and cancel.cancelled:
            return _finish(job, result, FAILED, "cancelled", steps, i, console)

        ctx.step_index = i
        console.print_step(job.job_id, step.name)
        started = time.monotonic()
        try:
            detail = _handler_for(step)(ctx, step)
        except JobCancelled:
            result.steps.append(StepResult(step.name, FAILED, duration=time.monotonic() - started, detail="cancelled"))
            return _finish(job, result, FAILED, "cancelled", steps, i + 1, console)
        except StepFailure as e:
            sr = StepResult(step.name, FAILED, exit_code=e.exit_code,
                            duration=time.monotonic() - started, detail=e.output_tail)
            result.steps.append(sr)
            if step.may_fail:
                console.print_step_allowed_failure(job.job_id, step.name, e.exit_code)
                continue
            console.print_failure(step.name, e.output_tail or str(e), exit_code=e.exit_code)
            return _finish(job, result, FAILED, str(e), steps, i + 1, console)
        except Exception as e:
            # contained at the step: environment errors (checkout, missing cwd, ...)
            result.steps.append(StepResult(step.name, FAILED, duration=time.monotonic() - started, detail=str(e)))
            if step.may_fail:
                console.print_step_allowed_failure(job.job_id, step.name, -1)
                continue
            console.print_failure(step.name, str(e))
            return _finish(job, result, FAILED, str(e), steps, i + 1, console)

        result.steps.append(StepResult(step.name, SUCCEEDED, exit_code=0,
                                       duration=time.monotonic() - started, detail=detail or ""))

    for key, cc in ctx.pending_saves:
        _save_cache(ctx, key, cc)

    result.artifacts = collect_artifacts(workspace, artifact_patterns(job))
    job.produced_artifacts = list(result.artifacts)
    return _finish(job, result, SUCCEEDED, None, steps, len(steps), console)


def _finish(job, result, status, error, steps, done, console) -> JobResult:
    for step in steps[done:]:
        result.steps.append(StepResult(step.name, "skipped"))
    job.status = status
    result.status = status
    result.error = error
    console.print_job_done(job.job_id, status)
    return result
