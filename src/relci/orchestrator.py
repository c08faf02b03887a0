# orchestrator.py
from __future__ import annotations

import shutil
import uuid
from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path
from typing import Dict, List, Sequence

from .cache import CacheStore
from .cancel import CancelToken
from .matrix import expand
from .model import (
    FAILED,
    RUN_FAILED,
    RUN_NOT_TRIGGERED,
    RUN_PARTIAL,
    RUN_SUCCESS,
    JobInstance,
    JobReport,
    JobResult,
    PipelineDefinition,
    RunReport,
    TriggerEvent,
    tally,
)
from .publish.publisher import Publisher
from .runner import run_job
from .secrets import Secrets
from .trigger import triggered
from .ui.console import Console, get_console

DEFAULT_WORK_DIR = ".relci/work"

EXIT_SUCCESS = 0
EXIT_FAILED = 1
EXIT_PARTIAL = 3
EXIT_CANCELLED = 130

# run states
IDLE = "idle"
TRIGGERED = "triggered"
EXPANDING = "expanding"
RUNNING = "running"
DONE = "done"


def reduce_status(jobs: Sequence[JobReport]) -> str:
    """
    Fold every job slot and publish target into one run status.

      success        everything succeeded
      partial        at least one success and at least one failure
      failed         nothing succeeded
      not_triggered  there were no job slots at all
    """
    if not jobs:
        return RUN_NOT_TRIGGERED
    ok, bad = tally(list(jobs))
    if bad == 0:
        return RUN_SUCCESS
    if ok == 0:
        return RUN_FAILED
    return RUN_PARTIAL


def exit_code_for(report: RunReport) -> int:
    if report.cancelled:
        return EXIT_CANCELLED
    return {
        RUN_SUCCESS: EXIT_SUCCESS,
        RUN_NOT_TRIGGERED: EXIT_SUCCESS,
        RUN_PARTIAL: EXIT_PARTIAL,
    }.get(report.status, EXIT_FAILED)


def plan_jobs(definitions: Sequence[PipelineDefinition], event: TriggerEvent) -> List[JobInstance]:
    """Evaluate triggers and expand every matching definition; runs nothing."""
    jobs: List[JobInstance] = []
    for definition in triggered(definitions, event):
        jobs.extend(expand(definition, event))
    return jobs


def ensure_clean_dir(path: Path) -> None:
    if path.exists():
        shutil.rmtree(path)
    path.mkdir(parents=True, exist_ok=True)


def _slug(text: str) -> str:
    return "".join(c if c.isalnum() or c in "-_." else "_" for c in text)


class Orchestrator:
    """
    Top-level coordinator: trigger -> expand -> run jobs -> publish -> report.

    Jobs run concurrently and independently. There is no fail-fast across
    jobs: one platform failing never cancels its siblings. Only an operator
    cancel (the shared CancelToken) stops running jobs, and it also prevents
    any publication that has not started yet.
    """

    def __init__(
        self,
        cache: CacheStore,
        *,
        secrets: Secrets | None = None,
        work_root: str | Path = DEFAULT_WORK_DIR,
        max_workers: int | None = None,
        console: Console | None = None,
        cancel: CancelToken | None = None,
        home: Path | None = None,
    ):
        self.cache = cache
        self.secrets = secrets or Secrets()
        self.work_root = Path(work_root).resolve()
        self.max_workers = max_workers
        self.console = console or get_console()
        self.cancel = cancel or CancelToken()
        self.home = home
        self.state = IDLE

    def _enter(self, state: str) -> None:
        self.state = state
        self.console.print_debug(f"run state -> {state}")

    def plan(self, definitions: Sequence[PipelineDefinition], event: TriggerEvent) -> List[JobInstance]:
        return plan_jobs(definitions, event)

    def run(
        self,
        definitions: Sequence[PipelineDefinition],
        event: TriggerEvent,
        *,
        run_id: str | None = None,
    ) -> RunReport:
        """
        Run every triggered job and publish the ones that succeed.

        Jobs work under work_root/<ref>/<run_id>/<job>/; run_id defaults to a
        fresh random id.
        """
        run_id = run_id or uuid.uuid4().hex[:12]
        fired = triggered(definitions, event)
        if not fired:
            self._enter(DONE)
            self.console.print_not_triggered(event.ref_name)
            return RunReport(event=event, status=RUN_NOT_TRIGGERED)

        self._enter(TRIGGERED)
        self._enter(EXPANDING)
        jobs = plan_jobs(fired, event)

        self.console.print_run_started(event.ref_name, [d.name for d in fired], len(jobs))
        publisher = Publisher(self.secrets, event, console=self.console)

        self._enter(RUNNING)
        reports: Dict[int, JobReport] = {}
        workers = self.max_workers or max(1, len(jobs))
        run_dir = self.work_root / _slug(event.ref_name) / _slug(run_id)
        with ThreadPoolExecutor(max_workers=workers) as pool:
            futures = {pool.submit(self._run_slot, job, publisher, run_dir): i for i, job in enumerate(jobs)}
            for fut in as_completed(futures):
                i = futures[fut]
                try:
                    reports[i] = fut.result()
                except Exception as e:
                    # contained to this slot; siblings keep running
                    job = jobs[i]
                    job.status = FAILED
                    self.console.print_failure(job.job_id, str(e), is_job=True)
                    reports[i] = JobReport(
                        job=JobResult(job.job_id, job.platform_id, FAILED, error=str(e)),
                        pipeline=job.pipeline,
                    )

        ordered = [reports[i] for i in range(len(jobs))]
        self._enter(DONE)
        return RunReport(
            event=event,
            status=reduce_status(ordered),
            run_id=run_id,
            jobs=ordered,
            triggered=[d.name for d in fired],
            cancelled=self.cancel.cancelled,
        )

    def _run_slot(self, job: JobInstance, publisher: Publisher, run_dir: Path) -> JobReport:
        job_dir = run_dir / _slug(job.job_id)
        ensure_clean_dir(job_dir)
        # host jobs get their own $HOME unless one was configured
        home = self.home or job_dir / "home"
        home.mkdir(parents=True, exist_ok=True)

        result = run_job(
            job,
            self.cache,
            workspace=job_dir / "workspace",
            log_dir=job_dir / "logs",
            cancel=self.cancel,
            console=self.console,
            home=home,
        )
        report = JobReport(job=result, pipeline=job.pipeline)

        # a cancel that lands after this point lets the publication finish
        if result.succeeded and not self.cancel.cancelled:
            report.publishes = publisher.publish(result, result.artifacts, job.template.publish_targets)
        return report
