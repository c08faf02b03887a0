from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any

import sqlalchemy as sa
from fastapi import BackgroundTasks, FastAPI, HTTPException
from pydantic import BaseModel, Field

from ..cache import open_cache
from ..model import RUN_FAILED, RUN_NOT_TRIGGERED, RUNNING, PipelineDefinition, RunReport, TriggerEvent
from ..orchestrator import Orchestrator
from ..runner import load_pipelines
from ..secrets import Secrets
from ..trigger import triggered
from ..ui.console import get_console
from . import settings
from .db import SessionLocal, get_engine
from .models import Base, Run, RunJob, RunPublish

app = FastAPI(title="relci release pipelines")

# -------------------- Schemas --------------------

class PushEvent(BaseModel):
    ref: str
    after: str = ""

class EventResponse(BaseModel):
    status: str
    run_id: str | None = None
    pipelines: list[str] = Field(default_factory=list)

class PublishOut(BaseModel):
    target: str
    status: str
    files: list[str]
    detail: str

class JobOut(BaseModel):
    job_id: str
    pipeline: str
    platform_id: str
    status: str
    error: str | None
    steps: list[dict[str, Any]]
    artifacts: list[dict[str, Any]]
    publishes: list[PublishOut]

class RunOut(BaseModel):
    id: str
    ref_kind: str
    ref_name: str
    commit_sha: str
    status: str
    cancelled: bool
    triggered: list[str]
    error: str | None
    created_at: datetime | None
    finished_at: datetime | None
    jobs: list[JobOut]

class RunSummary(BaseModel):
    id: str
    ref_name: str
    status: str
    created_at: datetime | None

# -------------------- Startup --------------------

@app.on_event("startup")
async def startup() -> None:
    async with get_engine().begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

def now_utc() -> datetime:
    return datetime.now(timezone.utc)

# -------------------- Runs --------------------

def make_orchestrator() -> Orchestrator:
    secrets = Secrets.from_file(settings.SECRETS_FILE) if settings.SECRETS_FILE else Secrets()
    return Orchestrator(
        open_cache(settings.CACHE_DIR, settings.REDIS_URL, settings.CACHE_TTL),
        secrets=secrets,
        work_root=settings.WORK_DIR,
        max_workers=settings.MAX_WORKERS,
        console=get_console(),
    )

async def archive_report(run_id: str, report: RunReport) -> None:
    async with SessionLocal() as s:
        async with s.begin():
            run = await s.get(Run, run_id)
            run.status = report.status
            run.cancelled = report.cancelled
            run.finished_at = now_utc()

            for jr in report.jobs:
                d = jr.job.to_dict()
                row = RunJob(
                    run_id=run_id,
                    job_id=jr.job.job_id,
                    pipeline=jr.pipeline,
                    platform_id=jr.job.platform_id,
                    status=jr.job.status,
                    error=jr.job.error,
                    steps=d["steps"],
                    artifacts=d["artifacts"],
                )
                s.add(row)
                await s.flush()
                for p in jr.publishes:
                    s.add(RunPublish(run_job_id=row.id, target=p.target, status=p.status,
                                     files=list(p.files), detail=p.detail))

async def execute_run(run_id: str, definitions: list[PipelineDefinition], event: TriggerEvent) -> None:
    try:
        # builds block for minutes; keep them off the event loop
        report = await asyncio.to_thread(make_orchestrator().run, definitions, event, run_id=run_id)
    except Exception as e:
        get_console().print_exception(e)
        async with SessionLocal() as s:
            async with s.begin():
                run = await s.get(Run, run_id)
                run.status = RUN_FAILED
                run.error = str(e)
                run.finished_at = now_utc()
        return
    await archive_report(run_id, report)

# -------------------- Endpoints --------------------

@app.post("/events", response_model=EventResponse)
async def receive_event(req: PushEvent, background: BackgroundTasks):
    try:
        event = TriggerEvent.from_ref(req.ref, req.after)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))

    try:
        definitions = load_pipelines(settings.PIPELINES)
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Could not load pipelines: {e}")

    fired = triggered(definitions, event)
    if not fired:
        return EventResponse(status=RUN_NOT_TRIGGERED)

    async with SessionLocal() as s:
        async with s.begin():
            run = Run(
                ref_kind=event.ref_kind,
                ref_name=event.ref_name,
                commit_sha=event.commit_sha,
                status=RUNNING,
                triggered=[d.name for d in fired],
            )
            s.add(run)
            await s.flush()
            run_id = run.id

    background.add_task(execute_run, run_id, fired, event)
    return EventResponse(status=RUNNING, run_id=run_id, pipelines=[d.name for d in fired])

@app.get("/runs", response_model=list[RunSummary])
async def list_runs(limit: int = 20):
    async with SessionLocal() as s:
        q = sa.select(Run).order_by(Run.created_at.desc()).limit(limit)
        runs = (await s.execute(q)).scalars().all()
        return [RunSummary(id=r.id, ref_name=r.ref_name, status=r.status, created_at=r.created_at) for r in runs]

@app.get("/runs/{run_id}", response_model=RunOut)
async def get_run(run_id: str):
    """Archived report of one run, with every job and destination."""
    async with SessionLocal() as s:
        run = await s.get(Run, run_id)
        if not run:
            raise HTTPException(status_code=404, detail="Run not found")

        jobs = (await s.execute(
            sa.select(RunJob).where(RunJob.run_id == run_id).order_by(RunJob.id)
        )).scalars().all()
        publishes = (await s.execute(
            sa.select(RunPublish).where(RunPublish.run_job_id.in_([j.id for j in jobs])).order_by(RunPublish.id)
        )).scalars().all() if jobs else []

        by_job: dict[int, list[PublishOut]] = {}
        for p in publishes:
            by_job.setdefault(p.run_job_id, []).append(
                PublishOut(target=p.target, status=p.status, files=p.files, detail=p.detail)
            )

        return RunOut(
            id=run.id,
            ref_kind=run.ref_kind,
            ref_name=run.ref_name,
            commit_sha=run.commit_sha,
            status=run.status,
            cancelled=run.cancelled,
            triggered=run.triggered,
            error=run.error,
            created_at=run.created_at,
            finished_at=run.finished_at,
            jobs=[
                JobOut(
                    job_id=j.job_id,
                    pipeline=j.pipeline,
                    platform_id=j.platform_id,
                    status=j.status,
                    error=j.error,
                    steps=j.steps,
                    artifacts=j.artifacts,
                    publishes=by_job.get(j.id, []),
                )
                for j in jobs
            ],
        )
