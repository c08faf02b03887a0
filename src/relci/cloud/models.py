from __future__ import annotations

import uuid
from datetime import datetime

import sqlalchemy as sa
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def _uuid() -> str:
    return str(uuid.uuid4())


class Base(DeclarativeBase):
    pass


class Run(Base):
    __tablename__ = "runs"
    id: Mapped[str] = mapped_column(sa.String(36), primary_key=True, default=_uuid)
    ref_kind: Mapped[str] = mapped_column(sa.Text, nullable=False)
    ref_name: Mapped[str] = mapped_column(sa.Text, nullable=False)
    commit_sha: Mapped[str] = mapped_column(sa.Text, nullable=False, default="")
    status: Mapped[str] = mapped_column(sa.Text, nullable=False)
    cancelled: Mapped[bool] = mapped_column(sa.Boolean, nullable=False, default=False)
    triggered: Mapped[list] = mapped_column(sa.JSON, nullable=False, default=list)
    error: Mapped[str | None] = mapped_column(sa.Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(sa.TIMESTAMP(timezone=True), server_default=sa.func.now(), nullable=False)
    finished_at: Mapped[datetime | None] = mapped_column(sa.TIMESTAMP(timezone=True), nullable=True)


class RunJob(Base):
    __tablename__ = "run_jobs"
    id: Mapped[int] = mapped_column(sa.Integer, primary_key=True, autoincrement=True)
    run_id: Mapped[str] = mapped_column(sa.String(36), sa.ForeignKey("runs.id", ondelete="CASCADE"), nullable=False)
    job_id: Mapped[str] = mapped_column(sa.Text, nullable=False)
    pipeline: Mapped[str] = mapped_column(sa.Text, nullable=False)
    platform_id: Mapped[str] = mapped_column(sa.Text, nullable=False)
    status: Mapped[str] = mapped_column(sa.Text, nullable=False)
    error: Mapped[str | None] = mapped_column(sa.Text, nullable=True)
    steps: Mapped[list] = mapped_column(sa.JSON, nullable=False, default=list)
    artifacts: Mapped[list] = mapped_column(sa.JSON, nullable=False, default=list)


class RunPublish(Base):
    __tablename__ = "run_publishes"
    id: Mapped[int] = mapped_column(sa.Integer, primary_key=True, autoincrement=True)
    run_job_id: Mapped[int] = mapped_column(sa.Integer, sa.ForeignKey("run_jobs.id", ondelete="CASCADE"), nullable=False)
    target: Mapped[str] = mapped_column(sa.Text, nullable=False)
    status: Mapped[str] = mapped_column(sa.Text, nullable=False)
    files: Mapped[list] = mapped_column(sa.JSON, nullable=False, default=list)
    detail: Mapped[str] = mapped_column(sa.Text, nullable=False, default="")
