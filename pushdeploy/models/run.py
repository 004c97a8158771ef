"""
Run-related models for pushdeploy.

This module provides models for runs and their stage results.
"""

from datetime import datetime
from uuid import uuid4

from sqlalchemy import Column, Text
from sqlmodel import Field, Relationship, SQLModel

from .base import RunStatus, StagePolicy, StageStatus, utcnow


def new_run_id() -> str:
    return uuid4().hex


class RunBase(SQLModel):
    """Base model for run data."""

    pipeline_name: str = Field(index=True)
    target_name: str = Field(index=True)
    ref: str
    commit_sha: str


class Run(RunBase, table=True):
    """One execution of a pipeline definition against one target."""

    id: str = Field(default_factory=new_run_id, primary_key=True, max_length=32)
    status: RunStatus = Field(default=RunStatus.queued, index=True)
    reason: str | None = Field(default=None, sa_column=Column(Text))
    failed_stage: str | None = None
    error_kind: str | None = None
    owner: str
    cancel_requested: bool = False

    created_at: datetime = Field(default_factory=utcnow, index=True)
    started_at: datetime | None = None
    finished_at: datetime | None = None

    stage_results: list["StageResult"] = Relationship(
        back_populates="run",
        sa_relationship_kwargs={
            "lazy": "selectin",
            "order_by": "StageResult.position",
            "cascade": "all, delete-orphan",
        },
    )


class StageResultBase(SQLModel):
    """Base model for stage result data."""

    position: int
    name: str
    kind: str
    policy: StagePolicy
    status: StageStatus
    exit_code: int | None = None
    output: str = Field(default="", sa_column=Column(Text, nullable=False, default=""))
    output_truncated: bool = False
    error_kind: str | None = None
    detail: str | None = Field(default=None, sa_column=Column(Text))
    attempts: int = 1
    retried: bool = False
    bytes_transferred: int | None = None
    changed_files: int | None = None
    started_at: datetime
    finished_at: datetime


class StageResult(StageResultBase, table=True):
    """Outcome of one stage within a run."""

    __tablename__ = "stage_result"

    id: int | None = Field(default=None, primary_key=True)
    run_id: str = Field(foreign_key="run.id", index=True)

    run: Run | None = Relationship(back_populates="stage_results")


class StageResultRead(StageResultBase):
    """API response schema for stage results."""

    pass


class RunRead(RunBase):
    """API response schema for runs, including ordered stage results."""

    id: str
    status: RunStatus
    reason: str | None
    failed_stage: str | None
    error_kind: str | None
    owner: str
    cancel_requested: bool
    created_at: datetime
    started_at: datetime | None
    finished_at: datetime | None
    stage_results: list[StageResultRead] = []
