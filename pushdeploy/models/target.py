"""
Target and lock models.

A target is one deployment destination. Its lock row is the only shared
mutable resource between runs: the row exists exactly while the target
has a non-terminal run.
"""

from datetime import datetime
from typing import TYPE_CHECKING

from sqlmodel import Field, SQLModel

from .base import utcnow

if TYPE_CHECKING:
    from .pipeline_definition import PipelineDefinition, TargetSpec


class TargetBase(SQLModel):
    """Shared fields for targets."""

    name: str = Field(primary_key=True, max_length=100)
    host: str
    port: int = 22
    user: str
    credential_id: str
    remote_working_dir: str
    service_name: str | None = None
    pipeline_name: str = Field(index=True)


class Target(TargetBase, table=True):
    """Resolved deployment target, persisted when definitions are synced."""

    @classmethod
    def resolve(cls, definition: "PipelineDefinition", spec: "TargetSpec") -> "Target":
        """Merge a target spec with its definition's global fields."""
        return cls(
            name=spec.name,
            host=spec.host,
            port=spec.port,
            user=spec.user or definition.remote_user or "",
            credential_id=spec.credential_id,
            remote_working_dir=spec.remote_working_dir or definition.remote_working_dir,
            service_name=spec.service_name or definition.service_name,
            pipeline_name=definition.name,
        )

    @property
    def address(self) -> str:
        return f"{self.user}@{self.host}:{self.port}"


class TargetRead(TargetBase):
    """API response schema for targets."""

    pass


class TargetLock(SQLModel, table=True):
    """Active-run marker for a target.

    Inserting the row is the atomic check-and-set: a primary key conflict
    means another run holds the target.
    """

    __tablename__ = "target_lock"

    target_name: str = Field(primary_key=True, max_length=100)
    run_id: str = Field(index=True)
    owner: str
    acquired_at: datetime = Field(default_factory=utcnow)


class TargetState(SQLModel):
    """Lock state and most recent run of a target."""

    target: TargetRead
    locked: bool
    lock_owner: str | None = None
    active_run_id: str | None = None
    latest_run_id: str | None = None
    latest_status: str | None = None
