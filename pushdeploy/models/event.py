"""
Trigger event models.

``TriggerEvent`` is the inbound notification as delivered; it is never
mutated. ``EventRecord`` is the audit row written for every delivery,
accepted or rejected.
"""

from datetime import datetime
from typing import Annotated

from pydantic import BaseModel, ConfigDict, Field, StringConstraints
from sqlalchemy import Column, Text
from sqlmodel import JSON, SQLModel
from sqlmodel import Field as SQLField

from .base import utcnow

CommitSHA = Annotated[str, StringConstraints(pattern=r"^[0-9a-fA-F]{7,40}$")]
BRANCH_REF_PREFIX = "refs/heads/"


class TriggerEvent(BaseModel):
    """Inbound push notification.

    Args:
        event: Event kind, e.g. ``push``.
        ref: Branch reference, ``refs/heads/<branch>`` or a bare branch name.
        commit_sha: Commit that was pushed.
        delivery_signature: HMAC-SHA256 of the event, ref and commit.
        target: Optional target name restricting the fan-out.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    event: str = Field(min_length=1, max_length=64)
    ref: str = Field(min_length=1, max_length=255)
    commit_sha: CommitSHA = Field(alias="commitSHA")
    delivery_signature: str = Field(alias="deliverySignature")
    target: str | None = None

    @property
    def branch(self) -> str:
        if self.ref.startswith(BRANCH_REF_PREFIX):
            return self.ref[len(BRANCH_REF_PREFIX) :]
        return self.ref

    @property
    def is_branch_ref(self) -> bool:
        """Tags and other non-branch refs never deploy."""
        if self.ref.startswith("refs/"):
            return self.ref.startswith(BRANCH_REF_PREFIX) and bool(self.branch)
        return True


class TriggerRef(BaseModel):
    """The ref and commit a run deploys."""

    model_config = ConfigDict(frozen=True)

    ref: str
    commit_sha: str

    @property
    def branch(self) -> str:
        return self.ref.removeprefix(BRANCH_REF_PREFIX)

    @classmethod
    def from_event(cls, event: TriggerEvent) -> "TriggerRef":
        return cls(ref=event.ref, commit_sha=event.commit_sha)


class EventRecordBase(SQLModel):
    """Shared fields for trigger audit records."""

    event: str | None = None
    ref: str | None = None
    commit_sha: str | None = None
    pipeline_name: str | None = None
    accepted: bool
    status_code: int
    reason: str = SQLField(sa_column=Column(Text, nullable=False))
    run_ids: list[str] = SQLField(default_factory=list, sa_column=Column(JSON))
    received_at: datetime = SQLField(default_factory=utcnow, index=True)


class EventRecord(EventRecordBase, table=True):
    """Audit record of one trigger delivery."""

    __tablename__ = "trigger_event"

    id: int | None = SQLField(default=None, primary_key=True)


class EventRecordRead(EventRecordBase):
    """API response schema for audit records."""

    id: int


class TriggeredRun(BaseModel):
    """A run started, or refused, for one target of a delivery."""

    pipeline: str
    target: str
    run_id: str | None = None


class TriggerResponse(BaseModel):
    """Response body of an accepted delivery."""

    runs: list[TriggeredRun] = []
    busy: list[TriggeredRun] = []
