"""
Base models for pushdeploy.

This module provides the shared enumerations and helpers
used throughout the pushdeploy models.
"""

import enum
from datetime import UTC, datetime


def utcnow() -> datetime:
    """Timezone-aware current time used for every stored timestamp."""
    return datetime.now(UTC)


class RunStatus(str, enum.Enum):
    """Enumeration of possible run status values."""

    queued = "queued"
    running = "running"
    succeeded = "succeeded"
    failed = "failed"
    cancelled = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_RUN_STATUSES


TERMINAL_RUN_STATUSES = frozenset({RunStatus.succeeded, RunStatus.failed, RunStatus.cancelled})

# Forward-only state machine; no state is ever revisited.
RUN_TRANSITIONS: dict[RunStatus, frozenset[RunStatus]] = {
    RunStatus.queued: frozenset({RunStatus.running, RunStatus.failed, RunStatus.cancelled}),
    RunStatus.running: TERMINAL_RUN_STATUSES,
    RunStatus.succeeded: frozenset(),
    RunStatus.failed: frozenset(),
    RunStatus.cancelled: frozenset(),
}


class StageStatus(str, enum.Enum):
    """Enumeration of stage outcomes."""

    succeeded = "succeeded"
    failed = "failed"
    cancelled = "cancelled"


class StagePolicy(str, enum.Enum):
    """Whether a stage failure halts the run or is only recorded."""

    fatal = "fatal"
    best_effort = "best-effort"


class StageKind(str, enum.Enum):
    """Enumeration of stage executor kinds."""

    permission_repair = "permission_repair"
    file_sync = "file_sync"
    dependency_install = "dependency_install"
    service_restart = "service_restart"
    command = "command"


def as_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes read back from SQLite."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value
