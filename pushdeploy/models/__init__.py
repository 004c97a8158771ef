"""
pushdeploy data models.

This package contains the SQLModel-based models that define the database schema
and the pydantic models for pipeline definitions and trigger events.
"""

# Base models
from .base import (
    RUN_TRANSITIONS,
    TERMINAL_RUN_STATUSES,
    RunStatus,
    StageKind,
    StagePolicy,
    StageStatus,
)

# Event models
from .event import (
    EventRecord,
    EventRecordRead,
    TriggeredRun,
    TriggerEvent,
    TriggerRef,
    TriggerResponse,
)

# Pipeline definition models
from .pipeline_definition import (
    PipelineDefinition,
    PipelineDefinitionRead,
    PipelineDefinitionRecord,
    StageSpec,
    TargetSpec,
)

# Run models
from .run import Run, RunRead, StageResult, StageResultRead

# Target models
from .target import Target, TargetLock, TargetRead, TargetState

__all__ = [
    # Base
    "RUN_TRANSITIONS",
    "TERMINAL_RUN_STATUSES",
    "RunStatus",
    "StageKind",
    "StagePolicy",
    "StageStatus",
    # Event
    "EventRecord",
    "EventRecordRead",
    "TriggerEvent",
    "TriggerRef",
    "TriggerResponse",
    "TriggeredRun",
    # Pipeline definition
    "PipelineDefinition",
    "PipelineDefinitionRead",
    "PipelineDefinitionRecord",
    "StageSpec",
    "TargetSpec",
    # Run
    "Run",
    "RunRead",
    "StageResult",
    "StageResultRead",
    # Target
    "Target",
    "TargetLock",
    "TargetRead",
    "TargetState",
]
