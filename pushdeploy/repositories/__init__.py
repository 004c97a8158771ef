"""Repository layer for data access operations."""

from pushdeploy.repositories.base import BaseRepository
from pushdeploy.repositories.event_repository import EventRepository
from pushdeploy.repositories.pipeline_definition_repository import PipelineDefinitionRepository
from pushdeploy.repositories.run_repository import LockRepository, RunRepository
from pushdeploy.repositories.target_repository import TargetRepository

__all__ = [
    "BaseRepository",
    "EventRepository",
    "LockRepository",
    "PipelineDefinitionRepository",
    "RunRepository",
    "TargetRepository",
]
