"""
Common dependencies for pushdeploy API endpoints.

This module provides reusable dependency functions for FastAPI endpoints
including repositories, the pipeline engine and query parameters.
"""

from typing import Annotated

from fastapi import Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from ..exceptions.domain import ConfigurationError
from ..repositories import (
    EventRepository,
    LockRepository,
    PipelineDefinitionRepository,
    RunRepository,
    TargetRepository,
)
from ..services.pipeline.engine import PipelineEngine
from ..services.trigger_service import TriggerService
from ..utils.database import get_async_session

SessionDep = Annotated[AsyncSession, Depends(get_async_session)]


async def get_engine(request: Request) -> PipelineEngine:
    """
    Get the pipeline engine created by the application lifespan.

    Args:
        request: FastAPI request object

    Returns:
        The application's PipelineEngine
    """
    engine: PipelineEngine | None = getattr(request.app.state, "engine", None)
    if engine is None:
        raise ConfigurationError("Pipeline engine is not initialized")
    return engine


EngineDep = Annotated[PipelineEngine, Depends(get_engine)]


async def get_trigger_service(engine: EngineDep) -> TriggerService:
    return TriggerService(engine)


TriggerServiceDep = Annotated[TriggerService, Depends(get_trigger_service)]


async def get_run_repository(session: SessionDep) -> RunRepository:
    return RunRepository(session)


async def get_lock_repository(session: SessionDep) -> LockRepository:
    return LockRepository(session)


async def get_target_repository(session: SessionDep) -> TargetRepository:
    return TargetRepository(session)


async def get_event_repository(session: SessionDep) -> EventRepository:
    return EventRepository(session)


async def get_pipeline_definition_repository(session: SessionDep) -> PipelineDefinitionRepository:
    return PipelineDefinitionRepository(session)


RunRepositoryDep = Annotated[RunRepository, Depends(get_run_repository)]
LockRepositoryDep = Annotated[LockRepository, Depends(get_lock_repository)]
TargetRepositoryDep = Annotated[TargetRepository, Depends(get_target_repository)]
EventRepositoryDep = Annotated[EventRepository, Depends(get_event_repository)]
PipelineDefinitionRepositoryDep = Annotated[
    PipelineDefinitionRepository, Depends(get_pipeline_definition_repository)
]


async def common_parameters(
    limit: int = Query(50, ge=1, le=500, description="Maximum number of items to return"),
) -> dict[str, int]:
    """
    Get common query parameters for listing endpoints.

    Args:
        limit: Maximum number of items to return

    Returns:
        Dictionary with the limit parameter
    """
    return {"limit": limit}


PaginationDep = Annotated[dict[str, int], Depends(common_parameters)]
