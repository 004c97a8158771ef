"""Pipeline definition API router.

Lists loaded definitions and lets an operator reload them from disk
without restarting the server.
"""

from collections.abc import Sequence

from fastapi import APIRouter

from pushdeploy.api.dependencies import EngineDep, PipelineDefinitionRepositoryDep
from pushdeploy.models.pipeline_definition import (
    PipelineDefinitionRead,
    PipelineDefinitionRecord,
)
from pushdeploy.services.pipeline.loader import reload_definitions, sync_definitions

router = APIRouter(tags=["Pipelines"])


@router.get("", response_model=list[PipelineDefinitionRead])
async def list_pipelines(repo: PipelineDefinitionRepositoryDep) -> Sequence[PipelineDefinitionRecord]:
    """List stored pipeline definitions."""
    return await repo.list_all()


@router.get("/{name}/definition", response_model=PipelineDefinitionRead)
async def get_pipeline_definition(
    name: str,
    repo: PipelineDefinitionRepositoryDep,
) -> PipelineDefinitionRecord:
    """Get pipeline definition by name.

    Args:
        name: Pipeline name.
        repo: Pipeline definition repository.

    Returns:
        Stored definition with stages and targets.

    Raises:
        EntityNotFoundError: If pipeline not found (→ 404).
    """
    return await repo.get(name)


@router.post("/sync")
async def sync_pipeline_definitions(engine: EngineDep) -> dict[str, int]:
    """Reload definition files and sync them to the database.

    Invalid files are skipped and logged. Use after editing definitions
    without restarting the server.

    Returns:
        Number of synced definitions.
    """
    definitions = reload_definitions(engine.config.get_definitions_dir())
    synced = await sync_definitions(engine.session_factory, definitions)
    return {"synced": synced}
