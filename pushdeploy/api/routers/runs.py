"""Run API router: run history, run details and cancellation."""

from collections.abc import Sequence

from fastapi import APIRouter, Query

from pushdeploy.api.dependencies import EngineDep, PaginationDep, RunRepositoryDep
from pushdeploy.models.run import Run, RunRead

router = APIRouter(
    tags=["Runs"],
    responses={404: {"description": "Not found"}, 409: {"description": "Conflict"}},
)


@router.get("", response_model=list[RunRead])
async def list_runs(
    repo: RunRepositoryDep,
    pagination: PaginationDep,
    target: str | None = Query(None, description="Only runs of this target"),
) -> Sequence[Run]:
    """List runs, most recent first."""
    if target:
        return await repo.list_for_target(target, limit=pagination["limit"])
    return await repo.list_recent(limit=pagination["limit"])


@router.get("/{run_id}", response_model=RunRead)
async def get_run(run_id: str, repo: RunRepositoryDep) -> Run:
    """Get a run with its ordered stage results.

    Raises:
        RunNotFoundError: If the run doesn't exist (→ 404).
    """
    return await repo.get(run_id)


@router.post("/{run_id}/cancel", response_model=RunRead)
async def cancel_run(run_id: str, engine: EngineDep) -> Run:
    """Request cancellation of a queued or running run.

    Raises:
        RunNotFoundError: If the run doesn't exist (→ 404).
        RunAlreadyFinishedError: If the run already finished (→ 409).
    """
    return await engine.cancel(run_id, reason="Cancelled through the API")
