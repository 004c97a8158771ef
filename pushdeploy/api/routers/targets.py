"""Target API router: targets with their lock state and latest run."""

from collections.abc import Sequence

from fastapi import APIRouter

from pushdeploy.api.dependencies import LockRepositoryDep, RunRepositoryDep, TargetRepositoryDep
from pushdeploy.models.target import Target, TargetRead, TargetState

router = APIRouter(tags=["Targets"], responses={404: {"description": "Not found"}})


@router.get("", response_model=list[TargetRead])
async def list_targets(repo: TargetRepositoryDep) -> Sequence[Target]:
    """List synchronized targets."""
    return await repo.list_all()


@router.get("/{name}", response_model=TargetState)
async def get_target_state(
    name: str,
    targets: TargetRepositoryDep,
    locks: LockRepositoryDep,
    runs: RunRepositoryDep,
) -> TargetState:
    """Get a target's lock state and its most recent run.

    Raises:
        TargetNotFoundError: If the target is unknown (→ 404).
    """
    target = await targets.get(name)
    lock = await locks.get_for_target(name)
    latest = await runs.latest_for_target(name)
    return TargetState(
        target=TargetRead.model_validate(target),
        locked=lock is not None,
        lock_owner=lock.owner if lock else None,
        active_run_id=lock.run_id if lock else None,
        latest_run_id=latest.id if latest else None,
        latest_status=latest.status.value if latest else None,
    )
