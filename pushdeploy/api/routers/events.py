"""Trigger audit log API router."""

from collections.abc import Sequence

from fastapi import APIRouter, Query

from pushdeploy.api.dependencies import EventRepositoryDep, PaginationDep
from pushdeploy.models.event import EventRecord, EventRecordRead

router = APIRouter(tags=["Events"])


@router.get("", response_model=list[EventRecordRead])
async def list_events(
    repo: EventRepositoryDep,
    pagination: PaginationDep,
    accepted: bool | None = Query(None, description="Filter by outcome"),
) -> Sequence[EventRecord]:
    """List trigger deliveries, most recent first."""
    return await repo.list_recent(limit=pagination["limit"], accepted=accepted)
