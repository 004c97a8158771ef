"""Trigger API router.

Receives signed push deliveries and starts runs. Every delivery is
recorded in the audit log, accepted or not.
"""

from typing import Any

from fastapi import APIRouter, Request, status

from pushdeploy.api.dependencies import TriggerServiceDep
from pushdeploy.models.event import TriggerResponse

router = APIRouter(
    tags=["Trigger"],
    responses={
        400: {"description": "Malformed, unsupported or disallowed delivery"},
        401: {"description": "Invalid delivery signature"},
        409: {"description": "Every resolved target is busy"},
    },
)


async def _read_payload(request: Request) -> Any:
    try:
        return await request.json()
    except ValueError:
        return None


@router.post("", status_code=status.HTTP_202_ACCEPTED, response_model=TriggerResponse)
async def trigger_all(request: Request, service: TriggerServiceDep) -> TriggerResponse:
    """Start runs for every definition that deploys the pushed branch."""
    return await service.handle(await _read_payload(request))


@router.post("/{pipeline}", status_code=status.HTTP_202_ACCEPTED, response_model=TriggerResponse)
async def trigger_pipeline(
    pipeline: str, request: Request, service: TriggerServiceDep
) -> TriggerResponse:
    """Start runs for one definition."""
    return await service.handle(await _read_payload(request), pipeline)
