"""Service layer for inbound trigger deliveries."""

from collections.abc import Callable
from typing import Any

from pydantic import ValidationError

from pushdeploy.exceptions.domain import (
    BranchNotAllowedError,
    MalformedEventError,
    PipelineNotFoundError,
    PushDeployError,
    SignatureInvalidError,
    TargetBusyError,
    TargetNotFoundError,
    TriggerRejectedError,
    UnsupportedEventError,
)
from pushdeploy.models.event import (
    EventRecord,
    TriggeredRun,
    TriggerEvent,
    TriggerRef,
    TriggerResponse,
)
from pushdeploy.models.pipeline_definition import PipelineDefinition
from pushdeploy.models.target import Target
from pushdeploy.repositories.event_repository import EventRepository
from pushdeploy.services.pipeline.engine import PipelineEngine
from pushdeploy.services.pipeline.loader import get_all_definitions
from pushdeploy.settings import Settings
from pushdeploy.utils.database import SessionFactory
from pushdeploy.utils.logger import logger
from pushdeploy.utils.signature import verify_signature

STATUS_ACCEPTED = 202

# HTTP status recorded for each rejection; the API handlers use the same codes.
REJECTION_STATUS: dict[type[PushDeployError], int] = {
    SignatureInvalidError: 401,
    TriggerRejectedError: 400,
    TargetBusyError: 409,
    PipelineNotFoundError: 404,
    TargetNotFoundError: 404,
}


def rejection_status(error: PushDeployError) -> int:
    for error_type, status in REJECTION_STATUS.items():
        if isinstance(error, error_type):
            return status
    return 500


class TriggerService:
    """Validates deliveries and turns them into runs.

    Args:
        engine: Pipeline engine that starts the runs
        session_factory: Opens sessions for the audit log
        config: Provides the webhook secret, supported events and allowed branches
        definitions: Returns the loaded definitions by name
    """

    def __init__(
        self,
        engine: PipelineEngine,
        session_factory: SessionFactory | None = None,
        config: Settings | None = None,
        definitions: Callable[[], dict[str, PipelineDefinition]] = get_all_definitions,
    ):
        self.engine = engine
        self.session_factory = session_factory or engine.session_factory
        self.config = config or engine.config
        self.definitions = definitions

    async def handle(self, payload: Any, pipeline: str | None = None) -> TriggerResponse:
        """Process one delivery and record it in the audit log.

        Args:
            payload: Decoded JSON body
            pipeline: Restrict resolution to this pipeline

        Returns:
            Runs started and targets found busy

        Raises:
            SignatureInvalidError: If the signature is missing or wrong
            MalformedEventError: If the payload is invalid
            UnsupportedEventError: If the event kind is not handled
            BranchNotAllowedError: If no definition deploys the branch
            PipelineNotFoundError: If ``pipeline`` is unknown
            TargetNotFoundError: If the requested target is not deployed by the branch
            TargetBusyError: If every resolved target is busy
        """
        record = EventRecord(accepted=False, status_code=STATUS_ACCEPTED, reason="", pipeline_name=pipeline)
        if isinstance(payload, dict):
            record.event = _short(payload.get("event"))
            record.ref = _short(payload.get("ref"))
            record.commit_sha = _short(payload.get("commitSHA"))

        try:
            response = await self._process(payload, pipeline, record)
        except PushDeployError as e:
            record.status_code = rejection_status(e)
            record.reason = str(e)
            await self._audit(record)
            logger.warning(f"Rejected delivery ({record.status_code}): {e}")
            raise

        record.accepted = True
        record.run_ids = [r.run_id for r in response.runs if r.run_id]
        record.reason = f"Started {len(response.runs)} runs"
        if response.busy:
            record.reason += f"; busy: {', '.join(b.target for b in response.busy)}"
        await self._audit(record)
        return response

    async def _process(
        self, payload: Any, pipeline: str | None, record: EventRecord
    ) -> TriggerResponse:
        if not isinstance(payload, dict):
            raise MalformedEventError("Request body must be a JSON object")

        if not verify_signature(
            self.config.webhook_secret,
            payload.get("deliverySignature"),
            payload.get("event"),
            payload.get("ref"),
            payload.get("commitSHA"),
        ):
            raise SignatureInvalidError()

        try:
            event = TriggerEvent.model_validate(payload)
        except ValidationError as e:
            fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in e.errors())
            raise MalformedEventError(f"Invalid event fields: {fields}") from None
        if not event.is_branch_ref:
            raise MalformedEventError(f"Ref '{event.ref}' is not a branch")
        if event.event not in self.config.supported_events:
            raise UnsupportedEventError(event.event)

        pairs = self._resolve(event, pipeline)
        record.pipeline_name = ",".join(sorted({d.name for d, _ in pairs}))

        trigger = TriggerRef.from_event(event)
        response = TriggerResponse()
        for definition, target in pairs:
            try:
                run_id = await self.engine.start_run(target, definition, trigger)
            except TargetBusyError as e:
                response.busy.append(
                    TriggeredRun(pipeline=definition.name, target=target.name, run_id=e.run_id)
                )
                continue
            response.runs.append(
                TriggeredRun(pipeline=definition.name, target=target.name, run_id=run_id)
            )

        if not response.runs:
            first = response.busy[0]
            raise TargetBusyError(first.target, first.run_id)
        logger.info(
            f"Delivery {event.event} {event.ref}@{event.commit_sha[:12]} started "
            f"{len(response.runs)} runs, {len(response.busy)} targets busy"
        )
        return response

    def _resolve(
        self, event: TriggerEvent, pipeline: str | None
    ) -> list[tuple[PipelineDefinition, Target]]:
        definitions = self.definitions()
        if pipeline is not None:
            if pipeline not in definitions:
                raise PipelineNotFoundError(pipeline)
            candidates = [definitions[pipeline]]
        else:
            candidates = list(definitions.values())

        branch = event.branch
        if self.config.allowed_branches and branch not in self.config.allowed_branches:
            raise BranchNotAllowedError(branch)
        matching = [d for d in candidates if d.deploys_branch(branch)]
        if not matching:
            raise BranchNotAllowedError(branch)

        pairs = [
            (definition, Target.resolve(definition, spec))
            for definition in matching
            for spec in definition.targets
            if event.target is None or spec.name == event.target
        ]
        if not pairs:
            raise TargetNotFoundError(event.target or "", pipeline)
        return pairs

    async def _audit(self, record: EventRecord) -> None:
        async with self.session_factory() as session:
            await EventRepository(session).record(record)


def _short(value: Any, limit: int = 255) -> str | None:
    if value is None:
        return None
    return str(value)[:limit]
