"""
Pipeline engine.

Runs one pipeline definition against one target. ``start_run`` acquires the
target lock and creates the run in a single transaction, then executes the
stages as an asyncio task:

- stages run strictly in order, each bounded by its own timeout, retries
  included;
- a failed ``fatal`` stage stops the run, a failed ``best-effort`` stage is
  recorded and execution continues;
- ``TransientNetworkError`` retries the stage with exponential backoff,
  ``AuthError`` never does;
- the lock is released on every terminal state.

Example:
    engine = PipelineEngine()
    run_id = await engine.start_run(target, definition, TriggerRef(ref="main", commit_sha=sha))
    run = await engine.wait(run_id)
"""

import asyncio
import os
import random
import socket
from dataclasses import dataclass
from pathlib import Path

from sqlalchemy.exc import SQLAlchemyError

from pushdeploy.exceptions.domain import (
    HealthCheckTimeout,
    InvalidRunTransitionError,
    PushDeployError,
    RemoteCommandFailure,
    RunAlreadyFinishedError,
    TransientNetworkError,
)
from pushdeploy.models.base import RunStatus, StagePolicy, StageStatus, utcnow
from pushdeploy.models.event import TriggerRef
from pushdeploy.models.pipeline_definition import PipelineDefinition, StageSpec
from pushdeploy.models.run import Run, StageResult
from pushdeploy.models.target import Target
from pushdeploy.repositories.run_repository import LockRepository, RunRepository
from pushdeploy.services.remote.client import RemoteExecutionClient
from pushdeploy.services.remote.session import RemoteSession
from pushdeploy.services.stages import StageContext, StageOutcome, get_executor
from pushdeploy.settings import Settings, settings
from pushdeploy.utils.database import SessionFactory
from pushdeploy.utils.db_manager import db_manager
from pushdeploy.utils.logger import logger

STAGE_TIMEOUT_KIND = "StageTimeout"
INTERNAL_ERROR_KIND = "InternalError"

# Failures that stop the run whatever the stage policy says.
ALWAYS_FATAL_KINDS = frozenset({HealthCheckTimeout.error_kind, INTERNAL_ERROR_KIND})


def process_owner() -> str:
    """Identity of this process as recorded on runs and locks."""
    return f"{socket.gethostname()}:{os.getpid()}"


@dataclass
class RunOutcome:
    status: RunStatus
    reason: str | None = None
    failed_stage: str | None = None
    error_kind: str | None = None


def _prefix(run_id: str, stage: str | None = None) -> str:
    if stage:
        return f"[run={run_id[:8]} stage={stage}]"
    return f"[run={run_id[:8]}]"


class PipelineEngine:
    """Executes runs and enforces one active run per target.

    Args:
        session_factory: Opens short-lived database sessions
        remote_client: Opens remote sessions to targets
        config: Retry, timeout and polling settings
    """

    def __init__(
        self,
        session_factory: SessionFactory | None = None,
        remote_client: RemoteExecutionClient | None = None,
        config: Settings | None = None,
    ):
        self.config = config or settings
        self.session_factory = session_factory or db_manager.get_async_session_context
        self.remote_client = remote_client or RemoteExecutionClient(config=self.config)
        self.owner = process_owner()
        self._tasks: dict[str, asyncio.Task[None]] = {}
        self._cancel_reasons: dict[str, str] = {}

    @property
    def active_run_ids(self) -> list[str]:
        return list(self._tasks)

    async def start_run(
        self, target: Target, definition: PipelineDefinition, trigger_ref: TriggerRef
    ) -> str:
        """Lock the target, create a queued run and start executing it.

        Returns:
            The new run id

        Raises:
            TargetBusyError: If the target already has a non-terminal run
        """
        run = Run(
            pipeline_name=definition.name,
            target_name=target.name,
            ref=trigger_ref.ref,
            commit_sha=trigger_ref.commit_sha,
            owner=self.owner,
        )
        async with self.session_factory() as session:
            run = await RunRepository(session).create_locked(run)

        run_id = run.id
        logger.info(
            f"{_prefix(run_id)} Queued {definition.name} for {target.name} "
            f"at {trigger_ref.ref}@{trigger_ref.commit_sha[:12]}"
        )
        task = asyncio.create_task(
            self._execute(run_id, target, definition, trigger_ref), name=f"run-{run_id}"
        )
        self._tasks[run_id] = task
        task.add_done_callback(lambda _: self._tasks.pop(run_id, None))
        # A task cancelled before its first step never reaches _finalize
        await asyncio.sleep(0)
        return run_id

    async def get_run(self, run_id: str) -> Run:
        """Raises RunNotFoundError for unknown ids."""
        async with self.session_factory() as session:
            return await RunRepository(session).get(run_id)

    async def wait(self, run_id: str) -> Run:
        """Wait until a run reaches a terminal state and return it.

        Runs owned by another process are polled.
        """
        task = self._tasks.get(run_id)
        if task is not None:
            await asyncio.wait({task})
        run = await self.get_run(run_id)
        while not run.status.is_terminal:
            await asyncio.sleep(self.config.cancel_poll_interval)
            run = await self.get_run(run_id)
        return run

    async def cancel(self, run_id: str, reason: str = "Cancelled by request") -> Run:
        """Request cancellation of a run.

        The run ends ``cancelled`` once its in-flight remote call is
        abandoned. Runs owned by another process are flagged and stopped by
        that process.

        Raises:
            RunNotFoundError: If the run does not exist
            RunAlreadyFinishedError: If the run is already terminal
        """
        async with self.session_factory() as session:
            repo = RunRepository(session)
            run = await repo.get(run_id)
            if run.status.is_terminal:
                raise RunAlreadyFinishedError(run_id, run.status.value)
            # Set before the flag so the cancel watcher never records its own reason.
            self._cancel_reasons.setdefault(run_id, reason)
            run = await repo.request_cancel(run_id)

        task = self._tasks.get(run_id)
        if task is not None:
            task.cancel()
            logger.info(f"{_prefix(run_id)} Cancellation requested: {reason}")
        else:
            self._cancel_reasons.pop(run_id, None)
            logger.info(f"{_prefix(run_id)} Flagged for cancellation; owned by {run.owner}")
        return run

    async def shutdown(self) -> None:
        """Cancel every in-flight run and wait for them to finalize."""
        tasks = list(self._tasks.items())
        if not tasks:
            return
        logger.info(f"Shutting down engine, cancelling {len(tasks)} runs")
        for run_id, task in tasks:
            self._cancel_reasons.setdefault(run_id, "Engine shut down")
            task.cancel()
        await asyncio.gather(*(task for _, task in tasks), return_exceptions=True)

    async def _execute(
        self, run_id: str, target: Target, definition: PipelineDefinition, trigger: TriggerRef
    ) -> None:
        current = asyncio.current_task()
        if current is None:
            raise RuntimeError("Runs execute inside an asyncio task")
        watcher = asyncio.create_task(self._watch_cancel(run_id, current))
        try:
            async with asyncio.timeout(self.config.run_timeout_seconds):
                outcome = await self._run(run_id, target, definition, trigger)
        except TimeoutError:
            outcome = RunOutcome(
                RunStatus.cancelled,
                reason=f"Run exceeded {self.config.run_timeout_seconds:g}s",
            )
        except asyncio.CancelledError:
            current.uncancel()
            outcome = RunOutcome(
                RunStatus.cancelled, reason=self._cancel_reasons.get(run_id, "Cancelled")
            )
        except PushDeployError as e:
            outcome = RunOutcome(RunStatus.failed, reason=str(e), error_kind=e.error_kind)
        except Exception as e:
            logger.exception(f"{_prefix(run_id)} Unexpected error: {e}")
            outcome = RunOutcome(
                RunStatus.failed, reason=f"Internal error: {e}", error_kind=INTERNAL_ERROR_KIND
            )
        finally:
            watcher.cancel()

        await asyncio.shield(self._finalize(run_id, target.name, outcome))
        self._cancel_reasons.pop(run_id, None)

    async def _run(
        self, run_id: str, target: Target, definition: PipelineDefinition, trigger: TriggerRef
    ) -> RunOutcome:
        async with self.session_factory() as session:
            await RunRepository(session).transition(run_id, RunStatus.running)
        logger.info(f"{_prefix(run_id)} Running {definition.name} on {target.address}")

        best_effort_failures: list[str] = []
        async with self.remote_client.session(target) as remote:
            for position, stage in enumerate(definition.stages):
                result = await self._run_stage(
                    run_id, position, stage, definition, target, trigger, remote
                )
                if result.status == StageStatus.succeeded:
                    continue

                fatal = stage.policy == StagePolicy.fatal or result.error_kind in ALWAYS_FATAL_KINDS
                if fatal:
                    return RunOutcome(
                        RunStatus.failed,
                        reason=f"Stage '{stage.name}' failed: {result.detail}",
                        failed_stage=stage.name,
                        error_kind=result.error_kind,
                    )
                best_effort_failures.append(f"{stage.name} ({result.error_kind})")

        reason = None
        if best_effort_failures:
            reason = "Best-effort stages failed: " + ", ".join(best_effort_failures)
        return RunOutcome(RunStatus.succeeded, reason=reason)

    def _backoff(self, attempt: int) -> float:
        delay = min(self.config.retry_delay * 2 ** (attempt - 1), self.config.retry_max_delay)
        return delay * random.uniform(0.5, 1.0)

    async def _run_stage(
        self,
        run_id: str,
        position: int,
        stage: StageSpec,
        definition: PipelineDefinition,
        target: Target,
        trigger: TriggerRef,
        remote: RemoteSession,
    ) -> StageResult:
        prefix = _prefix(run_id, stage.name)
        executor = get_executor(stage.kind)
        result = StageResult(
            run_id=run_id,
            position=position,
            name=stage.name,
            kind=stage.kind.value,
            policy=stage.policy,
            status=StageStatus.failed,
            started_at=utcnow(),
            finished_at=utcnow(),
        )
        logger.info(f"{prefix} Starting ({stage.kind.value}, {stage.policy.value})")

        # One deadline bounds every attempt and the backoff between them
        deadline = asyncio.get_running_loop().time() + stage.timeout_seconds
        ctx: StageContext | None = None
        try:
            try:
                async with asyncio.timeout_at(deadline):
                    while True:
                        ctx = StageContext(
                            run_id=run_id,
                            stage=stage,
                            definition=definition,
                            target=target,
                            trigger=trigger,
                            remote=remote,
                            source_root=Path(definition.source_dir),
                            deadline=deadline,
                        )
                        try:
                            ctx.require(*stage.requires)
                            outcome = await executor(ctx)
                            self._apply_outcome(result, outcome)
                            result.status = StageStatus.succeeded
                            break
                        except TransientNetworkError as e:
                            if result.attempts >= self.config.retry_attempts:
                                self._apply_error(
                                    result, e, f"Gave up after {result.attempts} attempts: {e}"
                                )
                                break
                            delay = self._backoff(result.attempts)
                            logger.warning(
                                f"{prefix} Attempt {result.attempts} failed: {e}. "
                                f"Retrying in {delay:.1f}s"
                            )
                            remote.reset()
                            await asyncio.sleep(delay)
                            result.attempts += 1
                            result.retried = True
            except TimeoutError:
                remote.reset()
                if ctx is not None and ctx.health_status is not None:
                    # The service was restarted but never seen active
                    self._apply_error(
                        result,
                        HealthCheckTimeout(
                            ctx.bindings["service_name"], stage.timeout_seconds, ctx.health_status
                        ),
                    )
                else:
                    result.error_kind = STAGE_TIMEOUT_KIND
                    result.detail = f"Stage exceeded {stage.timeout_seconds:g}s"
            except PushDeployError as e:
                self._apply_error(result, e)
            except Exception as e:
                logger.exception(f"{prefix} Unexpected error: {e}")
                result.error_kind = INTERNAL_ERROR_KIND
                result.detail = f"Internal error: {e}"
        except asyncio.CancelledError:
            result.status = StageStatus.cancelled
            result.error_kind = "Cancelled"
            result.detail = self._cancel_reasons.get(run_id, "Run cancelled during stage")
            result.finished_at = utcnow()
            await asyncio.shield(self._record_stage(result))
            logger.warning(f"{prefix} Cancelled")
            raise

        result.finished_at = utcnow()
        await self._record_stage(result)
        if result.status == StageStatus.succeeded:
            logger.info(f"{prefix} Succeeded after {result.attempts} attempt(s)")
        else:
            logger.error(f"{prefix} Failed [{result.error_kind}]: {result.detail}")
        return result

    @staticmethod
    def _apply_outcome(result: StageResult, outcome: StageOutcome) -> None:
        result.exit_code = outcome.exit_code
        result.output = outcome.output
        result.output_truncated = outcome.truncated
        result.bytes_transferred = outcome.bytes_transferred
        result.changed_files = outcome.changed_files
        result.detail = outcome.detail

    @staticmethod
    def _apply_error(result: StageResult, error: PushDeployError, detail: str | None = None) -> None:
        result.error_kind = error.error_kind
        result.detail = detail or str(error)
        if isinstance(error, RemoteCommandFailure):
            result.exit_code = error.exit_code
            result.output = error.output
            result.output_truncated = error.truncated

    async def _record_stage(self, result: StageResult) -> None:
        async with self.session_factory() as session:
            await RunRepository(session).add_stage_result(result)

    async def _finalize(self, run_id: str, target_name: str, outcome: RunOutcome) -> None:
        try:
            async with self.session_factory() as session:
                run = await RunRepository(session).transition(
                    run_id,
                    outcome.status,
                    reason=outcome.reason,
                    failed_stage=outcome.failed_stage,
                    error_kind=outcome.error_kind,
                )
            logger.info(
                f"{_prefix(run_id)} Finished {run.status.value}"
                + (f": {outcome.reason}" if outcome.reason else "")
            )
        except InvalidRunTransitionError as e:
            logger.warning(f"{_prefix(run_id)} Already finalized elsewhere: {e}")
        except SQLAlchemyError as e:
            logger.error(f"{_prefix(run_id)} Cannot record outcome: {e}")
        finally:
            async with self.session_factory() as session:
                if await LockRepository(session).release(target_name, run_id):
                    logger.warning(f"{_prefix(run_id)} Released lock left behind on {target_name}")

    async def _watch_cancel(self, run_id: str, task: asyncio.Task[None]) -> None:
        """Cancel ``task`` once the stored cancel flag is set."""
        while not task.done():
            await asyncio.sleep(self.config.cancel_poll_interval)
            try:
                async with self.session_factory() as session:
                    requested = await RunRepository(session).is_cancel_requested(run_id)
            except SQLAlchemyError as e:
                logger.warning(f"{_prefix(run_id)} Cannot poll cancel flag: {e}")
                continue
            if requested:
                self._cancel_reasons.setdefault(run_id, "Cancellation requested")
                task.cancel()
                return
