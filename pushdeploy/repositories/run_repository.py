"""Repository for runs, stage results and the target lock table.

This is the run state store: lock rows are the single source of truth
for whether a target is busy, and every run state change goes through a
conditional UPDATE so transitions stay monotonic even when the engine and
the recovery sweep race on the same run.
"""

from collections.abc import Sequence
from typing import Any

from sqlalchemy import CursorResult, delete, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import col, select

from pushdeploy.exceptions.domain import (
    InvalidRunTransitionError,
    RunNotFoundError,
    TargetBusyError,
)
from pushdeploy.models.base import RUN_TRANSITIONS, TERMINAL_RUN_STATUSES, RunStatus, utcnow
from pushdeploy.models.run import Run, StageResult
from pushdeploy.models.target import TargetLock
from pushdeploy.repositories.base import BaseRepository


class RunRepository(BaseRepository[Run]):
    """Repository for run history and lock state."""

    def __init__(self, session: AsyncSession):
        super().__init__(session, Run)

    async def get(self, id: Any) -> Run:
        """Get run by ID or raise RunNotFoundError."""
        run = await self.session.get(Run, id, populate_existing=True)
        if not run:
            raise RunNotFoundError(str(id))
        return run

    async def create_locked(self, run: Run) -> Run:
        """Insert a queued run together with its target lock.

        Both rows are committed in one transaction, so either the run owns
        the target or nothing was written.

        Args:
            run: New run in ``queued`` state

        Returns:
            The stored run

        Raises:
            TargetBusyError: If the target lock is already held
        """
        lock = TargetLock(target_name=run.target_name, run_id=run.id, owner=run.owner)
        self.session.add(run)
        self.session.add(lock)
        try:
            await self.session.commit()
        except IntegrityError:
            await self.session.rollback()
            holder = await self.session.get(TargetLock, run.target_name, populate_existing=True)
            raise TargetBusyError(run.target_name, holder.run_id if holder else None) from None
        await self.session.refresh(run)
        return run

    async def transition(self, run_id: str, new_status: RunStatus, **fields: Any) -> Run:
        """Move a run to a later state.

        Args:
            run_id: Run identifier
            new_status: Target state, must be reachable from the current one
            **fields: Extra columns to set in the same UPDATE

        Returns:
            The updated run

        Raises:
            InvalidRunTransitionError: If the transition would go backwards or
                the run changed state concurrently
        """
        run = await self.get(run_id)
        current = run.status
        if new_status not in RUN_TRANSITIONS[current]:
            raise InvalidRunTransitionError(run_id, current.value, new_status.value)

        values = dict(fields)
        values["status"] = new_status
        if new_status == RunStatus.running:
            values.setdefault("started_at", utcnow())
        if new_status in TERMINAL_RUN_STATUSES:
            values.setdefault("finished_at", utcnow())

        statement = (
            update(Run)
            .where(col(Run.id) == run_id, col(Run.status) == current)
            .values(**values)
        )
        result: CursorResult[Any] = await self.session.execute(statement)  # type: ignore[assignment]
        if result.rowcount == 0:
            await self.session.rollback()
            latest = await self.get(run_id)
            raise InvalidRunTransitionError(run_id, latest.status.value, new_status.value)

        if new_status in TERMINAL_RUN_STATUSES:
            await self.session.execute(
                delete(TargetLock).where(
                    col(TargetLock.target_name) == run.target_name,
                    col(TargetLock.run_id) == run_id,
                )
            )
        await self.session.commit()
        return await self.get(run_id)

    async def add_stage_result(self, result: StageResult) -> StageResult:
        """Append a stage result to its run."""
        return await self.create(result)

    async def stage_results(self, run_id: str) -> Sequence[StageResult]:
        """Stage results of a run in execution order."""
        statement = (
            select(StageResult)
            .where(col(StageResult.run_id) == run_id)
            .order_by(col(StageResult.position))
        )
        return await self.execute_query(statement)

    async def request_cancel(self, run_id: str) -> Run:
        """Flag a run for cancellation; the owning process acts on the flag."""
        await self.session.execute(
            update(Run).where(col(Run.id) == run_id).values(cancel_requested=True)
        )
        await self.session.commit()
        return await self.get(run_id)

    async def is_cancel_requested(self, run_id: str) -> bool:
        statement = select(Run.cancel_requested).where(col(Run.id) == run_id)
        result = await self.session.execute(statement)
        return bool(result.scalar())

    async def list_for_target(self, target_name: str, limit: int = 20) -> Sequence[Run]:
        """Runs of a target, most recent first."""
        statement = (
            select(Run)
            .where(col(Run.target_name) == target_name)
            .order_by(col(Run.created_at).desc())
            .limit(limit)
        )
        return await self.execute_query(statement)

    async def latest_for_target(self, target_name: str) -> Run | None:
        runs = await self.list_for_target(target_name, limit=1)
        return runs[0] if runs else None

    async def list_recent(self, limit: int = 50) -> Sequence[Run]:
        statement = select(Run).order_by(col(Run.created_at).desc()).limit(limit)
        return await self.execute_query(statement)

    async def list_non_terminal(self) -> Sequence[Run]:
        """Runs still queued or running."""
        statement = select(Run).where(col(Run.status).in_([RunStatus.queued, RunStatus.running]))
        return await self.execute_query(statement)


class LockRepository(BaseRepository[TargetLock]):
    """Read and release access to target locks.

    Locks are only ever acquired through ``RunRepository.create_locked``.
    """

    def __init__(self, session: AsyncSession):
        super().__init__(session, TargetLock)

    async def get_for_target(self, target_name: str) -> TargetLock | None:
        return await self.session.get(TargetLock, target_name, populate_existing=True)

    async def release(self, target_name: str, run_id: str) -> bool:
        """Delete the lock of ``target_name`` if ``run_id`` still holds it.

        Returns:
            True if a lock row was removed
        """
        statement = delete(TargetLock).where(
            col(TargetLock.target_name) == target_name,
            col(TargetLock.run_id) == run_id,
        )
        result: CursorResult[Any] = await self.session.execute(statement)  # type: ignore[assignment]
        await self.session.commit()
        return result.rowcount > 0
