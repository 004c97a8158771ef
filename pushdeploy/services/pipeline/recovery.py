"""
Crash recovery for runs and target locks.

A process that dies mid-run leaves its lock row and a non-terminal run
behind. ``RecoveryService.reconcile`` finds locks whose owner is gone and
finalizes their runs, which also releases the locks.
"""

import os
import socket
from dataclasses import dataclass, field
from datetime import timedelta

from pushdeploy.exceptions.domain import InvalidRunTransitionError, RunNotFoundError
from pushdeploy.models.base import RunStatus, as_utc, utcnow
from pushdeploy.models.run import Run
from pushdeploy.models.target import TargetLock
from pushdeploy.repositories.run_repository import LockRepository, RunRepository
from pushdeploy.settings import Settings, settings
from pushdeploy.utils.database import SessionFactory
from pushdeploy.utils.db_manager import db_manager
from pushdeploy.utils.logger import logger

from .engine import process_owner


def pid_alive(pid: int) -> bool:
    """Whether a process with ``pid`` exists on this host."""
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


@dataclass
class RecoveryReport:
    released_locks: list[str] = field(default_factory=list)
    finalized_runs: list[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.released_locks or self.finalized_runs)


class RecoveryService:
    """Reconciles locks and runs left behind by dead processes.

    Args:
        session_factory: Opens database sessions
        config: Provides ``lock_max_age_seconds``
        active_run_ids: Runs this process is executing right now; their
            locks are never reclaimed
    """

    def __init__(
        self,
        session_factory: SessionFactory | None = None,
        config: Settings | None = None,
        active_run_ids: list[str] | None = None,
    ):
        self.session_factory = session_factory or db_manager.get_async_session_context
        self.config = config or settings
        self.active_run_ids = set(active_run_ids or [])
        self.owner = process_owner()
        self.hostname = socket.gethostname()

    def owner_is_dead(self, owner: str, acquired_age: timedelta | None = None) -> bool:
        """Decide whether the process named by ``owner`` is gone.

        Owners on this host are checked by pid only, whatever the lock age.
        Owners on other hosts cannot be probed and are considered dead once
        their lock is older than ``lock_max_age_seconds``.
        """
        host, _, pid = owner.rpartition(":")
        if host == self.hostname and pid.isdigit():
            return owner != self.owner and not pid_alive(int(pid))
        if acquired_age is None:
            return False
        return acquired_age.total_seconds() > self.config.lock_max_age_seconds

    def lock_is_stale(self, lock: TargetLock) -> bool:
        if lock.run_id in self.active_run_ids:
            return False
        if lock.owner == self.owner:
            return True
        return self.owner_is_dead(lock.owner, utcnow() - as_utc(lock.acquired_at))

    async def _finalize(self, run_id: str, owner: str) -> bool:
        async with self.session_factory() as session:
            repo = RunRepository(session)
            try:
                run = await repo.get(run_id)
            except RunNotFoundError:
                return False
            if run.status.is_terminal:
                return False
            status = RunStatus.cancelled if run.cancel_requested else RunStatus.failed
            try:
                await repo.transition(
                    run_id,
                    status,
                    reason=f"Owner process {owner} is no longer running",
                    error_kind="OwnerLost",
                )
            except InvalidRunTransitionError as e:
                logger.debug(f"Run {run_id} finalized concurrently: {e}")
                return False
        logger.warning(f"Recovered run {run_id} as {status.value} (owner {owner} gone)")
        return True

    async def reconcile(self) -> RecoveryReport:
        """Release stale locks and finalize orphaned runs.

        Returns:
            RecoveryReport listing released targets and finalized runs
        """
        report = RecoveryReport()

        # Runs before locks: a run created in between is then absent from both.
        async with self.session_factory() as session:
            non_terminal: list[Run] = list(await RunRepository(session).list_non_terminal())
            locks = list(await LockRepository(session).list_all())

        locked_run_ids = {lock.run_id for lock in locks}
        for lock in locks:
            if not self.lock_is_stale(lock):
                continue
            if await self._finalize(lock.run_id, lock.owner):
                report.finalized_runs.append(lock.run_id)
            async with self.session_factory() as session:
                await LockRepository(session).release(lock.target_name, lock.run_id)
            report.released_locks.append(lock.target_name)
            logger.warning(f"Released stale lock on {lock.target_name} held by {lock.owner}")

        for run in non_terminal:
            if run.id in locked_run_ids or run.id in self.active_run_ids:
                continue
            if await self._finalize(run.id, run.owner):
                report.finalized_runs.append(run.id)

        if report.changed:
            logger.info(
                f"Recovery released {len(report.released_locks)} locks and "
                f"finalized {len(report.finalized_runs)} runs"
            )
        else:
            logger.debug("Recovery found nothing to reconcile")
        return report
