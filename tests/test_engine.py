"""Tests for the pipeline engine: stage ordering, policies, retries and cancellation.

Runs execute against an in-memory fake host and a temporary SQLite
database, so every path runs the real engine, repositories and executors.
"""

import asyncio
import time

import pytest

from pushdeploy.exceptions.domain import (
    RunAlreadyFinishedError,
    TargetBusyError,
    TransientNetworkError,
)
from pushdeploy.models.base import RunStatus, StageStatus
from pushdeploy.models.event import TriggerRef
from pushdeploy.models.pipeline_definition import PipelineDefinition
from pushdeploy.models.run import Run
from pushdeploy.models.target import Target
from pushdeploy.repositories.run_repository import LockRepository, RunRepository
from pushdeploy.services.pipeline.engine import PipelineEngine, process_owner

from tests.utils import FakeHost
from tests.utils.helpers import COMMIT

TRIGGER = TriggerRef(ref="refs/heads/main", commit_sha=COMMIT)


async def deploy(engine: PipelineEngine, target: Target, definition: PipelineDefinition) -> Run:
    run_id = await engine.start_run(target, definition, TRIGGER)
    return await engine.wait(run_id)


async def wait_for_status(engine: PipelineEngine, run_id: str, status: RunStatus) -> None:
    for _ in range(200):
        if (await engine.get_run(run_id)).status == status:
            return
        await asyncio.sleep(0.01)
    raise AssertionError(f"Run {run_id} never reached {status.value}")


async def lock_holder(database, target_name: str) -> str | None:
    async with database.get_async_session_context() as session:
        lock = await LockRepository(session).get_for_target(target_name)
    return lock.run_id if lock else None


# ─── Successful runs ─────────────────────────────────────────────────────────


class TestSuccessfulRun:
    """Tests for runs where every stage succeeds."""

    @pytest.mark.asyncio
    async def test_stages_run_in_order(self, engine, database, target, definition, fake_host: FakeHost):
        run = await deploy(engine, target, definition)

        assert run.status == RunStatus.succeeded
        assert run.reason is None
        assert run.owner == process_owner()
        assert run.started_at is not None and run.finished_at is not None
        assert [(r.position, r.name, r.status) for r in run.stage_results] == [
            (0, "permissions", StageStatus.succeeded),
            (1, "sync", StageStatus.succeeded),
            (2, "dependencies", StageStatus.succeeded),
            (3, "restart", StageStatus.succeeded),
        ]
        executed = fake_host.commands
        assert executed.index(fake_host.ran("chown")[0]) < executed.index(fake_host.ran("pip install")[0])
        assert executed.index(fake_host.ran("pip install")[0]) < executed.index(
            "sudo systemctl restart web"
        )
        assert await lock_holder(database, "web-1") is None
        assert engine.active_run_ids == []

    @pytest.mark.asyncio
    async def test_one_connection_per_run(self, engine, target, definition, fake_host):
        await deploy(engine, target, definition)
        assert fake_host.connects == 1
        assert fake_host.closes == 1

    @pytest.mark.asyncio
    async def test_redeploy_of_unchanged_tree_transfers_nothing(
        self, engine, target, definition, fake_host
    ):
        first = await deploy(engine, target, definition)
        second = await deploy(engine, target, definition)

        first_sync = next(r for r in first.stage_results if r.name == "sync")
        second_sync = next(r for r in second.stage_results if r.name == "sync")
        assert first_sync.changed_files == 5
        assert second_sync.changed_files == 0
        assert second_sync.bytes_transferred == 0
        assert second.status == RunStatus.succeeded

    @pytest.mark.asyncio
    async def test_fleet_targets_run_independently(self, engine, fleet, make_definition):
        definition = make_definition(
            targets=[
                {"name": "web-1", "host": "10.0.0.1", "credential_id": "deploy-key"},
                {"name": "web-2", "host": "10.0.0.2", "credential_id": "deploy-key"},
            ]
        )
        fleet["10.0.0.2"].on("pip install", exit_code=1)
        fleet["10.0.0.1"].on("is-active", output="failed")
        targets = [Target.resolve(definition, spec) for spec in definition.targets]

        runs = await asyncio.gather(*(deploy(engine, t, definition) for t in targets))

        assert runs[0].status == RunStatus.failed
        assert runs[1].status == RunStatus.succeeded
        assert runs[1].reason is not None and "dependencies" in runs[1].reason


# ─── Locking ─────────────────────────────────────────────────────────────────


class TestTargetLock:
    """Tests for at most one active run per target."""

    @pytest.mark.asyncio
    async def test_concurrent_starts_admit_one_run(self, engine, target, definition, fake_host):
        fake_host.on("pip install", delay=0.3)

        results = await asyncio.gather(
            *(engine.start_run(target, definition, TRIGGER) for _ in range(5)),
            return_exceptions=True,
        )

        run_ids = [r for r in results if isinstance(r, str)]
        busy = [r for r in results if isinstance(r, TargetBusyError)]
        assert len(run_ids) == 1
        assert len(busy) == 4
        assert all(e.run_id == run_ids[0] for e in busy)
        assert (await engine.wait(run_ids[0])).status == RunStatus.succeeded

    @pytest.mark.asyncio
    async def test_target_is_free_after_failure(self, engine, database, target, definition, fake_host):
        fake_host.on("chown", exit_code=1, times=1)
        failed = await deploy(engine, target, definition)
        assert failed.status == RunStatus.failed
        assert await lock_holder(database, "web-1") is None

        retry = await deploy(engine, target, definition)
        assert retry.status == RunStatus.succeeded


# ─── Stage policies ──────────────────────────────────────────────────────────


class TestStagePolicies:
    """Tests for fatal and best-effort stage failures."""

    @pytest.mark.asyncio
    async def test_fatal_failure_halts_the_run(self, engine, target, definition, fake_host):
        fake_host.on("chown", exit_code=1, output="chown: Operation not permitted\n")

        run = await deploy(engine, target, definition)

        assert run.status == RunStatus.failed
        assert run.failed_stage == "permissions"
        assert run.error_kind == "RemoteCommandFailure"
        assert len(run.stage_results) == 1
        result = run.stage_results[0]
        assert result.exit_code == 1
        assert "Operation not permitted" in result.output
        assert not fake_host.ran("pip install")
        assert not fake_host.ran("systemctl restart")

    @pytest.mark.asyncio
    async def test_best_effort_failure_continues(self, engine, target, definition, fake_host):
        fake_host.on("pip install", exit_code=1, output="No matching distribution\n")

        run = await deploy(engine, target, definition)

        assert run.status == RunStatus.succeeded
        assert run.reason == "Best-effort stages failed: dependencies (RemoteCommandFailure)"
        deps = next(r for r in run.stage_results if r.name == "dependencies")
        assert deps.status == StageStatus.failed
        assert deps.exit_code == 1
        assert fake_host.ran("sudo systemctl restart web")
        assert run.stage_results[-1].status == StageStatus.succeeded

    @pytest.mark.asyncio
    async def test_health_check_timeout_is_fatal(self, engine, target, definition, fake_host):
        """Restart exits 0 but the service never turns active."""
        fake_host.on("is-active", exit_code=3, output="failed\n")

        run = await deploy(engine, target, definition)

        assert run.status == RunStatus.failed
        assert run.failed_stage == "restart"
        assert run.error_kind == "HealthCheckTimeout"
        assert "did not become active" in (run.reason or "")

    @pytest.mark.asyncio
    async def test_health_check_timeout_ignores_best_effort(self, engine, target, make_definition, fake_host):
        definition = make_definition(
            stages=[
                {
                    "name": "restart",
                    "kind": "service_restart",
                    "policy": "best-effort",
                    "health_timeout_seconds": 0.2,
                    "poll_interval_seconds": 0.02,
                }
            ]
        )
        fake_host.on("is-active", output="inactive\n")

        run = await deploy(engine, target, definition)

        assert run.status == RunStatus.failed
        assert run.error_kind == "HealthCheckTimeout"

    @pytest.mark.asyncio
    async def test_missing_binding_fails_stage(self, engine, make_definition, fake_host):
        definition = make_definition(
            stages=[{"name": "notify", "kind": "command", "command": "true", "requires": ["service_name"]}],
            service_name=None,
        )
        resolved = Target.resolve(definition, definition.targets[0])

        run = await deploy(engine, resolved, definition)

        assert run.status == RunStatus.failed
        assert run.error_kind == "MissingBinding"
        assert fake_host.commands == []

    @pytest.mark.asyncio
    async def test_stage_timeout_during_health_polling(self, engine, target, make_definition, fake_host):
        """A stage deadline shorter than the health window still fails the health check."""
        definition = make_definition(
            stages=[
                {
                    "name": "restart",
                    "kind": "service_restart",
                    "timeout_seconds": 0.3,
                    "health_timeout_seconds": 30,
                    "poll_interval_seconds": 0.02,
                }
            ]
        )
        fake_host.on("is-active", output="activating\n")

        run = await deploy(engine, target, definition)

        assert run.status == RunStatus.failed
        assert run.failed_stage == "restart"
        assert run.error_kind == "HealthCheckTimeout"
        assert "last status: activating" in (run.stage_results[0].detail or "")

    @pytest.mark.asyncio
    async def test_best_effort_restart_never_active_fails_run(
        self, engine, target, make_definition, fake_host
    ):
        definition = make_definition(
            stages=[
                {
                    "name": "restart",
                    "kind": "service_restart",
                    "policy": "best-effort",
                    "timeout_seconds": 0.3,
                    "health_timeout_seconds": 30,
                    "poll_interval_seconds": 0.02,
                },
                {"name": "notify", "kind": "command", "command": "echo deployed"},
            ]
        )
        fake_host.on("is-active", output="activating\n")

        run = await deploy(engine, target, definition)

        assert run.status == RunStatus.failed
        assert run.error_kind == "HealthCheckTimeout"
        assert not fake_host.ran("echo deployed")

    @pytest.mark.asyncio
    async def test_stage_timeout(self, engine, target, make_definition, fake_host):
        definition = make_definition(
            stages=[{"name": "migrate", "kind": "command", "command": "migrate", "timeout_seconds": 0.3}]
        )
        fake_host.on("migrate", delay=2.0)

        run = await deploy(engine, target, definition)

        assert run.status == RunStatus.failed
        assert run.error_kind == "StageTimeout"
        assert run.stage_results[0].detail == "Stage exceeded 0.3s"


# ─── Retries ─────────────────────────────────────────────────────────────────


class TestRetries:
    """Tests for retry of transient network errors."""

    @pytest.mark.asyncio
    async def test_transient_error_is_retried(self, engine, target, definition, fake_host):
        fake_host.connect_failures = 2

        run = await deploy(engine, target, definition)

        assert run.status == RunStatus.succeeded
        first = run.stage_results[0]
        assert first.attempts == 3
        assert first.retried
        assert all(not r.retried for r in run.stage_results[1:])

    @pytest.mark.asyncio
    async def test_retries_are_bounded(self, engine, target, definition, fake_host, test_settings):
        fake_host.connect_failures = 100

        run = await deploy(engine, target, definition)

        assert run.status == RunStatus.failed
        assert run.error_kind == "TransientNetworkError"
        assert run.stage_results[0].attempts == test_settings.retry_attempts
        assert "Gave up after 3 attempts" in (run.stage_results[0].detail or "")

    @pytest.mark.asyncio
    async def test_retries_share_the_stage_timeout(self, engine, target, make_definition, fake_host):
        definition = make_definition(
            stages=[{"name": "hook", "kind": "command", "command": "deploy-hook", "timeout_seconds": 0.5}]
        )
        fake_host.on("deploy-hook", delay=0.4, error=TransientNetworkError("Connection reset by peer"))

        started = time.monotonic()
        run = await deploy(engine, target, definition)
        elapsed = time.monotonic() - started

        assert run.status == RunStatus.failed
        assert run.error_kind == "StageTimeout"
        result = run.stage_results[0]
        assert result.attempts == 2
        assert len(fake_host.ran("deploy-hook")) == 2
        assert elapsed < 1.0

    @pytest.mark.asyncio
    async def test_auth_error_is_not_retried(self, engine, target, definition, fake_host):
        fake_host.auth_error = True

        run = await deploy(engine, target, definition)

        assert run.status == RunStatus.failed
        assert run.error_kind == "AuthError"
        assert run.stage_results[0].attempts == 1
        assert not run.stage_results[0].retried

    @pytest.mark.asyncio
    async def test_dropped_connection_mid_sync_is_retried(self, engine, target, definition, fake_host):
        fake_host.on(
            "mkdir -p /srv/web /srv/web/pkg",
            error=TransientNetworkError("Connection reset by peer"),
            times=1,
        )

        run = await deploy(engine, target, definition)

        assert run.status == RunStatus.succeeded
        sync = next(r for r in run.stage_results if r.name == "sync")
        assert sync.attempts == 2
        assert sync.changed_files == 5
        assert fake_host.connects == 2

    @pytest.mark.asyncio
    async def test_unexpected_error_is_internal_and_fatal(self, engine, target, make_definition, fake_host):
        definition = make_definition(
            stages=[
                {"name": "deps", "kind": "dependency_install"},
                {"name": "notify", "kind": "command", "command": "echo done"},
            ]
        )
        fake_host.on("pip install", error=RuntimeError("driver bug"))

        run = await deploy(engine, target, definition)

        # Best-effort policy does not apply to internal errors
        assert run.status == RunStatus.failed
        assert run.error_kind == "InternalError"
        assert run.failed_stage == "deps"
        assert not fake_host.ran("echo done")

    @pytest.mark.asyncio
    async def test_missing_credential_fails_before_any_stage(self, engine, make_definition, fake_host):
        definition = make_definition(
            targets=[{"name": "web-1", "host": "10.0.0.1", "credential_id": "absent"}]
        )
        target = Target.resolve(definition, definition.targets[0])

        run = await deploy(engine, target, definition)

        assert run.status == RunStatus.failed
        assert run.error_kind == "AuthError"
        assert run.stage_results == []
        assert fake_host.connects == 0


# ─── Cancellation ────────────────────────────────────────────────────────────


class TestCancellation:
    """Tests for cancelling runs."""

    @pytest.mark.asyncio
    async def test_cancel_in_flight_run(self, engine, database, target, definition, fake_host):
        fake_host.on("pip install", delay=3.0)
        run_id = await engine.start_run(target, definition, TRIGGER)
        await wait_for_status(engine, run_id, RunStatus.running)
        while not fake_host.ran("pip install"):
            await asyncio.sleep(0.01)

        await engine.cancel(run_id, reason="Operator abort")
        run = await engine.wait(run_id)

        assert run.status == RunStatus.cancelled
        assert run.reason == "Operator abort"
        assert run.stage_results[-1].name == "dependencies"
        assert run.stage_results[-1].status == StageStatus.cancelled
        assert not fake_host.ran("systemctl restart")
        assert await lock_holder(database, "web-1") is None

    @pytest.mark.asyncio
    async def test_cancel_flag_from_another_process(self, engine, database, target, definition, fake_host):
        """A cancel requested through the database is picked up by the owner."""
        fake_host.on("pip install", delay=3.0)
        run_id = await engine.start_run(target, definition, TRIGGER)
        await wait_for_status(engine, run_id, RunStatus.running)

        async with database.get_async_session_context() as session:
            await RunRepository(session).request_cancel(run_id)
        run = await engine.wait(run_id)

        assert run.status == RunStatus.cancelled
        assert run.cancel_requested

    @pytest.mark.asyncio
    async def test_cancel_finished_run(self, engine, target, definition):
        run = await deploy(engine, target, definition)
        with pytest.raises(RunAlreadyFinishedError):
            await engine.cancel(run.id)

    @pytest.mark.asyncio
    async def test_run_timeout_cancels(
        self, database, remote_client, test_settings, target, definition, fake_host
    ):
        config = test_settings.model_copy(update={"run_timeout_seconds": 0.3})
        engine = PipelineEngine(database.get_async_session_context, remote_client, config)
        fake_host.on("pip install", delay=3.0)

        run = await deploy(engine, target, definition)

        assert run.status == RunStatus.cancelled
        assert run.reason == "Run exceeded 0.3s"
        assert await lock_holder(database, "web-1") is None

    @pytest.mark.asyncio
    async def test_shutdown_cancels_in_flight_runs(self, engine, target, definition, fake_host):
        fake_host.on("pip install", delay=3.0)
        run_id = await engine.start_run(target, definition, TRIGGER)
        await wait_for_status(engine, run_id, RunStatus.running)

        await engine.shutdown()

        run = await engine.get_run(run_id)
        assert run.status == RunStatus.cancelled
        assert run.reason == "Engine shut down"


def test_backoff_is_bounded(remote_client, test_settings):
    engine = PipelineEngine(remote_client=remote_client, config=test_settings)
    for attempt in range(1, 20):
        delay = engine._backoff(attempt)
        assert 0 < delay <= test_settings.retry_max_delay
