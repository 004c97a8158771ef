#!/usr/bin/env python3
"""pushdeploy CLI - run pipelines and manage the deployment server.

Exit codes of ``run``: 0 on success, 1 when the run failed or was
cancelled, 2 when the target is busy, 3 when the definition is invalid.
"""

import argparse
import asyncio
import secrets
import subprocess
import sys
from collections.abc import Coroutine
from pathlib import Path
from typing import Any

from pushdeploy.exceptions.domain import (
    DefinitionError,
    PipelineNotFoundError,
    RunAlreadyFinishedError,
    RunNotFoundError,
    TargetBusyError,
)
from pushdeploy.models.base import RunStatus
from pushdeploy.models.event import BRANCH_REF_PREFIX, TriggerRef
from pushdeploy.models.pipeline_definition import PipelineDefinition
from pushdeploy.models.run import Run, RunRead
from pushdeploy.repositories.run_repository import RunRepository
from pushdeploy.services.pipeline.engine import PipelineEngine
from pushdeploy.services.pipeline.loader import (
    load_definition_file,
    load_definitions,
    resolve_target,
    sync_definitions,
)
from pushdeploy.services.pipeline.recovery import RecoveryService
from pushdeploy.services.remote.client import RemoteExecutionClient
from pushdeploy.settings import Settings, settings
from pushdeploy.utils.db_manager import DatabaseManager, db_manager
from pushdeploy.utils.logger import logger

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_BUSY = 2
EXIT_INVALID_DEFINITION = 3


def init_project(path: str) -> None:
    """Initialize a new pushdeploy project in the specified directory."""
    project_path = Path(path).resolve()

    pipelines_dir = project_path / "pipelines"
    pipelines_dir.mkdir(parents=True, exist_ok=True)
    logger.info(f"Created directory: {pipelines_dir}")

    settings_content = f"""# pushdeploy configuration file

# Server settings
port = 8000
host = "127.0.0.1"
debug = false

# Database settings
database_driver = "sqlite"
database_name = "pushdeploy"

# Trigger settings: senders sign deliveries with this secret
webhook_secret = "{secrets.token_hex(32)}"
supported_events = ["push"]

# Pipeline definitions
definitions_path = "pipelines"

# Credential vault: one private key file per credential id
vault_backend = "file"
vault_path = "~/.ssh"
"""

    settings_file = project_path / "settings.toml"
    if not settings_file.exists():
        settings_file.write_text(settings_content)
        logger.info(f"Created settings file: {settings_file}")

    example_pipeline = """name = "example"
branches = ["main"]
source_dir = ".."
remote_working_dir = "/srv/example"
service_name = "example"
remote_user = "deploy"

[[targets]]
name = "example-1"
host = "192.0.2.10"
credential_id = "example-deploy"

[[stages]]
name = "permissions"
kind = "permission_repair"

[[stages]]
name = "sync"
kind = "file_sync"
exclude = [".venv", "__pycache__", "*.pyc"]

[[stages]]
name = "dependencies"
kind = "dependency_install"

[[stages]]
name = "restart"
kind = "service_restart"
"""

    pipeline_file = pipelines_dir / "example.toml"
    if not pipeline_file.exists():
        pipeline_file.write_text(example_pipeline)
        logger.info(f"Created example pipeline: {pipeline_file}")

    logger.info(f"Project initialized at {project_path}")


def run_server(host: str | None = None, port: int | None = None) -> None:
    """Run the pushdeploy server."""
    import uvicorn

    host = host or settings.host or "127.0.0.1"
    port = port or settings.port or 8000

    logger.info(f"Starting pushdeploy server at http://{host}:{port}")

    uvicorn.run(
        "pushdeploy.api.app:app",
        host=host,
        port=port,
        log_level="debug" if settings.debug else "info",
    )


def load_definition(reference: str, definitions_dir: Path | None = None) -> PipelineDefinition:
    """Load a definition by file path, or by name from the definitions directory.

    Raises:
        DefinitionError: If the file is invalid
        PipelineNotFoundError: If no definition has that name
    """
    path = Path(reference)
    if path.suffix in (".toml", ".json") or path.is_file():
        return load_definition_file(path)
    definitions = load_definitions(definitions_dir or settings.get_definitions_dir(), strict=True)
    if reference not in definitions:
        raise PipelineNotFoundError(reference)
    return definitions[reference]


def current_commit(source_dir: str) -> str | None:
    """Commit checked out in ``source_dir``, if it is a git work tree."""
    try:
        result = subprocess.run(
            ["git", "rev-parse", "HEAD"],
            cwd=source_dir,
            capture_output=True,
            text=True,
            check=True,
        )
    except (OSError, subprocess.CalledProcessError):
        return None
    return result.stdout.strip() or None


async def prepare_database(database: DatabaseManager) -> None:
    """Create tables and reconcile runs left behind by dead processes."""
    await database.create_db_and_tables_async()
    await RecoveryService(database.get_async_session_context).reconcile()


def print_run(run: Run) -> None:
    print(RunRead.model_validate(run).model_dump_json(indent=2))


def summarize_run(run: Run) -> str:
    lines = [f"Run {run.id} {run.status.value} ({run.pipeline_name} -> {run.target_name})"]
    for result in run.stage_results:
        marker = "ok" if result.status.value == "succeeded" else result.status.value
        suffix = f" [{result.error_kind}] {result.detail or ''}" if result.error_kind else ""
        lines.append(f"  {result.position + 1}. {result.name}: {marker}{suffix}")
    if run.reason:
        lines.append(f"  reason: {run.reason}")
    return "\n".join(lines)


async def run_pipeline(
    target_name: str,
    definition_ref: str,
    ref: str | None = None,
    commit: str | None = None,
    database: DatabaseManager | None = None,
    remote_client: RemoteExecutionClient | None = None,
    config: Settings | None = None,
) -> int:
    """Run one definition against one target and wait for the outcome.

    Returns:
        Process exit code
    """
    database = database or db_manager
    try:
        definition = load_definition(definition_ref)
    except (DefinitionError, PipelineNotFoundError) as e:
        logger.error(f"Invalid definition: {e}")
        return EXIT_INVALID_DEFINITION

    target = resolve_target(definition, target_name)
    if target is None:
        logger.error(f"Target '{target_name}' is not part of pipeline '{definition.name}'")
        return EXIT_INVALID_DEFINITION

    commit = commit or current_commit(definition.source_dir)
    if not commit:
        logger.error("No commit given and the source directory is not a git work tree")
        return EXIT_FAILED
    trigger = TriggerRef(ref=ref or BRANCH_REF_PREFIX + definition.branches[0], commit_sha=commit)

    await prepare_database(database)
    await sync_definitions(database.get_async_session_context, {definition.name: definition})
    engine = PipelineEngine(database.get_async_session_context, remote_client, config)

    try:
        run_id = await engine.start_run(target, definition, trigger)
    except TargetBusyError as e:
        logger.error(str(e))
        return EXIT_BUSY

    try:
        run = await engine.wait(run_id)
    except asyncio.CancelledError:
        await engine.shutdown()
        run = await engine.get_run(run_id)

    print(summarize_run(run))
    return EXIT_OK if run.status == RunStatus.succeeded else EXIT_FAILED


async def show_status(run_id: str, database: DatabaseManager | None = None) -> int:
    database = database or db_manager
    await prepare_database(database)
    async with database.get_async_session_context() as session:
        try:
            run = await RunRepository(session).get(run_id)
        except RunNotFoundError as e:
            logger.error(str(e))
            return EXIT_FAILED
    print_run(run)
    return EXIT_OK


async def cancel_run(run_id: str, database: DatabaseManager | None = None) -> int:
    """Flag a run for cancellation; the owning process stops it."""
    database = database or db_manager
    await prepare_database(database)
    engine = PipelineEngine(database.get_async_session_context)
    try:
        run = await engine.cancel(run_id, reason="Cancelled from the command line")
    except (RunNotFoundError, RunAlreadyFinishedError) as e:
        logger.error(str(e))
        return EXIT_FAILED
    logger.info(f"Cancellation requested for run {run.id} ({run.status.value})")
    return EXIT_OK


async def show_history(target_name: str, limit: int, database: DatabaseManager | None = None) -> int:
    database = database or db_manager
    await prepare_database(database)
    async with database.get_async_session_context() as session:
        runs = await RunRepository(session).list_for_target(target_name, limit=limit)
    if not runs:
        logger.info(f"No runs recorded for target '{target_name}'")
    for run in runs:
        print(
            f"{run.created_at:%Y-%m-%d %H:%M:%S}  {run.id}  {run.status.value:<9}  "
            f"{run.ref}@{run.commit_sha[:12]}"
            + (f"  {run.reason}" if run.reason else "")
        )
    return EXIT_OK


async def sync_all(database: DatabaseManager | None = None) -> int:
    database = database or db_manager
    try:
        definitions = load_definitions(settings.get_definitions_dir(), strict=True)
    except DefinitionError as e:
        logger.error(f"Invalid definition: {e}")
        return EXIT_INVALID_DEFINITION
    await database.create_db_and_tables_async()
    await sync_definitions(database.get_async_session_context, definitions)
    return EXIT_OK


async def reconcile(database: DatabaseManager | None = None) -> int:
    database = database or db_manager
    await database.create_db_and_tables_async()
    report = await RecoveryService(database.get_async_session_context).reconcile()
    logger.info(
        f"Released {len(report.released_locks)} locks, finalized {len(report.finalized_runs)} runs"
    )
    return EXIT_OK


async def init_database() -> int:
    """Initialize the database with tables."""
    logger.info("Initializing database...")
    await db_manager.create_db_and_tables_async()
    logger.info("Database initialized successfully")
    return EXIT_OK


async def _with_cleanup(coro: Coroutine[Any, Any, int], database: DatabaseManager = db_manager) -> int:
    try:
        return await coro
    finally:
        await database.close()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="pushdeploy", description="pushdeploy - push-triggered deployment orchestrator"
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # run command
    run_parser = subparsers.add_parser("run", help="Run a pipeline against one target")
    run_parser.add_argument("target", help="Target name")
    run_parser.add_argument("definition", help="Pipeline name or definition file")
    run_parser.add_argument("--ref", default=None, help="Branch ref (default: first branch)")
    run_parser.add_argument(
        "--commit", default=None, help="Commit SHA (default: HEAD of the source directory)"
    )

    status_parser = subparsers.add_parser("status", help="Show a run and its stage results")
    status_parser.add_argument("run_id", help="Run ID")

    cancel_parser = subparsers.add_parser("cancel", help="Cancel a queued or running run")
    cancel_parser.add_argument("run_id", help="Run ID")

    history_parser = subparsers.add_parser("history", help="List recent runs of a target")
    history_parser.add_argument("target", help="Target name")
    history_parser.add_argument("--limit", type=int, default=20, help="Number of runs to show")

    subparsers.add_parser("sync", help="Validate definitions and store them in the database")
    subparsers.add_parser("reconcile", help="Release locks left by dead processes")

    # serve command
    serve_parser = subparsers.add_parser("serve", help="Run the trigger and API server")
    serve_parser.add_argument(
        "--host", type=str, default=None, help="Host to bind to (default: 127.0.0.1)"
    )
    serve_parser.add_argument(
        "--port", type=int, default=None, help="Port to bind to (default: 8000)"
    )

    # init command
    init_parser = subparsers.add_parser("init", help="Initialize a new pushdeploy project")
    init_parser.add_argument(
        "path",
        nargs="?",
        default=".",
        help="Path where to create the project (default: current directory)",
    )

    # db command
    db_parser = subparsers.add_parser("db", help="Database management")
    db_subparsers = db_parser.add_subparsers(dest="db_command")
    db_subparsers.add_parser("init", help="Initialize database with tables")
    db_parser.set_defaults(print_db_help=db_parser.print_help)

    return parser


def main(argv: list[str] | None = None) -> None:
    """Main CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    code = EXIT_OK
    if args.command == "run":
        code = asyncio.run(
            _with_cleanup(run_pipeline(args.target, args.definition, args.ref, args.commit))
        )
    elif args.command == "status":
        code = asyncio.run(_with_cleanup(show_status(args.run_id)))
    elif args.command == "cancel":
        code = asyncio.run(_with_cleanup(cancel_run(args.run_id)))
    elif args.command == "history":
        code = asyncio.run(_with_cleanup(show_history(args.target, args.limit)))
    elif args.command == "sync":
        code = asyncio.run(_with_cleanup(sync_all()))
    elif args.command == "reconcile":
        code = asyncio.run(_with_cleanup(reconcile()))
    elif args.command == "serve":
        run_server(args.host, args.port)
    elif args.command == "init":
        init_project(args.path)
    elif args.command == "db":
        if args.db_command == "init":
            code = asyncio.run(_with_cleanup(init_database()))
        else:
            args.print_db_help()
    else:
        parser.print_help()
        code = EXIT_FAILED

    sys.exit(code)


if __name__ == "__main__":
    main()
