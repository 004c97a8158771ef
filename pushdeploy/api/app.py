"""
Main API application module for pushdeploy.

This module creates and configures the FastAPI application with the
trigger endpoint, the read API and the run engine lifecycle.
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, Request

from pushdeploy.api.exception_handlers import setup_exception_handlers
from pushdeploy.api.routers import events, pipelines, runs, targets, trigger
from pushdeploy.services.pipeline.engine import PipelineEngine
from pushdeploy.services.pipeline.loader import (
    get_all_definitions,
    reload_definitions,
    sync_definitions,
)
from pushdeploy.services.pipeline.recovery import RecoveryService
from pushdeploy.settings import settings
from pushdeploy.utils.db_manager import DatabaseManager, db_manager
from pushdeploy.utils.logger import logger


def build_lifespan(database: DatabaseManager):
    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """
        Application lifespan context manager.

        Creates database tables, loads pipeline definitions, reconciles runs
        left behind by dead processes and stops in-flight runs on shutdown.
        """
        await database.create_db_and_tables_async()
        logger.info("Database initialized with async support")

        if app.state.engine is None:
            app.state.engine = PipelineEngine(database.get_async_session_context)
        engine: PipelineEngine = app.state.engine

        if not engine.config.webhook_secret:
            logger.warning("webhook_secret is not set, every delivery will be rejected")

        definitions = reload_definitions(engine.config.get_definitions_dir())
        await sync_definitions(engine.session_factory, definitions)

        report = await RecoveryService(
            engine.session_factory, engine.config, active_run_ids=engine.active_run_ids
        ).reconcile()
        if report.changed:
            logger.warning(
                f"Recovered {len(report.finalized_runs)} runs left by dead processes"
            )

        logger.info("Application startup complete")

        try:
            yield
        finally:
            await engine.shutdown()
            await database.close()
            logger.info("Application shutdown")

    return lifespan


# noinspection PyTypeChecker
def create_app(
    root_path: str = "/",
    engine: PipelineEngine | None = None,
    database: DatabaseManager | None = None,
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        root_path: The root path for the application
        engine: Pipeline engine to use; created at startup when omitted
        database: Database manager; the global one when omitted

    Returns:
        Configured FastAPI application
    """
    app = FastAPI(
        title="pushdeploy",
        description="Push-triggered deployment orchestrator",
        version="0.1.0",
        debug=settings.debug,
        lifespan=build_lifespan(database or db_manager),
        root_path=root_path,
    )
    app.state.engine = engine

    # Setup exception handlers using decorators
    setup_exception_handlers(app)

    # Include routers with /api prefix for backend endpoints
    app.include_router(trigger.router, prefix="/api/trigger")
    app.include_router(runs.router, prefix="/api/runs")
    app.include_router(targets.router, prefix="/api/targets")
    app.include_router(pipelines.router, prefix="/api/pipelines")
    app.include_router(events.router, prefix="/api/events")

    @app.get("/health", tags=["Health"])
    async def health(request: Request) -> dict[str, Any]:
        """Liveness probe with a summary of loaded state."""
        current: PipelineEngine | None = request.app.state.engine
        return {
            "status": "ok",
            "pipelines": len(get_all_definitions()),
            "active_runs": len(current.active_run_ids) if current else 0,
        }

    return app


# Create default application instance
app = create_app(root_path=settings.root_url)
