"""
Pipeline Service: run execution for pushdeploy.

Loads pipeline definitions, runs them against targets with per-target
mutual exclusion and recovers runs left behind by dead processes.

Example:
    from pushdeploy.services.pipeline import PipelineEngine, get_definition, resolve_target

    definition = get_definition("web")
    target = resolve_target(definition, "web-1")
    run_id = await engine.start_run(target, definition, trigger_ref)
"""

from .engine import PipelineEngine, RunOutcome, process_owner
from .exceptions import (
    DefinitionError,
    InvalidRunTransitionError,
    PipelineNotFoundError,
    RunAlreadyFinishedError,
    RunNotFoundError,
    TargetBusyError,
)
from .loader import (
    find_definition_for_target,
    get_all_definitions,
    get_definition,
    load_definition_file,
    load_definitions,
    parse_definition,
    register_definition,
    register_definitions,
    reload_definitions,
    resolve_target,
    sync_definitions,
)
from .recovery import RecoveryReport, RecoveryService

__all__ = [
    "DefinitionError",
    "InvalidRunTransitionError",
    "PipelineEngine",
    "PipelineNotFoundError",
    "RecoveryReport",
    "RecoveryService",
    "RunAlreadyFinishedError",
    "RunNotFoundError",
    "RunOutcome",
    "TargetBusyError",
    "find_definition_for_target",
    "get_all_definitions",
    "get_definition",
    "load_definition_file",
    "load_definitions",
    "parse_definition",
    "process_owner",
    "register_definition",
    "register_definitions",
    "reload_definitions",
    "resolve_target",
    "sync_definitions",
]
