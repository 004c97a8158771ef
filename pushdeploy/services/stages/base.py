"""
Stage executor contract and registry.

An executor is an async callable that turns one ``StageSpec`` into calls on
the run's ``RemoteSession`` and returns a ``StageOutcome``. Failures are
reported by raising the domain exceptions of the remote taxonomy; the
engine decides what a failure means for the run.

Executors register themselves per ``StageKind``:

    @register_executor(StageKind.command)
    async def run_command(ctx: StageContext) -> StageOutcome:
        result = await ctx.execute(ctx.stage.command)
        return StageOutcome.from_command(result)
"""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import TypeAlias

from pushdeploy.exceptions.domain import MissingBindingError
from pushdeploy.models.base import StageKind
from pushdeploy.models.event import TriggerRef
from pushdeploy.models.pipeline_definition import PipelineDefinition, StageSpec
from pushdeploy.models.target import Target
from pushdeploy.services.remote.session import CommandResult, RemoteSession
from pushdeploy.utils.templates import render_command


@dataclass
class StageOutcome:
    """What a successful stage produced."""

    exit_code: int | None = None
    output: str = ""
    truncated: bool = False
    bytes_transferred: int | None = None
    changed_files: int | None = None
    detail: str | None = None

    @classmethod
    def from_command(cls, result: CommandResult, detail: str | None = None) -> "StageOutcome":
        return cls(
            exit_code=result.exit_code,
            output=result.output,
            truncated=result.truncated,
            detail=detail,
        )


def build_bindings(
    run_id: str,
    definition: PipelineDefinition,
    target: Target,
    trigger: TriggerRef,
    stage: StageSpec,
) -> dict[str, str]:
    """Environment bindings available to a stage's command templates."""
    return {
        "remote_user": target.user,
        "host": target.host,
        "port": str(target.port),
        "remote_working_dir": target.remote_working_dir,
        "service_name": target.service_name or "",
        "target": target.name,
        "pipeline": definition.name,
        "run_id": run_id,
        "commit_sha": trigger.commit_sha,
        "ref": trigger.ref,
        "branch": trigger.branch,
        "owner": stage.owner or target.user,
        "mode": stage.mode,
    }


@dataclass
class StageContext:
    """Everything one stage execution may use.

    A fresh context is built for every stage attempt. ``deadline`` is the
    event loop time at which the whole stage times out. ``health_status``
    stays None until a restarted service is being polled, then holds the
    last status seen.
    """

    run_id: str
    stage: StageSpec
    definition: PipelineDefinition
    target: Target
    trigger: TriggerRef
    remote: RemoteSession
    source_root: Path
    bindings: dict[str, str] = field(default_factory=dict)
    deadline: float | None = None
    health_status: str | None = None

    def __post_init__(self) -> None:
        if not self.bindings:
            self.bindings = build_bindings(
                self.run_id, self.definition, self.target, self.trigger, self.stage
            )

    def require(self, *names: str) -> None:
        """Fail the stage if any of the named bindings is empty.

        Raises:
            MissingBindingError: On the first empty binding
        """
        for name in names:
            if not self.bindings.get(name):
                raise MissingBindingError(self.stage.name, name)

    def render(self, template: str) -> str:
        return render_command(template, self.bindings)

    async def execute(self, template: str, tolerate: tuple[int, ...] | None = None) -> CommandResult:
        """Render a command template and run it on the target."""
        return await self.remote.execute(
            self.render(template),
            timeout=self.stage.timeout_seconds,
            tolerate=self.stage.tolerate_exit_codes if tolerate is None else tolerate,
        )


StageExecutor: TypeAlias = Callable[[StageContext], Awaitable[StageOutcome]]

_EXECUTOR_REGISTRY: dict[StageKind, StageExecutor] = {}


def register_executor(kind: StageKind) -> Callable[[StageExecutor], StageExecutor]:
    """Register an executor for a stage kind."""

    def decorator(executor: StageExecutor) -> StageExecutor:
        _EXECUTOR_REGISTRY[kind] = executor
        return executor

    return decorator


def get_executor(kind: StageKind) -> StageExecutor:
    """Return the executor registered for ``kind``.

    Raises:
        KeyError: If no executor is registered
    """
    return _EXECUTOR_REGISTRY[kind]


def get_registered_kinds() -> list[StageKind]:
    return list(_EXECUTOR_REGISTRY)
