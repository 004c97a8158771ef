"""Pipeline definition models.

``PipelineDefinition`` is the immutable, validated form of a definition
file. ``PipelineDefinitionRecord`` is its stored copy so the API and
other processes can see what was loaded.
"""

from datetime import datetime
from typing import Any, Self

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel
from sqlmodel import JSON, Column, SQLModel
from sqlmodel import Field as SQLField

from ..utils.templates import BINDING_NAMES, unknown_fields
from .base import StageKind, StagePolicy, utcnow

NAME_PATTERN = r"^[A-Za-z0-9][A-Za-z0-9_.-]*$"

# Kinds that ship a default command and may omit ``command``.
KINDS_WITH_DEFAULT_COMMAND = frozenset(
    {
        StageKind.permission_repair,
        StageKind.file_sync,
        StageKind.dependency_install,
        StageKind.service_restart,
    }
)

_SPEC_CONFIG = ConfigDict(
    alias_generator=to_camel,
    populate_by_name=True,
    frozen=True,
    extra="forbid",
)


def _check_templates(*templates: str | None) -> None:
    for template in templates:
        if template is None:
            continue
        unknown = unknown_fields(template)
        if unknown:
            raise ValueError(
                f"Unknown bindings {sorted(unknown)} in command '{template}'. "
                f"Known bindings: {sorted(BINDING_NAMES)}"
            )


class StageSpec(BaseModel):
    """One ordered unit of work in a pipeline.

    Args:
        name: Stage name, unique within the definition.
        kind: Which executor runs the stage.
        command: Command template. Optional for kinds with a default.
        requires: Bindings that must be non-empty when the stage runs.
        policy: ``fatal`` halts the run on failure, ``best-effort`` records
            the failure and continues. Defaults to ``best-effort`` for
            dependency installs and ``fatal`` otherwise.
        timeout_seconds: Upper bound for the whole stage, polling and retries
            included.
        tolerate_exit_codes: Non-zero exit codes that still count as success.
    """

    model_config = _SPEC_CONFIG

    name: str = Field(min_length=1, max_length=100)
    kind: StageKind
    command: str | None = None
    requires: tuple[str, ...] = ()
    policy: StagePolicy = StagePolicy.fatal
    timeout_seconds: float = Field(default=300.0, gt=0)
    tolerate_exit_codes: tuple[int, ...] = ()

    # file_sync
    source: str | None = None
    exclude: tuple[str, ...] = ()
    delete: bool = False
    checkout: bool = False

    # permission_repair
    owner: str | None = None
    mode: str = Field(default="755", pattern=r"^[0-7]{3,4}$")

    # service_restart
    reload_command: str | None = None
    status_command: str | None = None
    health_timeout_seconds: float = Field(default=60.0, gt=0)
    poll_interval_seconds: float = Field(default=2.0, gt=0)

    @model_validator(mode="before")
    @classmethod
    def default_policy_from_kind(cls, data: Any) -> Any:
        """Dependency installs are best-effort unless stated otherwise."""
        if isinstance(data, dict) and "policy" not in data:
            kind = data.get("kind")
            if getattr(kind, "value", kind) == StageKind.dependency_install.value:
                return {**data, "policy": StagePolicy.best_effort}
        return data

    @field_validator("requires")
    @classmethod
    def requires_known_bindings(cls, value: tuple[str, ...]) -> tuple[str, ...]:
        unknown = set(value) - BINDING_NAMES
        if unknown:
            raise ValueError(f"Unknown required bindings: {sorted(unknown)}")
        return value

    @model_validator(mode="after")
    def check_commands(self) -> Self:
        if self.command is None and self.kind not in KINDS_WITH_DEFAULT_COMMAND:
            raise ValueError(f"Stage '{self.name}' of kind '{self.kind.value}' needs a command")
        _check_templates(self.command, self.reload_command, self.status_command)
        return self


class TargetSpec(BaseModel):
    """A deployment destination as written in a definition file.

    ``remote_working_dir``, ``service_name`` and ``user`` fall back to the
    definition's global values when omitted.
    """

    model_config = _SPEC_CONFIG

    name: str = Field(pattern=NAME_PATTERN, max_length=100)
    host: str = Field(min_length=1)
    port: int = Field(default=22, gt=0, lt=65536)
    user: str | None = None
    credential_id: str = Field(min_length=1)
    remote_working_dir: str | None = None
    service_name: str | None = None


class PipelineDefinition(BaseModel):
    """Validated, immutable pipeline definition.

    Args:
        name: Unique pipeline identifier.
        branches: Branches whose pushes deploy this pipeline.
        source_dir: Local tree synchronized by file sync stages.
        remote_working_dir: Default remote working directory for targets.
        service_name: Default service restarted on targets.
        remote_user: Default SSH user for targets.
        stages: Ordered stage specifications.
        targets: Fleet of targets sharing this definition.
    """

    model_config = _SPEC_CONFIG

    name: str = Field(pattern=NAME_PATTERN, max_length=100)
    description: str | None = None
    branches: tuple[str, ...] = ("main",)
    source_dir: str = "."
    remote_working_dir: str = Field(min_length=1)
    service_name: str | None = None
    remote_user: str | None = None
    stages: tuple[StageSpec, ...] = Field(min_length=1)
    targets: tuple[TargetSpec, ...] = Field(min_length=1)

    @model_validator(mode="before")
    @classmethod
    def single_target_shorthand(cls, data: Any) -> Any:
        """Accept ``target = {...}`` for a single-host definition."""
        if isinstance(data, dict) and "target" in data:
            if "targets" in data:
                raise ValueError("Use either 'target' or 'targets', not both")
            data = dict(data)
            data["targets"] = [data.pop("target")]
        return data

    @model_validator(mode="after")
    def check_consistency(self) -> Self:
        for label, names in (
            ("stage", [s.name for s in self.stages]),
            ("target", [t.name for t in self.targets]),
        ):
            duplicates = {n for n in names if names.count(n) > 1}
            if duplicates:
                raise ValueError(f"Duplicate {label} names: {sorted(duplicates)}")

        for target in self.targets:
            if not (target.user or self.remote_user):
                raise ValueError(f"Target '{target.name}' has no user and no remote_user is set")

        needs_service = any(s.kind == StageKind.service_restart for s in self.stages)
        if needs_service:
            for target in self.targets:
                if not (target.service_name or self.service_name):
                    raise ValueError(
                        f"Target '{target.name}' has no service_name for the restart stage"
                    )
        return self

    def target_spec(self, name: str) -> TargetSpec | None:
        """Find a target of this definition by name."""
        for target in self.targets:
            if target.name == name:
                return target
        return None

    def deploys_branch(self, branch: str) -> bool:
        return branch in self.branches


class PipelineDefinitionBase(SQLModel):
    """Shared fields for stored pipeline definitions.

    Args:
        name: Unique pipeline identifier (primary key).
        branches: Branches that trigger this pipeline.
        document: The full validated definition.
    """

    name: str = SQLField(primary_key=True, min_length=1, max_length=100)
    branches: list[str] = SQLField(default_factory=list, sa_column=Column(JSON))
    document: dict[str, Any] = SQLField(default_factory=dict, sa_column=Column(JSON))


class PipelineDefinitionRecord(PipelineDefinitionBase, table=True):
    """Stored pipeline definition."""

    __tablename__ = "pipeline_definition"

    synced_at: datetime = SQLField(default_factory=utcnow)


class PipelineDefinitionRead(PipelineDefinitionBase):
    """API response schema for pipeline definitions."""

    synced_at: datetime
