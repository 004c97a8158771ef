"""
Loading pipeline definitions from files.

Definitions live in ``settings.definitions_path`` as ``*.toml`` or
``*.json`` files, one definition per file. Loaded definitions are kept in a
process-wide registry and synchronized to the database so the API and
other processes can see what is deployed where.

Example file content (``pipelines/web.toml``):
    name = "web"
    branches = ["main"]
    source_dir = "../app"
    remote_working_dir = "/srv/web"
    service_name = "web"
    remote_user = "deploy"

    [[targets]]
    name = "web-1"
    host = "10.0.0.5"
    credential_id = "web-deploy"

    [[stages]]
    name = "sync"
    kind = "file_sync"
    exclude = ["__pycache__", "*.pyc"]
"""

import json
import tomllib
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from pushdeploy.exceptions.domain import DefinitionError, PipelineNotFoundError
from pushdeploy.models.pipeline_definition import PipelineDefinition
from pushdeploy.models.target import Target
from pushdeploy.repositories.pipeline_definition_repository import PipelineDefinitionRepository
from pushdeploy.repositories.target_repository import TargetRepository
from pushdeploy.utils.database import SessionFactory
from pushdeploy.utils.logger import logger

DEFINITION_SUFFIXES = (".toml", ".json")

# Global registry: pipeline name -> definition
_DEFINITION_REGISTRY: dict[str, PipelineDefinition] = {}


def _format_validation_error(error: ValidationError) -> str:
    return "; ".join(
        f"{'.'.join(str(p) for p in e['loc']) or '<root>'}: {e['msg']}" for e in error.errors()
    )


def parse_definition(data: Any, base_dir: Path | None = None, origin: str = "<data>") -> PipelineDefinition:
    """Validate raw definition data.

    A relative ``source_dir`` is resolved against ``base_dir``.

    Raises:
        DefinitionError: If the data is not a valid definition
    """
    if not isinstance(data, dict):
        raise DefinitionError(f"{origin}: definition must be a table/object")
    try:
        definition = PipelineDefinition.model_validate(data)
    except ValidationError as e:
        raise DefinitionError(f"{origin}: {_format_validation_error(e)}") from None

    source = Path(definition.source_dir).expanduser()
    if not source.is_absolute() and base_dir is not None:
        source = base_dir / source
    return definition.model_copy(update={"source_dir": str(source.resolve())})


def load_definition_file(file_path: Path) -> PipelineDefinition:
    """Load one definition from a TOML or JSON file.

    Raises:
        DefinitionError: If the file is missing, unreadable or invalid
    """
    if not file_path.is_file():
        raise DefinitionError(f"Definition file not found: {file_path}")
    try:
        if file_path.suffix == ".json":
            data = json.loads(file_path.read_text(encoding="utf-8"))
        else:
            with file_path.open("rb") as f:
                data = tomllib.load(f)
    except (OSError, json.JSONDecodeError, tomllib.TOMLDecodeError) as e:
        raise DefinitionError(f"{file_path}: {e}") from None
    return parse_definition(data, file_path.parent.resolve(), str(file_path))


def find_definition_files(base_path: Path) -> list[Path]:
    """Definition files in a directory, sorted by name."""
    if not base_path.is_dir():
        logger.warning(f"Definitions directory not found: {base_path}")
        return []
    return sorted(p for p in base_path.iterdir() if p.suffix in DEFINITION_SUFFIXES and p.is_file())


def load_definitions(base_path: Path, strict: bool = False) -> dict[str, PipelineDefinition]:
    """Load every definition in a directory.

    Args:
        base_path: Directory with definition files
        strict: Raise on the first invalid file instead of skipping it

    Returns:
        Definitions by name

    Raises:
        DefinitionError: In strict mode, or when two definitions share a
            name or a target name
    """
    definitions: dict[str, PipelineDefinition] = {}
    target_owners: dict[str, str] = {}

    for file_path in find_definition_files(base_path):
        try:
            definition = load_definition_file(file_path)
        except DefinitionError as e:
            if strict:
                raise
            logger.error(f"Skipping invalid definition: {e}")
            continue

        if definition.name in definitions:
            raise DefinitionError(f"{file_path}: duplicate pipeline name '{definition.name}'")
        for target in definition.targets:
            owner = target_owners.setdefault(target.name, definition.name)
            if owner != definition.name:
                raise DefinitionError(
                    f"{file_path}: target '{target.name}' already belongs to pipeline '{owner}'"
                )
        definitions[definition.name] = definition
        logger.info(
            f"Loaded pipeline '{definition.name}' "
            f"({len(definition.stages)} stages, {len(definition.targets)} targets)"
        )

    return definitions


def register_definitions(definitions: dict[str, PipelineDefinition]) -> None:
    """Replace the registry contents with ``definitions``."""
    _DEFINITION_REGISTRY.clear()
    _DEFINITION_REGISTRY.update(definitions)


def register_definition(definition: PipelineDefinition) -> None:
    _DEFINITION_REGISTRY[definition.name] = definition


def get_definition(name: str) -> PipelineDefinition:
    """Look up a registered definition.

    Raises:
        PipelineNotFoundError: If no definition has that name
    """
    definition = _DEFINITION_REGISTRY.get(name)
    if definition is None:
        raise PipelineNotFoundError(name)
    return definition


def get_all_definitions() -> dict[str, PipelineDefinition]:
    return dict(_DEFINITION_REGISTRY)


def resolve_target(definition: PipelineDefinition, target_name: str) -> Target | None:
    """Target of ``definition`` with global fields applied, or None."""
    spec = definition.target_spec(target_name)
    if spec is None:
        return None
    return Target.resolve(definition, spec)


def find_definition_for_target(target_name: str) -> PipelineDefinition | None:
    for definition in _DEFINITION_REGISTRY.values():
        if definition.target_spec(target_name) is not None:
            return definition
    return None


async def sync_definitions(
    session_factory: SessionFactory, definitions: dict[str, PipelineDefinition] | None = None
) -> int:
    """Store definitions and their resolved targets in the database.

    Args:
        session_factory: Opens a database session
        definitions: Definitions to store, the registry contents by default

    Returns:
        Number of definitions stored
    """
    definitions = get_all_definitions() if definitions is None else definitions
    async with session_factory() as session:
        definition_repo = PipelineDefinitionRepository(session)
        target_repo = TargetRepository(session)
        for definition in definitions.values():
            await definition_repo.upsert(definition)
            await target_repo.sync_from_definition(definition)
    logger.info(f"Synchronized {len(definitions)} pipeline definitions to the database")
    return len(definitions)


def reload_definitions(base_path: Path) -> dict[str, PipelineDefinition]:
    """Load a directory and make it the registry contents."""
    definitions = load_definitions(base_path)
    register_definitions(definitions)
    return definitions
