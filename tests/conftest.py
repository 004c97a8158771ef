"""Global configuration for pushdeploy tests."""

from collections import defaultdict
from collections.abc import AsyncGenerator, Callable
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio

from pushdeploy.models.pipeline_definition import PipelineDefinition
from pushdeploy.models.target import Target
from pushdeploy.services.pipeline.engine import PipelineEngine
from pushdeploy.services.pipeline.loader import register_definitions
from pushdeploy.services.remote.client import RemoteExecutionClient
from pushdeploy.services.remote.vault import Credential, MemoryVault
from pushdeploy.settings import Settings
from pushdeploy.utils.db_manager import DatabaseManager

from tests.utils import FakeHost, FakeTransport, build_definition

WEBHOOK_SECRET = "test-webhook-secret"


@pytest.fixture
def test_settings(tmp_path: Path) -> Settings:
    """Settings with short delays so retries and polling stay fast."""
    return Settings(
        webhook_secret=WEBHOOK_SECRET,
        definitions_path=str(tmp_path / "pipelines"),
        storage_path=str(tmp_path / "data"),
        retry_attempts=3,
        retry_delay=0.01,
        retry_max_delay=0.05,
        cancel_poll_interval=0.05,
        command_timeout=5.0,
        ssh_connect_timeout=1.0,
        output_limit_bytes=4096,
        run_timeout_seconds=30.0,
    )


@pytest_asyncio.fixture
async def database(tmp_path: Path) -> AsyncGenerator[DatabaseManager, None]:
    """File-backed SQLite database with all tables created."""
    manager = DatabaseManager(url=f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    await manager.create_db_and_tables_async()
    yield manager
    await manager.close()


@pytest.fixture
def fleet() -> defaultdict[str, FakeHost]:
    """Fake hosts by host name, created on first use."""
    return defaultdict(FakeHost)


@pytest.fixture
def fake_host(fleet: defaultdict[str, FakeHost]) -> FakeHost:
    """The host behind the default ``web-1`` target."""
    return fleet["10.0.0.1"]


@pytest.fixture
def vault() -> MemoryVault:
    return MemoryVault({"deploy-key": "-----BEGIN FAKE KEY-----"})


@pytest.fixture
def remote_client(
    vault: MemoryVault, fleet: defaultdict[str, FakeHost], test_settings: Settings
) -> RemoteExecutionClient:
    """Remote client whose transports talk to the fake fleet."""

    def factory(target: Target, credential: Credential) -> FakeTransport:
        return FakeTransport(fleet[target.host])

    return RemoteExecutionClient(vault=vault, transport_factory=factory, config=test_settings)


@pytest_asyncio.fixture
async def engine(
    database: DatabaseManager, remote_client: RemoteExecutionClient, test_settings: Settings
) -> AsyncGenerator[PipelineEngine, None]:
    engine = PipelineEngine(database.get_async_session_context, remote_client, test_settings)
    yield engine
    await engine.shutdown()


@pytest.fixture
def source_tree(tmp_path: Path) -> Path:
    """Small application tree with files that must never be published."""
    root = tmp_path / "app"
    (root / "pkg" / "__pycache__").mkdir(parents=True)
    (root / ".venv" / "lib").mkdir(parents=True)
    (root / ".git").mkdir()
    (root / "app.py").write_text("print('hello')\n")
    (root / "requirements.txt").write_text("requests\n")
    (root / "pkg" / "__init__.py").write_text("")
    (root / "pkg" / "core.py").write_text("VALUE = 1\n")
    (root / "pkg" / "__pycache__" / "core.cpython-312.pyc").write_bytes(b"\x00\x01")
    (root / ".venv" / "lib" / "site.py").write_text("# venv\n")
    (root / ".git" / "HEAD").write_text("ref: refs/heads/main\n")
    (root / "run.sh").write_text("#!/bin/sh\nexec python3 app.py\n")
    (root / "run.sh").chmod(0o755)
    return root


@pytest.fixture
def make_definition(source_tree: Path) -> Callable[..., PipelineDefinition]:
    """Factory for definitions deploying ``source_tree``."""

    def factory(**kwargs: Any) -> PipelineDefinition:
        return build_definition(source_tree, **kwargs)

    return factory


@pytest.fixture
def definition(make_definition: Callable[..., PipelineDefinition]) -> PipelineDefinition:
    return make_definition()


@pytest.fixture
def target(definition: PipelineDefinition) -> Target:
    return Target.resolve(definition, definition.targets[0])


@pytest.fixture(autouse=True)
def _clear_definition_registry():
    """Clear the definition registry before and after each test."""
    register_definitions({})
    yield
    register_definitions({})
