"""Builders for definitions and trigger payloads used across tests."""

from pathlib import Path
from typing import Any

from pushdeploy.models.pipeline_definition import PipelineDefinition
from pushdeploy.utils.signature import sign_event

COMMIT = "0123456789abcdef0123456789abcdef01234567"

DEFAULT_STAGES: list[dict[str, Any]] = [
    {"name": "permissions", "kind": "permission_repair"},
    {
        "name": "sync",
        "kind": "file_sync",
        "exclude": [".venv", "__pycache__", "*.pyc"],
    },
    {"name": "dependencies", "kind": "dependency_install"},
    {
        "name": "restart",
        "kind": "service_restart",
        "health_timeout_seconds": 1.0,
        "poll_interval_seconds": 0.02,
    },
]


def build_definition(
    source_dir: Path | str,
    stages: list[dict[str, Any]] | None = None,
    targets: list[dict[str, Any]] | None = None,
    **overrides: Any,
) -> PipelineDefinition:
    """Valid definition deploying ``source_dir`` to one target by default."""
    data: dict[str, Any] = {
        "name": "web",
        "branches": ["main"],
        "source_dir": str(source_dir),
        "remote_working_dir": "/srv/web",
        "service_name": "web",
        "remote_user": "deploy",
        "targets": targets
        or [{"name": "web-1", "host": "10.0.0.1", "credential_id": "deploy-key"}],
        "stages": stages if stages is not None else DEFAULT_STAGES,
    }
    data.update(overrides)
    return PipelineDefinition.model_validate(data)


def make_payload(
    secret: str,
    event: str = "push",
    ref: str = "refs/heads/main",
    commit_sha: str = COMMIT,
    **extra: Any,
) -> dict[str, Any]:
    """Signed trigger payload; ``extra`` fields are added or override the signature."""
    payload: dict[str, Any] = {
        "event": event,
        "ref": ref,
        "commitSHA": commit_sha,
        "deliverySignature": sign_event(secret, event, ref, commit_sha),
    }
    payload.update(extra)
    return payload
