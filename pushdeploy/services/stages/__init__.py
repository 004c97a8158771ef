"""
Stage executors.

Importing this package registers one executor per ``StageKind``.
"""

from . import command, dependency_install, file_sync, permission_repair, service_restart  # noqa: F401
from .base import (
    StageContext,
    StageExecutor,
    StageOutcome,
    build_bindings,
    get_executor,
    get_registered_kinds,
    register_executor,
)

__all__ = [
    "StageContext",
    "StageExecutor",
    "StageOutcome",
    "build_bindings",
    "get_executor",
    "get_registered_kinds",
    "register_executor",
]
