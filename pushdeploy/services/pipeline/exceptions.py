"""
Run-related exceptions re-exported from the domain exception module.

All of them inherit from PushDeployError.
"""

from pushdeploy.exceptions.domain import (
    DefinitionError,
    InvalidRunTransitionError,
    PipelineNotFoundError,
    RunAlreadyFinishedError,
    RunNotFoundError,
    TargetBusyError,
)

__all__ = [
    "DefinitionError",
    "InvalidRunTransitionError",
    "PipelineNotFoundError",
    "RunAlreadyFinishedError",
    "RunNotFoundError",
    "TargetBusyError",
]
