"""
Domain exceptions for business logic layer.

These exceptions are used in repositories and services to represent
business logic errors without coupling to HTTP status codes.

Exceptions raised while a stage executes carry an ``error_kind`` that is
stored verbatim in the stage result, so a failed run can be diagnosed
without re-running it.
"""


class PushDeployError(Exception):
    """Base exception for all pushdeploy-specific errors."""

    error_kind: str = "InternalError"


# Base domain exceptions
class EntityNotFoundError(PushDeployError):
    """Raised when an entity is not found in the database."""

    error_kind = "NotFound"


class BusinessRuleViolationError(PushDeployError):
    """Raised when a business rule is violated."""

    error_kind = "Conflict"


# Configuration errors
class ConfigurationError(PushDeployError):
    """Raised when there's a configuration problem."""

    error_kind = "ConfigurationError"


class DefinitionError(ConfigurationError):
    """Raised when a pipeline definition cannot be loaded or is invalid."""

    error_kind = "InvalidDefinition"


class PipelineNotFoundError(EntityNotFoundError):
    """Raised when a pipeline definition is not registered."""

    def __init__(self, name: str):
        super().__init__(f"Pipeline '{name}' not found")


class TargetNotFoundError(EntityNotFoundError):
    """Raised when a target is not part of any known definition."""

    def __init__(self, name: str, pipeline: str | None = None):
        if pipeline:
            super().__init__(f"Target '{name}' not found in pipeline '{pipeline}'")
        else:
            super().__init__(f"Target '{name}' not found")


# Trigger errors
class TriggerRejectedError(PushDeployError):
    """Base class for inbound events that must not start a run."""

    pass


class SignatureInvalidError(TriggerRejectedError):
    """Raised when a delivery signature does not match the shared secret."""

    error_kind = "SignatureInvalid"

    def __init__(self, detail: str = "Delivery signature is invalid") -> None:
        super().__init__(detail)


class MalformedEventError(TriggerRejectedError):
    """Raised when an inbound event payload cannot be understood."""

    error_kind = "MalformedEvent"


class UnsupportedEventError(TriggerRejectedError):
    """Raised when the event kind is not one the listener handles."""

    error_kind = "UnsupportedEvent"

    def __init__(self, event: str):
        super().__init__(f"Unsupported event kind '{event}'")


class BranchNotAllowedError(TriggerRejectedError):
    """Raised when the pushed branch is outside the configured set."""

    error_kind = "BranchNotAllowed"

    def __init__(self, branch: str):
        super().__init__(f"Branch '{branch}' is not configured for deployment")


# Run errors
class TargetBusyError(BusinessRuleViolationError):
    """Raised when a target already has a non-terminal run."""

    error_kind = "TargetBusy"

    def __init__(self, target: str, run_id: str | None = None):
        self.target = target
        self.run_id = run_id
        if run_id:
            super().__init__(f"Target '{target}' is busy with run {run_id}")
        else:
            super().__init__(f"Target '{target}' is busy")


class RunNotFoundError(EntityNotFoundError):
    """Raised when a run is not found."""

    def __init__(self, run_id: str):
        super().__init__(f"Run '{run_id}' not found")


class RunAlreadyFinishedError(BusinessRuleViolationError):
    """Raised when trying to cancel a run that already reached a terminal state."""

    def __init__(self, run_id: str, status: str):
        super().__init__(f"Run '{run_id}' already finished with status '{status}'")


class InvalidRunTransitionError(BusinessRuleViolationError):
    """Raised when a run state transition would revisit or skip a state."""

    def __init__(self, run_id: str, current: str, new: str):
        super().__init__(f"Run '{run_id}' cannot move from '{current}' to '{new}'")


# Credential errors
class CredentialNotFoundError(EntityNotFoundError):
    """Raised when the vault has no credential for an identifier."""

    error_kind = "AuthError"

    def __init__(self, identifier: str):
        super().__init__(f"Credential '{identifier}' not found in vault")


# Remote execution errors
class RemoteError(PushDeployError):
    """Base exception for errors talking to a target host."""

    error_kind = "RemoteError"


class TransientNetworkError(RemoteError):
    """Raised when a connection or handshake fails; safe to retry."""

    error_kind = "TransientNetworkError"


class AuthError(RemoteError):
    """Raised when the target host rejects the credential. Never retried."""

    error_kind = "AuthError"


class RemoteCommandFailure(RemoteError):
    """Raised when an intentional remote command exits non-zero."""

    error_kind = "RemoteCommandFailure"

    def __init__(
        self, command: str, exit_code: int | None, output: str = "", truncated: bool = False
    ):
        self.command = command
        self.exit_code = exit_code
        self.output = output
        self.truncated = truncated
        super().__init__(f"Command exited with status {exit_code}: {command}")


class RemoteCommandTimeout(RemoteCommandFailure):
    """Raised when a remote command outlives its per-call timeout."""

    error_kind = "RemoteCommandTimeout"

    def __init__(self, command: str, timeout: float, output: str = ""):
        super().__init__(command, None, output)
        self.args = (f"Command timed out after {timeout:g}s: {command}",)


class SyncFailure(RemoteError):
    """Raised when a file tree transfer is interrupted."""

    error_kind = "SyncFailure"


class HealthCheckTimeout(RemoteError):
    """Raised when a restarted service never reports active."""

    error_kind = "HealthCheckTimeout"

    def __init__(self, service: str, timeout: float, last_status: str = ""):
        self.service = service
        self.last_status = last_status
        detail = f"Service '{service}' did not become active within {timeout:g}s"
        if last_status:
            detail += f" (last status: {last_status})"
        super().__init__(detail)


# Stage errors
class StageError(PushDeployError):
    """Base exception for stage-level failures outside the remote taxonomy."""

    error_kind = "StageError"


class MissingBindingError(StageError):
    """Raised when a stage requires an environment binding that is empty."""

    error_kind = "MissingBinding"

    def __init__(self, stage: str, binding: str):
        super().__init__(f"Stage '{stage}' requires binding '{binding}' but it is empty")


class LocalCommandError(StageError):
    """Raised when a command run on the orchestrator host fails."""

    error_kind = "LocalCommandFailure"


# Database errors
class DatabaseError(PushDeployError):
    """Raised when there's a database operation error."""

    error_kind = "DatabaseError"
