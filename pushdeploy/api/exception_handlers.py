"""
Exception handlers converting domain exceptions to HTTP responses.

Every ``PushDeployError`` reaching the API is answered with its status code
from ``ERROR_STATUS`` and a body carrying ``detail`` and ``error_kind``.
"""

from typing import Any

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from pushdeploy.exceptions.domain import (
    BusinessRuleViolationError,
    ConfigurationError,
    DatabaseError,
    DefinitionError,
    EntityNotFoundError,
    PushDeployError,
    SignatureInvalidError,
    TargetBusyError,
    TriggerRejectedError,
)
from pushdeploy.utils.logger import logger

# First match wins, so subclasses precede their bases.
ERROR_STATUS: list[tuple[type[PushDeployError], int]] = [
    (SignatureInvalidError, status.HTTP_401_UNAUTHORIZED),
    (TriggerRejectedError, status.HTTP_400_BAD_REQUEST),
    (EntityNotFoundError, status.HTTP_404_NOT_FOUND),
    (BusinessRuleViolationError, status.HTTP_409_CONFLICT),
    (DefinitionError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (ConfigurationError, status.HTTP_503_SERVICE_UNAVAILABLE),
    (DatabaseError, status.HTTP_500_INTERNAL_SERVER_ERROR),
]


def status_for(exc: PushDeployError) -> int:
    for error_type, code in ERROR_STATUS:
        if isinstance(exc, error_type):
            return code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def error_body(exc: PushDeployError) -> dict[str, Any]:
    """Response body for a domain error.

    Database errors are reported without their message.
    """
    if isinstance(exc, DatabaseError):
        return {"detail": "Database operation failed", "error_kind": exc.error_kind}
    body: dict[str, Any] = {"detail": str(exc) or type(exc).__name__, "error_kind": exc.error_kind}
    if isinstance(exc, TargetBusyError):
        body["target"] = exc.target
        body["run_id"] = exc.run_id
    return body


def setup_exception_handlers(app: FastAPI) -> None:
    """Register the domain error handler on ``app``."""

    @app.exception_handler(PushDeployError)
    async def handle_domain_error(request: Request, exc: PushDeployError) -> JSONResponse:
        code = status_for(exc)
        if code >= status.HTTP_500_INTERNAL_SERVER_ERROR:
            logger.error(f"{request.method} {request.url.path} failed: {exc!r}")
        return JSONResponse(status_code=code, content=error_body(exc))
