"""
Logging for pushdeploy.

loguru is configured once at import from the settings: a console sink, an
optional rotating file sink and a redacting patcher so private keys and the
webhook secret never reach a sink. Standard library loggers of uvicorn,
SQLAlchemy and paramiko are routed into loguru.
"""

import inspect
import logging
import re
import sys
from typing import TYPE_CHECKING

from loguru import logger as _logger

from ..settings import Settings, settings

if TYPE_CHECKING:
    from loguru import Record

DEFAULT_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{line}</cyan> - "
    "<level>{message}</level>"
)

ROUTED_LOGGERS = ("uvicorn", "uvicorn.error", "uvicorn.access", "fastapi", "sqlalchemy", "paramiko")

PRIVATE_KEY_BLOCK = re.compile(
    r"-----BEGIN [A-Z ]*PRIVATE KEY-----.*?(-----END [A-Z ]*PRIVATE KEY-----|$)", re.DOTALL
)
REDACTED = "[redacted]"


class InterceptHandler(logging.Handler):
    """Forward standard library log records to loguru."""

    def emit(self, record: logging.LogRecord) -> None:
        level: str | int
        try:
            level = _logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        # Skip logging's own frames so loguru reports the real caller
        frame, depth = inspect.currentframe(), 0
        while frame and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        _logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def redact(message: str, secrets: tuple[str, ...] = ()) -> str:
    """Mask private key blocks and the given secret values in ``message``."""
    message = PRIVATE_KEY_BLOCK.sub(REDACTED, message)
    for secret in secrets:
        if secret:
            message = message.replace(secret, REDACTED)
    return message


def _redacting_patcher(secrets: tuple[str, ...]):
    def patch(record: "Record") -> None:
        record["message"] = redact(record["message"], secrets)

    return patch


def configure_logging(config: Settings) -> None:
    """
    Replace loguru's sinks with the ones described by ``config``.

    Args:
        config: Provides level, format, file sink location, rotation and retention
    """
    log_format = config.log_format or DEFAULT_FORMAT

    _logger.remove()
    _logger.configure(patcher=_redacting_patcher((config.webhook_secret,)))

    _logger.add(
        sys.stderr,
        level=config.log_level,
        format=log_format,
        colorize=True,
        backtrace=True,
        diagnose=False,
    )

    if config.log_to_file:
        log_dir = config.get_log_dir()
        log_dir.mkdir(parents=True, exist_ok=True)
        _logger.add(
            str(log_dir / "pushdeploy.log"),
            level=config.log_level,
            format=log_format,
            rotation=config.log_rotation,
            retention=config.log_retention,
            compression="zip",
            backtrace=True,
            diagnose=False,
        )

    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)
    for name in ROUTED_LOGGERS:
        logging.getLogger(name).handlers = [InterceptHandler()]

    # paramiko logs transport internals at DEBUG
    logging.getLogger("paramiko").setLevel(logging.WARNING)


configure_logging(settings)

logger = _logger
