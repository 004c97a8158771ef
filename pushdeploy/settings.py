"""
Configuration settings for pushdeploy.

Values come from explicit arguments, ``PUSHDEPLOY_*`` environment variables
and the ``settings.toml`` / ``settings.custom.toml`` files, in that order.
"""

from enum import Enum
from functools import lru_cache
from pathlib import Path
from typing import Self

from pydantic import Field, model_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    TomlConfigSettingsSource,
)


class DatabaseDriver(str, Enum):
    """Supported run store backends, both accessed through async drivers."""

    SQLITE = "sqlite"
    POSTGRESQL = "postgresql"


class VaultBackend(str, Enum):
    """Supported credential vault backends."""

    FILE = "file"
    ENV = "env"


class HostKeyPolicy(str, Enum):
    """What to do with a host key that is not in known_hosts."""

    REJECT = "reject"
    WARN = "warn"
    AUTO_ADD = "auto-add"


class Settings(BaseSettings):
    """Settings of the trigger server, the engine and the CLI."""

    model_config = SettingsConfigDict(
        toml_file=["settings.toml", "settings.custom.toml"],
        env_prefix="PUSHDEPLOY_",
        extra="ignore",
    )

    # Server
    port: int = 8000
    host: str = "127.0.0.1"
    root_url: str = "/"
    debug: bool = False

    storage_path: str = str(Path.home() / ".pushdeploy")

    # Run store
    database_driver: DatabaseDriver = DatabaseDriver.SQLITE
    database_host: str = "localhost"
    database_port: int = 5432
    database_name: str = "pushdeploy"
    database_username: str = "postgres"
    database_password: str = "postgres"

    # Trigger
    # Empty rejects every delivery until an operator sets it
    webhook_secret: str = ""
    supported_events: list[str] = ["push"]
    allowed_branches: list[str] = []

    definitions_path: str = "pipelines"

    # Credential vault
    vault_backend: VaultBackend = VaultBackend.FILE
    vault_path: str = str(Path.home() / ".ssh")

    # SSH
    ssh_connect_timeout: float = Field(10.0, gt=0)
    ssh_host_key_policy: HostKeyPolicy = HostKeyPolicy.REJECT
    ssh_known_hosts: str | None = None
    command_timeout: float = Field(120.0, gt=0)
    output_limit_bytes: int = Field(64 * 1024, gt=0)

    # Engine
    retry_attempts: int = Field(3, ge=1)
    retry_delay: float = Field(1.0, ge=0)
    retry_max_delay: float = Field(30.0, ge=0)
    run_timeout_seconds: float = Field(3600.0, gt=0)
    cancel_poll_interval: float = Field(2.0, gt=0)
    lock_max_age_seconds: float = Field(6 * 3600.0, ge=0)

    # Logging
    log_level: str = "INFO"
    log_to_file: bool = False
    log_dir: str | None = None  # defaults to {storage_path}/logs
    log_rotation: str = "20 MB"
    log_retention: str = "1 week"
    log_format: str | None = None

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,  # noqa: ARG003
        file_secret_settings: PydanticBaseSettingsSource,  # noqa: ARG003
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        return init_settings, env_settings, TomlConfigSettingsSource(settings_cls)

    @model_validator(mode="after")
    def check_lock_age(self) -> Self:
        """A lock must outlive the longest run before other hosts may reclaim it."""
        if self.lock_max_age_seconds <= self.run_timeout_seconds:
            raise ValueError(
                f"lock_max_age_seconds ({self.lock_max_age_seconds:g}) must exceed "
                f"run_timeout_seconds ({self.run_timeout_seconds:g})"
            )
        return self

    @property
    def database_url(self) -> str:
        """Async SQLAlchemy URL of the run store.

        A relative SQLite database name is placed under ``storage_path``.
        """
        if self.database_driver == DatabaseDriver.SQLITE:
            path = Path(self.database_name).expanduser()
            if not path.suffix:
                path = path.with_suffix(".db")
            if not path.is_absolute():
                path = Path(self.storage_path).expanduser() / path
            return f"sqlite+aiosqlite:///{path}"
        return (
            f"postgresql+asyncpg://{self.database_username}:{self.database_password}"
            f"@{self.database_host}:{self.database_port}/{self.database_name}"
        )

    def get_log_dir(self) -> Path:
        if self.log_dir:
            return Path(self.log_dir).expanduser()
        return Path(self.storage_path).expanduser() / "logs"

    def get_definitions_dir(self) -> Path:
        """Get the directory holding pipeline definition files."""
        return Path(self.definitions_path).expanduser()


@lru_cache
def get_settings() -> Settings:
    """Get the settings instance, with caching."""
    return Settings()


settings = get_settings()
