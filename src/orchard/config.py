"""Centralized configuration: Pydantic BaseSettings with TOML + dotenv sources.

Settings live in ``orchard.toml`` next to the caller's working directory.
Environment variables override it using the ``ORCHARD_`` prefix and ``__`` as
the nested delimiter (e.g. ``ORCHARD_CONTAINER__RUNTIME=api``).

Priority (highest wins): init args > env vars > .env > orchard.toml

Usage::

    from orchard.config import get_settings

    s = get_settings()
    print(s.network.error_excerpt_chars)
"""

from __future__ import annotations

import os
from typing import Literal

from pydantic import BaseModel, field_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    TomlConfigSettingsSource,
)

from orchard.logger import set_level

# ---------------------------------------------------------------------------
# Sub-models (each maps to a [section] in orchard.toml)
# ---------------------------------------------------------------------------


class _StrictModel(BaseModel):
    """Base for all config sub-models; reject unknown keys so typos fail loudly."""

    model_config = {"extra": "forbid"}


class CommandConfig(_StrictModel):
    read_chunk_size: int = 8192
    record_limit: int | None = None  # bytes kept per stream, None = unbounded
    log_limit: int | None = None  # log file is truncated past this many bytes
    terminate_grace: float = 5.0  # SIGTERM → SIGKILL
    drain_timeout: float = 5.0  # how long to wait on copiers after a terminate

    @field_validator("read_chunk_size")
    @classmethod
    def clamp_chunk(cls, v: int) -> int:
        return max(1, v)


class ContainerConfig(_StrictModel):
    runtime: Literal["cli", "api"] = "cli"
    cli: str = "docker"
    api_socket: str = "/var/run/docker.sock"
    api_version: str = "v1.43"
    stop_grace: int = 5  # seconds passed to `docker stop -t`
    stop_timeout: float = 10.0  # after this the container is force removed
    build_log_chars: int = 10000


class NetworkConfig(_StrictModel):
    name_prefix: str = "orchard"
    internal: bool = True
    error_excerpt_chars: int = 10000
    error_marker: str = "Error:"
    traceback_marker: str = "Traceback (most recent call last):"
    not_root_cause_marker: str = "ProbablyNotRootCauseError"
    max_concurrent_builds: int = 4
    health_poll_interval: float = 1.0
    ip_retries: int = 50  # inspect attempts while waiting for a container IP
    ip_retry_delay: float = 0.2
    result_timeout: float = 5.0  # wait for a stopped container's runner to finish

    @field_validator("max_concurrent_builds")
    @classmethod
    def clamp_builds(cls, v: int) -> int:
        return max(1, v)


class MessengerConfig(_StrictModel):
    max_frame_bytes: int = 16 * 1024 * 1024
    connect_retries: int = 300
    connect_delay: float = 0.3


class LoggingConfig(_StrictModel):
    level: str = "INFO"

    @field_validator("level")
    @classmethod
    def normalize_level(cls, v: str) -> str:
        return v.upper()


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        toml_file="orchard.toml",
        env_file=".env",
        env_prefix="ORCHARD_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    command: CommandConfig = CommandConfig()
    container: ContainerConfig = ContainerConfig()
    network: NetworkConfig = NetworkConfig()
    messenger: MessengerConfig = MessengerConfig()
    logging: LoggingConfig = LoggingConfig()

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        """Priority: init > env vars > .env > orchard.toml > file secrets."""
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            TomlConfigSettingsSource(settings_cls),
            file_secret_settings,
        )


_settings: Settings | None = None


def get_settings() -> Settings:
    """Lazy cached singleton."""
    global _settings
    if _settings is None:
        _settings = Settings()
        # LOG_LEVEL was already applied when the logger was built
        if "LOG_LEVEL" not in os.environ:
            set_level(_settings.logging.level)
    return _settings


def reset_settings() -> None:
    """Clear the cached singleton (for tests)."""
    global _settings
    _settings = None
