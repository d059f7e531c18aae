from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class RuntimeConfig(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="BATCHHOST_", case_sensitive=False)

    log_level: str = "info"
    log_format: str = "json"

    python_executable: str | None = None
    shell: str = "sh"

    # Seconds. None means wait indefinitely.
    startup_timeout: float = Field(default=30.0, gt=0)
    invocation_timeout: float | None = Field(default=None, gt=0)
    shutdown_grace: float = Field(default=5.0, ge=0)
    script_timeout: float | None = Field(default=None, gt=0)

    install_requirements: bool = False

    log_dir: Path | None = None
    # Threshold for handler and script output; defaults to log_level.
    output_log_level: str | None = None


@lru_cache
def get_runtime_config() -> RuntimeConfig:
    return RuntimeConfig()
