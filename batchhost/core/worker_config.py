from __future__ import annotations

import re
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from batchhost.core.errors import ConfigError

INIT_SCRIPT = "init.sh"
CLEANUP_SCRIPT = "cleanup.sh"
REQUIREMENTS_FILE = "requirements.txt"

_DOTTED_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)*$")


class WorkerConfig(BaseModel):
    """Where the handler lives and how to call it. Set once per worker."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    base_dir: Path | None = None
    handler_module: str | None = None
    handler_file: Path | None = None
    handler_function: str
    python_executable: str | None = None
    max_batch_size: int = Field(default=64, ge=1)

    @field_validator("handler_function")
    @classmethod
    def _check_function(cls, value: str) -> str:
        if not value.isidentifier():
            raise ValueError(f"handler function must be an identifier, got {value!r}")
        return value

    @field_validator("base_dir", "handler_file")
    @classmethod
    def _absolute_path(cls, value: Path | None) -> Path | None:
        # Scripts run with base_dir as their cwd, so paths are kept absolute.
        return None if value is None else value.expanduser().absolute()

    @field_validator("handler_module")
    @classmethod
    def _check_module(cls, value: str | None) -> str | None:
        if value is not None and not _DOTTED_NAME.match(value):
            raise ValueError(f"handler module must be a dotted name, got {value!r}")
        return value

    @model_validator(mode="after")
    def _check_location(self) -> "WorkerConfig":
        if (self.handler_module is None) == (self.handler_file is None):
            raise ValueError("exactly one of handler_module and handler_file must be set")
        if self.handler_module is not None and self.base_dir is None:
            raise ValueError("handler_module requires base_dir")
        if self.base_dir is not None and not self.base_dir.is_dir():
            raise ValueError(f"base_dir is not a directory: {self.base_dir}")
        return self

    @classmethod
    def build(cls, **values: Any) -> "WorkerConfig":
        """Validate ``values``, raising ConfigError instead of ValidationError."""
        try:
            return cls(**values)
        except ValidationError as exc:
            messages = "; ".join(err["msg"] for err in exc.errors())
            raise ConfigError(
                code="invalid_config",
                message="Invalid worker configuration",
                detail=messages,
            ) from exc

    @property
    def lifecycle_scripts_enabled(self) -> bool:
        # The file form never runs init/cleanup, even with a base_dir.
        return self.base_dir is not None and self.handler_file is None

    @property
    def working_dir(self) -> Path:
        if self.base_dir is not None:
            return self.base_dir
        if self.handler_file is None:
            raise ConfigError(code="invalid_config", message="Worker has neither base_dir nor handler_file")
        return self.handler_file.parent

    @property
    def init_script(self) -> Path | None:
        if self.base_dir is None:
            return None
        return self.base_dir / INIT_SCRIPT

    @property
    def cleanup_script(self) -> Path | None:
        if self.base_dir is None:
            return None
        return self.base_dir / CLEANUP_SCRIPT

    @property
    def requirements_file(self) -> Path | None:
        if self.base_dir is None:
            return None
        return self.base_dir / REQUIREMENTS_FILE

    @property
    def handler_label(self) -> str:
        location = self.handler_module or str(self.handler_file)
        return f"{location}:{self.handler_function}"
