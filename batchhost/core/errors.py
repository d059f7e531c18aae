from __future__ import annotations

from dataclasses import dataclass
from typing import Literal

Phase = Literal["setup", "invocation", "teardown", "external"]


@dataclass(eq=False)
class BatchHostError(Exception):
    code: str
    message: str
    detail: str | None = None

    def __str__(self) -> str:
        if self.detail:
            return f"{self.message} ({self.detail})"
        return self.message


@dataclass(eq=False)
class ConfigError(BatchHostError):
    """Worker or runtime configuration is unusable."""


@dataclass(eq=False)
class LifecycleStateError(BatchHostError):
    """An operation was requested in a state that does not allow it."""


@dataclass(eq=False)
class LifecycleFailure(BatchHostError):
    """A failure recorded by a worker lifecycle, tagged with its phase."""

    phase: Phase = "setup"
    exit_code: int | None = None


@dataclass(eq=False)
class SetupFailure(LifecycleFailure):
    phase: Phase = "setup"


@dataclass(eq=False)
class StartFailure(SetupFailure):
    """The handler process could not be spawned or never became ready."""


@dataclass(eq=False)
class InvocationFailure(LifecycleFailure):
    phase: Phase = "invocation"


@dataclass(eq=False)
class TeardownFailure(LifecycleFailure):
    phase: Phase = "teardown"


@dataclass(eq=False)
class ExternalFailure(LifecycleFailure):
    phase: Phase = "external"


@dataclass(eq=False)
class WorkerFailure(BatchHostError):
    """Terminal failure of one worker slot, as surfaced to the pipeline engine."""

    phase: Phase = "invocation"
    slot: int = 0
    cause: LifecycleFailure | None = None


@dataclass(eq=False)
class JobFailed(BatchHostError):
    cause: BaseException | None = None


def format_error(error: BaseException) -> str:
    if isinstance(error, BatchHostError):
        prefix = f"[{error.code}] " if error.code else ""
        return f"{prefix}{error}"
    return f"{type(error).__name__}: {error}"



def wrap_error(
    error: BaseException,
    *,
    code: str,
    message: str,
) -> BatchHostError:
    if isinstance(error, BatchHostError):
        return error
    detail = str(error) or type(error).__name__
    return BatchHostError(code=code, message=message, detail=detail)
