from __future__ import annotations

from threading import Event, Lock

from batchhost.core.errors import ExternalFailure


class CancellationToken:
    """Job-level cancellation signal shared between the engine and one worker slot."""

    def __init__(self) -> None:
        self._event = Event()
        self._lock = Lock()
        self._cause: BaseException | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def cause(self) -> BaseException | None:
        return self._cause

    def cancel(self, cause: BaseException | None = None) -> None:
        with self._lock:
            if self._event.is_set():
                return
            self._cause = cause
            self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise external_failure(self._cause)


def external_failure(cause: BaseException | None) -> ExternalFailure:
    if isinstance(cause, ExternalFailure):
        return cause
    detail = None if cause is None else f"{type(cause).__name__}: {cause}"
    return ExternalFailure(
        code="job_cancelled",
        message="Job failed or was cancelled outside this worker",
        detail=detail,
    )
