from __future__ import annotations

import logging
import sys
from pathlib import Path
from threading import Lock
from types import TracebackType
from typing import Any, Callable, Iterable, Optional

from batchhost.bhp.host.handler_process import HandlerProcess
from batchhost.bhp.host.process_registry import ProcessRegistry
from batchhost.core.cancellation import CancellationToken, external_failure
from batchhost.core.config import RuntimeConfig, get_runtime_config
from batchhost.core.errors import (
    InvocationFailure,
    LifecycleFailure,
    LifecycleStateError,
    SetupFailure,
    TeardownFailure,
    WorkerFailure,
)
from batchhost.core.failure import FailurePropagator
from batchhost.core.logging import get_logger, log_event
from batchhost.core.script_runner import ScriptOutcome, ScriptRunner
from batchhost.core.state import WorkerInstance, WorkerState
from batchhost.core.worker_config import WorkerConfig

logger = get_logger("batchhost.lifecycle")

ProcessFactory = Callable[..., HandlerProcess]


class WorkerLifecycle:
    """
    Lifecycle of one worker slot.

    ``activate`` runs the setup script and starts the handler process,
    ``process_batch`` sends batches to it and ``deactivate`` tears it all
    down. Teardown (stop the process, then run the cleanup script) happens
    exactly once for every slot that was activated, whichever phase failed.
    The first failure is kept and raised as a WorkerFailure.
    """

    def __init__(
        self,
        config: WorkerConfig,
        *,
        slot: int = 0,
        runtime: Optional[RuntimeConfig] = None,
        token: Optional[CancellationToken] = None,
        registry: Optional[ProcessRegistry] = None,
        script_runner: Optional[ScriptRunner] = None,
        process_factory: Optional[ProcessFactory] = None,
        propagator: Optional[FailurePropagator] = None,
    ) -> None:
        self.config = config
        self.runtime = runtime or get_runtime_config()
        self.instance = WorkerInstance(slot=slot)
        self.token = token or CancellationToken()
        self.registry = registry
        self.propagator = propagator or FailurePropagator()

        self._scripts: Optional[ScriptRunner] = None
        if config.lifecycle_scripts_enabled and config.base_dir is not None:
            self._scripts = script_runner or ScriptRunner(config.base_dir, self.runtime)
        self._process_factory = process_factory or HandlerProcess
        self._lock = Lock()

    @property
    def slot(self) -> int:
        return self.instance.slot

    @property
    def state(self) -> WorkerState:
        return self.instance.state

    @property
    def last_error(self) -> Optional[LifecycleFailure]:
        return self.instance.last_error

    # ------------------------------------------------------------------
    # Engine entry points
    # ------------------------------------------------------------------

    def activate(self) -> None:
        with self._lock:
            if self.instance.state is not WorkerState.CREATED:
                raise LifecycleStateError(
                    code="already_activated",
                    message="Worker can only be activated once",
                    detail=self.instance.state.name,
                )
            self.instance.activated = True
            self._transition(WorkerState.SETUP_RUNNING)

            try:
                self._run_setup()
                self._start_process()
            except Exception as exc:
                self.instance.record_error(
                    _as_failure(exc, SetupFailure, code="setup_error", message="Unexpected error during setup")
                )
                self._transition(WorkerState.SETUP_FAILED)
                self._teardown()
                self.propagator.report(self.instance)
                return

            self._transition(WorkerState.READY)
            self._transition(WorkerState.RUNNING)

    def process_batch(self, items: Iterable[Any]) -> list[Any]:
        with self._lock:
            if self.instance.state is not WorkerState.RUNNING:
                raise LifecycleStateError(
                    code="not_running",
                    message="Worker is not accepting batches",
                    detail=self.instance.state.name,
                )
            process = self.instance.process_handle
            if process is None:
                raise LifecycleStateError(
                    code="no_process",
                    message="Worker is running without a handler process",
                    detail=self.instance.state.name,
                )

            try:
                outputs = process.invoke_batch(items, self.token)
            except Exception as exc:
                failure = _as_failure(
                    exc,
                    InvocationFailure,
                    code="invocation_error",
                    message="Unexpected error during batch invocation",
                )
            else:
                self.instance.batches_processed += 1
                return outputs

            self.instance.record_error(failure)
            self._teardown()
            self.propagator.report(self.instance)
            raise failure

    def cancel(self, cause: Optional[BaseException] = None) -> None:
        """Signal job-level failure/cancellation. Safe to call from any thread."""
        self.token.cancel(cause)

    def deactivate(self, cause: Optional[BaseException] = None) -> None:
        """
        End the worker's life. ``cause`` is the job-level failure that made the
        engine stop this slot, if any.
        """
        if cause is not None:
            self.token.cancel(cause)

        with self._lock:
            if not self.instance.activated:
                if self.instance.state is WorkerState.CREATED:
                    self._transition(WorkerState.TERMINATED)
                return

            if cause is not None and not self.instance.is_terminal:
                self.instance.record_error(external_failure(cause))
            self._teardown()
            self.propagator.report(self.instance)

    def __enter__(self) -> "WorkerLifecycle":
        self.activate()
        return self

    def __exit__(
        self,
        exc_type: Optional[type[BaseException]],
        exc: Optional[BaseException],
        tb: Optional[TracebackType],
    ) -> bool:
        try:
            self.deactivate(exc)
        except WorkerFailure:
            if exc is None:
                raise
            # The body's own exception keeps propagating.
            logger.debug("worker failure suppressed in favour of %r", exc)
        return False

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    def _run_setup(self) -> None:
        if self._scripts is None:
            return

        if self.runtime.install_requirements:
            outcome = self._scripts.install_requirements(self._python())
            if not outcome.ok:
                raise _script_failure(SetupFailure, "requirements_failed", "Installing requirements failed", outcome)

        outcome = self._scripts.run(self._script_path(self.config.init_script))
        if not outcome.ok:
            raise _script_failure(SetupFailure, "init_script_failed", "Setup script failed", outcome)

    def _start_process(self) -> None:
        process = self._process_factory(
            self.config,
            runtime=self.runtime,
            registry=self.registry,
            slot=self.instance.slot,
        )
        # Owned before start() so that teardown stops a half-started process.
        self.instance.process_handle = process
        process.start(self.token)

    def _teardown(self) -> None:
        if self.instance.is_terminal or self.instance.state is WorkerState.TEARDOWN_RUNNING:
            return
        self._transition(WorkerState.TEARDOWN_RUNNING)

        failed = False
        process = self.instance.process_handle
        if process is not None:
            stopped = process.stop(self.runtime.shutdown_grace)
            self.instance.process_handle = None
            if stopped.forced:
                failed = True
                self.instance.record_error(
                    TeardownFailure(
                        code="process_stop_forced",
                        message="Handler process did not stop within the grace period",
                        detail=f"exit code {stopped.exit_code}",
                        exit_code=stopped.exit_code,
                    )
                )

        if self._scripts is not None:
            outcome = self._scripts.run(self._script_path(self.config.cleanup_script))
            if not outcome.ok:
                failed = True
                self.instance.record_error(
                    _script_failure(TeardownFailure, "cleanup_script_failed", "Cleanup script failed", outcome)
                )

        self._transition(WorkerState.TEARDOWN_FAILED if failed else WorkerState.TERMINATED)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _script_path(self, script: Optional[Path]) -> Path:
        if script is None:
            raise LifecycleStateError(
                code="no_base_dir",
                message="Lifecycle scripts need a base directory",
                detail=self.config.handler_label,
            )
        return script

    def _python(self) -> str:
        return self.config.python_executable or self.runtime.python_executable or sys.executable

    def _transition(self, new_state: WorkerState) -> None:
        old_state = self.instance.state
        self.instance.note(f"State {old_state.name} -> {new_state.name}")
        self.instance.state = new_state
        level = logging.WARNING if new_state in (WorkerState.SETUP_FAILED, WorkerState.TEARDOWN_FAILED) else logging.INFO
        log_event(
            logger,
            "worker_state",
            level=level,
            slot=self.instance.slot,
            previous=old_state.name,
            state=new_state.name,
        )


def _script_failure(
    kind: type[LifecycleFailure],
    code: str,
    message: str,
    outcome: ScriptOutcome,
) -> LifecycleFailure:
    return kind(
        code=code,
        message=f"{message}: {outcome.describe()}",
        detail=outcome.stderr_tail(),
        exit_code=outcome.exit_code,
    )


def _as_failure(
    exc: BaseException,
    kind: type[LifecycleFailure],
    *,
    code: str,
    message: str,
) -> LifecycleFailure:
    if isinstance(exc, LifecycleFailure):
        return exc
    logger.exception(message)
    return kind(code=code, message=message, detail=f"{type(exc).__name__}: {exc}")
