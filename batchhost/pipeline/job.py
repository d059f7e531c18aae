from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from enum import Enum
from threading import Event, Lock, Thread
from typing import Any, Callable, Optional

from batchhost.bhp.host.managed_process import kill_process_tree
from batchhost.bhp.host.process_registry import ProcessRegistry
from batchhost.core.config import RuntimeConfig, get_runtime_config
from batchhost.core.errors import BatchHostError, JobFailed, format_error
from batchhost.core.lifecycle import WorkerLifecycle
from batchhost.core.logging import get_logger, log_event
from batchhost.core.worker_config import WorkerConfig
from batchhost.pipeline.pipeline import HandlerStage, MapStage, Pipeline

logger = get_logger("batchhost.job")

LifecycleFactory = Callable[..., WorkerLifecycle]


class JobStatus(Enum):
    NOT_STARTED = "not_started"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class JobCancelled(BatchHostError):
    """Raised into a job by Job.cancel()."""


class Job:
    """
    Runs a Pipeline on a background thread.

    Every handler slot is activated before the first item flows and
    deactivated after the last one, whether the job completes or fails.
    """

    def __init__(
        self,
        pipeline: Pipeline,
        *,
        runtime: Optional[RuntimeConfig] = None,
        registry: Optional[ProcessRegistry] = None,
        lifecycle_factory: Optional[LifecycleFactory] = None,
    ) -> None:
        self.pipeline = pipeline
        self.runtime = runtime or get_runtime_config()
        self.registry = registry or ProcessRegistry()
        self.status = JobStatus.NOT_STARTED
        self.result: Optional[list[Any]] = None

        self._lifecycle_factory = lifecycle_factory or WorkerLifecycle
        self._workers: dict[int, list[WorkerLifecycle]] = {}
        self._failure: Optional[BaseException] = None
        self._failure_lock = Lock()
        self._done = Event()
        self._thread: Optional[Thread] = None

    @property
    def failure(self) -> Optional[BaseException]:
        return self._failure

    @property
    def workers(self) -> list[WorkerLifecycle]:
        return [worker for slots in self._workers.values() for worker in slots]

    def run(self) -> "Job":
        if self.status is not JobStatus.NOT_STARTED:
            raise RuntimeError("Job has already been started")
        self.status = JobStatus.RUNNING
        self._thread = Thread(target=self._execute, name="batchhost-job", daemon=True)
        self._thread.start()
        return self

    def join(self, timeout: Optional[float] = None) -> list[Any]:
        """
        Wait for the job to finish and return the outputs of the last stage.
        Raises JobFailed carrying the first failure.
        """
        if self.status is JobStatus.NOT_STARTED:
            self.run()
        if not self._done.wait(timeout):
            raise TimeoutError(f"Job did not finish within {timeout}s")

        if self._failure is not None:
            raise JobFailed(
                code="job_failed",
                message="Job failed",
                detail=format_error(self._failure),
                cause=self._failure,
            ) from self._failure
        return self.result if self.result is not None else []

    def cancel(self, cause: Optional[BaseException] = None) -> None:
        """Fail the job with ``cause``. Has no effect once the job has finished."""
        if self._done.is_set():
            return
        self._fail(cause or JobCancelled(code="job_cancelled", message="Job was cancelled"))

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def _execute(self) -> None:
        log_event(logger, "job_started", stages=len(self.pipeline.stages))
        items: Optional[list[Any]] = None
        try:
            self._create_workers()
            if self._failure is None:
                self._activate_all()
            if self._failure is None:
                items = list(self.pipeline.source)
                for index, stage in enumerate(self.pipeline.stages):
                    items = self._run_stage(index, stage, items)
                    if items is None:
                        break
        except Exception as exc:
            self._fail(exc)
        finally:
            self._deactivate_all()
            self._reap_leftovers()

            if self._failure is None:
                self.result = items
                self.status = JobStatus.COMPLETED
                log_event(logger, "job_completed", outputs=len(items or []))
            else:
                self.status = JobStatus.FAILED
                log_event(logger, "job_failed", level=logging.ERROR, error=format_error(self._failure))
            self._done.set()

    def _create_workers(self) -> None:
        for index, stage in enumerate(self.pipeline.stages):
            if not isinstance(stage, HandlerStage):
                continue
            self._workers[index] = [
                self._lifecycle_factory(
                    stage.config,
                    slot=slot,
                    runtime=self.runtime,
                    registry=self.registry,
                )
                for slot in range(stage.parallelism)
            ]

    def _activate_all(self) -> None:
        workers = self.workers
        if not workers:
            return
        with ThreadPoolExecutor(max_workers=len(workers), thread_name_prefix="batchhost-activate") as executor:
            futures = [executor.submit(worker.activate) for worker in workers]
            for future in as_completed(futures):
                exc = future.exception()
                if exc is not None:
                    self._fail(exc)

    def _deactivate_all(self) -> None:
        workers = self.workers
        if not workers:
            return
        cause = self._failure
        with ThreadPoolExecutor(max_workers=len(workers), thread_name_prefix="batchhost-deactivate") as executor:
            futures = [executor.submit(worker.deactivate, cause) for worker in workers]
            for future in as_completed(futures):
                exc = future.exception()
                if exc is not None:
                    # A teardown failure alone still fails the job.
                    self._fail(exc)

    def _run_stage(self, index: int, stage: MapStage | HandlerStage, items: list[Any]) -> Optional[list[Any]]:
        log_event(logger, "stage_started", stage=stage.name, items=len(items))
        if isinstance(stage, MapStage):
            outputs = [stage.fn(item) for item in items]
        else:
            outputs = self._run_handler_stage(self._workers[index], stage.config, items)
        if outputs is not None:
            log_event(logger, "stage_completed", stage=stage.name, outputs=len(outputs))
        return outputs

    def _run_handler_stage(
        self,
        workers: list[WorkerLifecycle],
        config: WorkerConfig,
        items: list[Any],
    ) -> Optional[list[Any]]:
        size = config.max_batch_size
        batches = [items[start:start + size] for start in range(0, len(items), size)]
        results: list[Optional[list[Any]]] = [None] * len(batches)

        def drain(worker: WorkerLifecycle, indices: range) -> None:
            for batch_index in indices:
                if self._failure is not None:
                    return
                results[batch_index] = worker.process_batch(batches[batch_index])

        # Batch i goes to slot i % parallelism; each slot has one batch in flight.
        with ThreadPoolExecutor(max_workers=len(workers), thread_name_prefix="batchhost-slot") as executor:
            futures = [
                executor.submit(drain, worker, range(slot, len(batches), len(workers)))
                for slot, worker in enumerate(workers)
            ]
            for future in as_completed(futures):
                exc = future.exception()
                if exc is not None:
                    self._fail(exc)

        if self._failure is not None:
            return None
        return [output for batch in results if batch is not None for output in batch]

    def _fail(self, exc: BaseException) -> None:
        with self._failure_lock:
            if self._failure is not None:
                return
            self._failure = exc
        log_event(logger, "job_failing", level=logging.WARNING, error=format_error(exc))
        for worker in self.workers:
            worker.cancel(exc)

    def _reap_leftovers(self) -> None:
        for record in self.registry.list_active():
            log_event(logger, "process_leaked", level=logging.WARNING, handle=record.handle, pid=record.pid)
            if record.pid is not None:
                kill_process_tree(record.pid)
            self.registry.record_exit(record.handle, None, termination_mode="reaped")
