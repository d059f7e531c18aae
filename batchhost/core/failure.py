from __future__ import annotations

import logging
from typing import Optional

from batchhost.core.errors import WorkerFailure
from batchhost.core.logging import get_logger, log_event
from batchhost.core.state import WorkerInstance

logger = get_logger("batchhost.lifecycle")

_PHASE_MESSAGES = {
    "setup": "Worker setup failed",
    "invocation": "Handler invocation failed",
    "teardown": "Worker teardown failed",
    "external": "Worker stopped because the job failed",
}


class FailurePropagator:
    """Surfaces a worker's first recorded failure to the pipeline engine, once."""

    def failure_for(self, instance: WorkerInstance) -> Optional[WorkerFailure]:
        error = instance.last_error
        if error is None:
            return None
        return WorkerFailure(
            code=f"{error.phase}_failed",
            message=f"{_PHASE_MESSAGES[error.phase]} in slot {instance.slot}",
            detail=str(error),
            phase=error.phase,
            slot=instance.slot,
            cause=error,
        )

    def report(self, instance: WorkerInstance) -> None:
        """
        Raise WorkerFailure for the instance's first error, or log a clean
        completion. An instance is reported at most once.
        """
        if instance.reported:
            return
        instance.reported = True

        failure = self.failure_for(instance)
        if failure is None:
            log_event(
                logger,
                "worker_completed",
                slot=instance.slot,
                batches=instance.batches_processed,
                state=instance.state.name,
            )
            return

        log_event(
            logger,
            "worker_failed",
            level=logging.ERROR,
            slot=instance.slot,
            phase=failure.phase,
            code=failure.cause.code if failure.cause else None,
            detail=failure.detail,
        )
        raise failure from failure.cause
