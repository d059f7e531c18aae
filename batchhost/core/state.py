from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import TYPE_CHECKING, Optional

from batchhost.bhp.protocol.messages import MessageDirection
from batchhost.bhp.transcript.events import TranscriptEvent
from batchhost.core.errors import LifecycleFailure

if TYPE_CHECKING:
    from batchhost.bhp.host.handler_process import HandlerProcess


class WorkerState(Enum):
    CREATED = auto()           # slot assigned, nothing run yet
    SETUP_RUNNING = auto()     # init script / requirements running
    SETUP_FAILED = auto()      # setup or process start failed, teardown pending
    READY = auto()             # handler process is up
    RUNNING = auto()           # accepting batches
    TEARDOWN_RUNNING = auto()  # stopping process, cleanup script
    TEARDOWN_FAILED = auto()   # teardown itself failed
    TERMINATED = auto()        # teardown done


TERMINAL_WORKER_STATES = frozenset({WorkerState.TEARDOWN_FAILED, WorkerState.TERMINATED})


@dataclass
class WorkerInstance:
    """Mutable per-slot record owned by exactly one WorkerLifecycle."""

    slot: int
    state: WorkerState = WorkerState.CREATED
    process_handle: Optional["HandlerProcess"] = None
    last_error: Optional[LifecycleFailure] = None
    activated: bool = False
    reported: bool = False
    batches_processed: int = 0
    transcript: list[TranscriptEvent] = field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_WORKER_STATES

    def record_error(self, error: LifecycleFailure) -> bool:
        """Keep the first failure only. Returns True if ``error`` was recorded."""
        if self.last_error is not None:
            self.note(f"Additional failure not reported: {error}")
            return False
        self.last_error = error
        self.note(f"Failure recorded ({error.phase}): {error}")
        return True

    def note(self, text: str) -> None:
        self.transcript.append(
            TranscriptEvent(
                timestamp=time.time(),
                direction=MessageDirection.INTERNAL,
                raw=text,
            )
        )
