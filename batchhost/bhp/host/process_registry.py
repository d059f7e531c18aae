from __future__ import annotations

import itertools
import time
from dataclasses import dataclass, replace
from pathlib import Path
from threading import Lock

from batchhost.bhp.protocol.state import TERMINAL_STATES, HandlerState


@dataclass(frozen=True)
class ProcessMetadata:
    slot: int
    handler: str
    working_dir: Path


@dataclass
class ProcessRecord:
    handle: str
    pid: int | None
    metadata: ProcessMetadata
    state: HandlerState
    start_time: float
    exit_code: int | None = None
    end_time: float | None = None
    termination_mode: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES


class ProcessRegistry:
    """Tracks handler processes spawned on behalf of one job."""

    def __init__(self) -> None:
        self._records: dict[str, ProcessRecord] = {}
        self._lock = Lock()
        self._counter = itertools.count(1)

    def register(self, metadata: ProcessMetadata, *, pid: int | None, state: HandlerState) -> ProcessRecord:
        handle = f"handler-{next(self._counter)}"
        record = ProcessRecord(
            handle=handle,
            pid=pid,
            metadata=metadata,
            state=state,
            start_time=time.time(),
        )
        with self._lock:
            self._records[handle] = record
        return replace(record)

    def update_state(self, handle: str, state: HandlerState) -> None:
        with self._lock:
            record = self._records.get(handle)
            if record is None:
                return
            record.state = state
            if state in TERMINAL_STATES:
                record.end_time = record.end_time or time.time()

    def record_exit(self, handle: str, exit_code: int | None, *, termination_mode: str | None) -> None:
        with self._lock:
            record = self._records.get(handle)
            if record is None:
                return
            record.exit_code = exit_code
            if termination_mode:
                record.termination_mode = termination_mode
            record.end_time = record.end_time or time.time()
            if record.state not in TERMINAL_STATES:
                record.state = HandlerState.TERMINATED

    def list_all(self) -> list[ProcessRecord]:
        with self._lock:
            return [replace(record) for record in self._records.values()]

    def list_active(self) -> list[ProcessRecord]:
        with self._lock:
            return [replace(record) for record in self._records.values() if not record.is_terminal]


__all__ = [
    "ProcessMetadata",
    "ProcessRecord",
    "ProcessRegistry",
]
