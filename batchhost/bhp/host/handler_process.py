from __future__ import annotations

import itertools
import json
import logging
import os
import queue
import sys
import time
from dataclasses import dataclass
from pathlib import Path
from threading import Lock, Thread
from typing import IO, Any, Iterable, Optional, Union

import batchhost
from batchhost.bhp.host.managed_process import ManagedProcess
from batchhost.bhp.host.process_registry import ProcessMetadata, ProcessRegistry
from batchhost.bhp.protocol.errors import ProtocolError
from batchhost.bhp.protocol.messages import Message, MessageDirection, MessageType
from batchhost.bhp.protocol.state import TERMINAL_STATES, HandlerState
from batchhost.bhp.protocol.validator import Endpoint, ProtocolValidator
from batchhost.bhp.transcript.events import TranscriptEvent
from batchhost.core.cancellation import CancellationToken
from batchhost.core.config import RuntimeConfig, get_runtime_config
from batchhost.core.errors import InvocationFailure, StartFailure
from batchhost.core.logging import get_logger, log_event
from batchhost.core.worker_config import WorkerConfig

logger = get_logger("batchhost.host")

POLL_INTERVAL = 0.05
RUNTIME_MODULE = "batchhost.bhp.runtime"

_LOG_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "error": logging.ERROR,
}


class _EndOfStream:
    """Queued by the stdout reader once the interpreter closes its end."""


_EOF = _EndOfStream()
_Inbound = Union[tuple[Message, str], ProtocolError, _EndOfStream]


@dataclass(frozen=True)
class StopOutcome:
    started: bool
    forced: bool = False
    exit_code: Optional[int] = None


class HandlerProcess:
    """
    Owns one handler interpreter: spawn, batched request/response, shutdown.
    """

    def __init__(
        self,
        config: WorkerConfig,
        *,
        runtime: Optional[RuntimeConfig] = None,
        validator: Optional[ProtocolValidator] = None,
        registry: Optional[ProcessRegistry] = None,
        slot: int = 0,
    ) -> None:
        self.config = config
        self.runtime = runtime or get_runtime_config()
        self.validator = validator or ProtocolValidator()
        self.registry = registry
        self.slot = slot
        self._output_logger = get_logger("batchhost.handler", slot=slot)

        self.state: HandlerState = HandlerState.CREATED
        self.process: Optional[ManagedProcess] = None
        self.transcript: list[TranscriptEvent] = []

        self._inbox: "queue.Queue[_Inbound]" = queue.Queue()
        self._readers: list[Thread] = []
        self._request_ids = itertools.count(1)
        self._send_lock = Lock()
        self._stop_lock = Lock()
        self._stop_outcome: Optional[StopOutcome] = None
        self._registry_handle: Optional[str] = None
        self._stderr_tail: list[str] = []

        self._record_system("Handler process created")

    @property
    def pid(self) -> Optional[int]:
        return None if self.process is None else self.process.pid

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def command(self) -> list[str]:
        python = (
            self.config.python_executable
            or self.runtime.python_executable
            or sys.executable
        )
        argv = [python, "-u", "-m", RUNTIME_MODULE, "--function", self.config.handler_function]
        if self.config.handler_module is not None:
            argv += ["--module", self.config.handler_module, "--path", str(self.config.working_dir.resolve())]
        elif self.config.handler_file is not None:
            argv += ["--file", str(self.config.handler_file.resolve())]
        else:
            raise StartFailure(
                code="invalid_config",
                message="Worker has neither handler_module nor handler_file",
            )
        return argv

    def start(self, token: Optional[CancellationToken] = None) -> None:
        if self.state is not HandlerState.CREATED:
            raise RuntimeError("Handler process can only be started from CREATED")

        handler_file = self.config.handler_file
        if handler_file is not None and not handler_file.is_file():
            self._transition(HandlerState.ERR_STARTUP)
            raise StartFailure(
                code="handler_not_found",
                message="Handler file does not exist",
                detail=str(handler_file),
            )

        self.process = ManagedProcess(
            argv=self.command(),
            cwd=self.config.working_dir,
            env=self._child_env(),
        )
        try:
            self.process.start()
        except OSError as exc:
            self._transition(HandlerState.ERR_STARTUP)
            raise StartFailure(
                code="spawn_failed",
                message="Could not spawn the handler interpreter",
                detail=str(exc),
            ) from exc

        self._start_readers()
        self._transition(HandlerState.PROCESS_STARTED)
        self._register()
        log_event(
            logger,
            "handler_spawned",
            slot=self.slot,
            pid=self.pid,
            handler=self.config.handler_label,
        )

        deadline = time.monotonic() + self.runtime.startup_timeout
        while True:
            try:
                item = self._next_inbound(deadline, token)
            except TimeoutError:
                self._transition(HandlerState.ERR_STARTUP)
                raise StartFailure(
                    code="startup_timeout",
                    message="Handler did not become ready in time",
                    detail=f"{self.runtime.startup_timeout}s",
                )

            if isinstance(item, _EndOfStream):
                exit_code = self._reap()
                self._transition(HandlerState.ERR_STARTUP)
                raise StartFailure(
                    code="handler_exited",
                    message="Handler process exited before it was ready",
                    detail=self._stderr_hint(exit_code),
                    exit_code=exit_code,
                )

            if isinstance(item, ProtocolError):
                self._transition(HandlerState.ERR_PROTOCOL)
                raise StartFailure(
                    code="protocol_error",
                    message="Handler violated the protocol during startup",
                    detail=str(item),
                )

            msg, _ = item
            match msg.type:
                case MessageType.READY:
                    self._transition(HandlerState.READY)
                    log_event(logger, "handler_ready", slot=self.slot, pid=self.pid)
                    return

                case MessageType.LOG:
                    self._forward_log(msg)

                case MessageType.ERROR:
                    exit_code = self._reap(timeout=self.runtime.shutdown_grace)
                    self._transition(HandlerState.ERR_STARTUP)
                    raise StartFailure(
                        code="handler_load_failed",
                        message="Handler could not be loaded",
                        detail=str(msg.payload.get("message")),
                        exit_code=exit_code,
                    )

                case _:
                    self._transition(HandlerState.ERR_PROTOCOL)
                    raise StartFailure(
                        code="protocol_error",
                        message="Handler violated the protocol during startup",
                        detail=f"unexpected '{msg.type.value}' before ready",
                    )

    def invoke_batch(
        self,
        items: Iterable[Any],
        token: Optional[CancellationToken] = None,
    ) -> list[Any]:
        """
        Send one batch and wait for its result. The result has the same
        length and order as ``items``.
        """
        batch = list(items)
        if self.state is not HandlerState.READY:
            raise InvocationFailure(
                code="handler_not_ready",
                message="Handler process is not ready",
                detail=self.state.name,
            )
        if not batch:
            return []

        request_id = next(self._request_ids)
        self._transition(HandlerState.INVOKING)
        try:
            self._send(Message(type=MessageType.INVOKE, payload={"id": request_id, "items": batch}))
        except (TypeError, ValueError) as exc:
            self._transition(HandlerState.READY)
            raise InvocationFailure(
                code="unserializable_batch",
                message="Batch items could not be encoded",
                detail=str(exc),
            ) from exc
        except OSError as exc:
            self._transition(HandlerState.ERR_TRANSPORT)
            raise InvocationFailure(
                code="transport_error",
                message="Could not send the batch to the handler",
                detail=str(exc),
            ) from exc

        deadline = None
        if self.runtime.invocation_timeout is not None:
            deadline = time.monotonic() + self.runtime.invocation_timeout

        while True:
            try:
                item = self._next_inbound(deadline, token)
            except TimeoutError:
                raise InvocationFailure(
                    code="invocation_timeout",
                    message="Handler did not answer the batch in time",
                    detail=f"{self.runtime.invocation_timeout}s",
                )

            if isinstance(item, _EndOfStream):
                exit_code = self._reap()
                self._transition(HandlerState.ERR_TRANSPORT)
                raise InvocationFailure(
                    code="handler_exited",
                    message="Handler process exited during a batch",
                    detail=self._stderr_hint(exit_code),
                    exit_code=exit_code,
                )

            if isinstance(item, ProtocolError):
                self._transition(HandlerState.ERR_PROTOCOL)
                raise InvocationFailure(
                    code="protocol_error",
                    message="Handler violated the protocol",
                    detail=str(item),
                )

            msg, _ = item
            match msg.type:
                case MessageType.LOG:
                    self._forward_log(msg)

                case MessageType.RESULT:
                    if msg.payload.get("id") != request_id:
                        self._transition(HandlerState.ERR_PROTOCOL)
                        raise InvocationFailure(
                            code="protocol_error",
                            message="Handler answered the wrong request",
                            detail=f"expected id {request_id}, got {msg.payload.get('id')}",
                        )
                    outputs = list(msg.payload["items"])
                    self._transition(HandlerState.READY)
                    if len(outputs) != len(batch):
                        raise InvocationFailure(
                            code="batch_contract",
                            message="Handler returned a batch of the wrong size",
                            detail=f"{len(batch)} items in, {len(outputs)} out",
                        )
                    return outputs

                case MessageType.ERROR:
                    self._transition(HandlerState.READY)
                    payload = msg.payload
                    raise InvocationFailure(
                        code="handler_error",
                        message=f"Handler raised: {payload.get('message')}",
                        detail=payload.get("traceback"),
                    )

                case _:
                    self._transition(HandlerState.ERR_PROTOCOL)
                    raise InvocationFailure(
                        code="protocol_error",
                        message="Handler violated the protocol",
                        detail=f"unexpected '{msg.type.value}' during a batch",
                    )

    def stop(self, grace: Optional[float] = None) -> StopOutcome:
        """
        Ask the handler to exit, escalating to terminate/kill after ``grace``
        seconds. Idempotent, and never raises.
        """
        with self._stop_lock:
            if self._stop_outcome is not None:
                return self._stop_outcome

            if self.process is None or self.process.process is None:
                self._stop_outcome = StopOutcome(started=False)
                self._finish_state()
                return self._stop_outcome

            grace = self.runtime.shutdown_grace if grace is None else grace
            forced = False
            try:
                if self.process.is_alive():
                    self._transition(HandlerState.STOPPING)
                    self._request_shutdown()
                    if not self.process.wait_for_exit(timeout=grace):
                        forced = True
                        self._record_system(f"No exit after {grace}s grace, terminating")
                        self.process.terminate(timeout=1.0)
            except Exception as exc:
                forced = True
                logger.exception("error while stopping handler process")
                self._record_system(f"Stop failed: {exc!r}")
                self.process.kill()
            finally:
                self._join_readers()
                self.process.close_pipes()

            exit_code = self.process.poll_exit()
            self._stop_outcome = StopOutcome(started=True, forced=forced, exit_code=exit_code)
            self._finish_state()
            if self.registry is not None and self._registry_handle is not None:
                self.registry.record_exit(
                    self._registry_handle,
                    exit_code,
                    termination_mode=self.process.termination_mode or "shutdown",
                )
            log_event(
                logger,
                "handler_stopped",
                slot=self.slot,
                pid=self.pid,
                exit_code=exit_code,
                forced=forced,
            )
            return self._stop_outcome

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _child_env(self) -> dict[str, str]:
        env = dict(os.environ)
        package_root = str(Path(batchhost.__file__).resolve().parent.parent)
        existing = env.get("PYTHONPATH")
        env["PYTHONPATH"] = package_root if not existing else os.pathsep.join([package_root, existing])
        env["PYTHONUNBUFFERED"] = "1"
        return env

    def _start_readers(self) -> None:
        process = self._require_process()
        stdout = process.stdout
        stderr = process.stderr
        if stdout is None or stderr is None:
            raise OSError("Handler output pipes unavailable")
        self._readers = [
            Thread(target=self._read_messages, args=(stdout,), name=f"bhp-stdout-{self.slot}", daemon=True),
            Thread(target=self._read_stderr, args=(stderr,), name=f"bhp-stderr-{self.slot}", daemon=True),
        ]
        for reader in self._readers:
            reader.start()

    def _read_messages(self, stream: IO[str]) -> None:
        try:
            for line in stream:
                raw = line.strip()
                if not raw:
                    continue
                try:
                    payload = json.loads(raw)
                    if not isinstance(payload, dict):
                        raise ValueError("payload is not an object")
                    msg = Message.from_dict(payload)
                    self.validator.validate(msg, sender=Endpoint.HANDLER)
                except (ValueError, ProtocolError) as exc:
                    self._inbox.put(ProtocolError(f"Invalid BHP message {raw[:200]!r}: {exc}"))
                    continue
                self._inbox.put((msg, raw))
        except (OSError, ValueError):
            # Pipe closed underneath us during shutdown.
            pass
        finally:
            self._inbox.put(_EOF)

    def _read_stderr(self, stream: IO[str]) -> None:
        try:
            for line in stream:
                text = line.rstrip("\n")
                self._stderr_tail = (self._stderr_tail + [text])[-20:]
                self._output_logger.info("%s", text)
        except (OSError, ValueError):
            pass

    def _join_readers(self) -> None:
        for reader in self._readers:
            reader.join(timeout=1.0)

    def _next_inbound(
        self,
        deadline: Optional[float],
        token: Optional[CancellationToken],
    ) -> _Inbound:
        while True:
            if token is not None:
                token.raise_if_cancelled()

            timeout = POLL_INTERVAL
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise TimeoutError
                timeout = min(timeout, remaining)

            try:
                item = self._inbox.get(timeout=timeout)
            except queue.Empty:
                continue

            if isinstance(item, tuple):
                self._record_incoming(item[1], item[0])
            return item

    def _send(self, msg: Message) -> None:
        stdin = self._require_process().stdin
        if stdin is None:
            raise OSError("Handler stdin unavailable")

        with self._send_lock:
            self.validator.validate(msg, sender=Endpoint.HOST)
            line = json.dumps(msg.to_dict())
            stdin.write(line + "\n")
            stdin.flush()
        self._record_outgoing(msg)

    def _request_shutdown(self) -> None:
        process = self._require_process()
        try:
            self._send(Message(type=MessageType.SHUTDOWN, payload={}))
        except (OSError, ValueError) as exc:
            self._record_system(f"Shutdown request not delivered: {exc}")
        stdin = process.stdin
        if stdin is not None:
            try:
                stdin.close()
            except OSError:
                pass

    def _reap(self, timeout: float = 1.0) -> Optional[int]:
        process = self._require_process()
        process.wait_for_exit(timeout=timeout)
        return process.poll_exit()

    def _require_process(self) -> ManagedProcess:
        if self.process is None:
            raise RuntimeError("Handler process not started")
        return self.process

    def _stderr_hint(self, exit_code: Optional[int]) -> str:
        self._join_readers()
        tail = [line for line in self._stderr_tail if line.strip()]
        hint = f"exit code {exit_code}"
        if tail:
            hint = f"{hint}: {tail[-1]}"
        return hint

    def _forward_log(self, msg: Message) -> None:
        level = _LOG_LEVELS.get(str(msg.payload.get("level")), logging.INFO)
        self._output_logger.log(level, "%s", msg.payload.get("message"))

    def _register(self) -> None:
        if self.registry is None:
            return
        record = self.registry.register(
            ProcessMetadata(
                slot=self.slot,
                handler=self.config.handler_label,
                working_dir=self.config.working_dir,
            ),
            pid=self.pid,
            state=self.state,
        )
        self._registry_handle = record.handle

    def _finish_state(self) -> None:
        if self.state not in TERMINAL_STATES:
            self._transition(HandlerState.TERMINATED)

    # ------------------------------------------------------------------
    # State + transcript
    # ------------------------------------------------------------------

    def _transition(self, new_state: HandlerState) -> None:
        self._record_system(f"State {self.state.name} -> {new_state.name}")
        self.state = new_state
        if self.registry is not None and self._registry_handle is not None:
            self.registry.update_state(self._registry_handle, new_state)

    def _record_incoming(self, raw: Optional[str], msg: Optional[Message]) -> None:
        self.transcript.append(
            TranscriptEvent(
                timestamp=time.time(),
                direction=MessageDirection.RECV,
                raw=raw,
                message=msg,
            )
        )

    def _record_outgoing(self, msg: Message) -> None:
        self.transcript.append(
            TranscriptEvent(
                timestamp=time.time(),
                direction=MessageDirection.SEND,
                message=msg,
            )
        )

    def _record_system(self, note: str) -> None:
        self.transcript.append(
            TranscriptEvent(
                timestamp=time.time(),
                direction=MessageDirection.INTERNAL,
                raw=note,
            )
        )
