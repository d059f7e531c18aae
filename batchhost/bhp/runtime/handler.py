import importlib
import os
import sys
import traceback
from pathlib import Path
from runpy import run_path
from typing import Any, Callable, Optional, Sequence

from batchhost.bhp.protocol.errors import ProtocolError
from batchhost.bhp.protocol.messages import Message, MessageType
from batchhost.bhp.protocol.validator import Endpoint, ProtocolValidator
from batchhost.bhp.runtime.errors import HandlerLoadError, InvalidStateTransition
from batchhost.bhp.runtime.io import read_message, write_message
from batchhost.bhp.runtime.state import RuntimeState

HandlerFn = Callable[[list], Sequence[Any]]


def load_handler(
    function: str,
    *,
    module: Optional[str] = None,
    path: Optional[str] = None,
    file: Optional[str] = None,
) -> HandlerFn:
    """Resolve the handler function from a module inside ``path`` or a standalone file."""
    if module is not None:
        if path is not None:
            sys.path.insert(0, path)
        try:
            namespace = vars(importlib.import_module(module))
        except ImportError as exc:
            raise HandlerLoadError(f"cannot import module '{module}': {exc}") from exc
        origin = module
    elif file is not None:
        script = Path(file)
        if not script.is_file():
            raise HandlerLoadError(f"handler file not found: {file}")
        # Sibling modules of the handler file stay importable.
        sys.path.insert(0, str(script.parent))
        namespace = run_path(str(script), run_name="__bhp_handler__")
        origin = str(script)
    else:
        raise HandlerLoadError("either a module or a file is required")

    handler = namespace.get(function)
    if handler is None:
        raise HandlerLoadError(f"'{origin}' has no attribute '{function}'")
    if not callable(handler):
        raise HandlerLoadError(f"'{origin}.{function}' is not callable")
    return handler


class HandlerRuntime:
    """
    Serves batches to one handler function until the host asks it to stop.
    """

    def __init__(self, handler: HandlerFn, *, label: str) -> None:
        self.handler = handler
        self.label = label
        self.state: RuntimeState = RuntimeState.S0_BOOT
        self.validator = ProtocolValidator()

    def run(self) -> int:
        """
        Main blocking loop. Returns the process exit code.
        """
        self._emit(MessageType.READY, {"pid": os.getpid(), "handler": self.label})
        self.state = RuntimeState.S1_READY

        try:
            while self.state is not RuntimeState.S3_EXITING:
                raw = read_message()
                msg = Message.from_dict(raw)

                # Validate schema-level correctness
                self.validator.validate(msg, sender=Endpoint.HOST)

                self._handle_message(msg)

        except EOFError:
            # Host disappeared, nothing more to do
            self.state = RuntimeState.S3_EXITING

        except (ValueError, ProtocolError, InvalidStateTransition) as exc:
            self.state = RuntimeState.S_ERR_PROTOCOL
            self._emit_log("error", f"protocol violation: {exc}")

        except Exception as exc:
            self.state = RuntimeState.S_ERR_FATAL
            self._emit_log("error", f"runtime failure: {exc!r}")

        code = 1 if self.state.name.startswith("S_ERR") else 0
        self._emit(MessageType.EXIT, {"code": code})
        return code

    # -------------------------
    # Message handlers
    # -------------------------

    def _handle_message(self, msg: Message) -> None:
        if msg.type == MessageType.INVOKE:
            self._handle_invoke(msg)
        elif msg.type == MessageType.SHUTDOWN:
            self.state = RuntimeState.S3_EXITING
        else:
            raise ProtocolError(f"Unhandled message type: {msg.type}")

    def _handle_invoke(self, msg: Message) -> None:
        if self.state is not RuntimeState.S1_READY:
            raise InvalidStateTransition(f"invoke received in {self.state.name}")

        request_id = msg.payload["id"]
        items = list(msg.payload["items"])

        self.state = RuntimeState.S2_INVOKING
        try:
            outputs = list(self.handler(items))
        except Exception as exc:
            self._emit_error(request_id, f"{type(exc).__name__}: {exc}", traceback.format_exc())
            return
        finally:
            self.state = RuntimeState.S1_READY

        if len(outputs) != len(items):
            self._emit_error(
                request_id,
                f"handler returned {len(outputs)} items for a batch of {len(items)}",
            )
            return

        try:
            self._emit(MessageType.RESULT, {"id": request_id, "items": outputs})
        except (TypeError, ValueError) as exc:
            self._emit_error(request_id, f"handler output is not JSON serializable: {exc}")

    # -------------------------
    # Emit helpers
    # -------------------------

    def _emit(self, msg_type: MessageType, payload: dict) -> None:
        write_message(Message(type=msg_type, payload=payload).to_dict())

    def _emit_log(self, level: str, message: str) -> None:
        self._emit(MessageType.LOG, {"level": level, "message": message})

    def _emit_error(self, request_id: Optional[int], message: str, tb: Optional[str] = None) -> None:
        payload: dict = {"id": request_id, "message": message}
        if tb is not None:
            payload["traceback"] = tb
        self._emit(MessageType.ERROR, payload)
