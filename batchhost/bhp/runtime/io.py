import json
import os
import sys
from typing import Any, Dict, Optional, TextIO

_inbound: Optional[TextIO] = None
_outbound: Optional[TextIO] = None


def claim_stdout() -> TextIO:
    """
    Take fd 1 for protocol traffic and point the process's stdout at stderr,
    so stray prints from handler code cannot corrupt the message stream.
    """
    sys.stdout.flush()
    protocol_fd = os.dup(1)
    os.dup2(2, 1)
    return os.fdopen(protocol_fd, "w", encoding="utf-8", buffering=1)


def configure_streams(*, inbound: TextIO, outbound: TextIO) -> None:
    global _inbound, _outbound
    _inbound = inbound
    _outbound = outbound


def read_message() -> Dict[str, Any]:
    """Read a single BHP message from the host."""
    stream = _inbound if _inbound is not None else sys.stdin
    line = stream.readline()
    if not line:
        raise EOFError("Host closed stdin")

    try:
        payload = json.loads(line)
    except json.JSONDecodeError as exc:
        raise ValueError(f"Invalid JSON from host: {exc}") from exc

    if not isinstance(payload, dict):
        raise ValueError("Invalid payload received from host")
    return payload


def write_message(msg: Dict[str, Any]) -> None:
    """Write a single BHP message to the host."""
    stream = _outbound if _outbound is not None else sys.stdout
    line = json.dumps(msg)
    stream.write(line + "\n")
    stream.flush()
