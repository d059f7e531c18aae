from __future__ import annotations

from enum import Enum, auto


class HandlerState(Enum):
    CREATED = auto()          # before subprocess spawn
    PROCESS_STARTED = auto()  # pipes attached, ready not seen
    READY = auto()            # handler loaded, idle
    INVOKING = auto()         # one batch in flight
    STOPPING = auto()         # shutdown sent
    TERMINATED = auto()       # process ended
    ERR_STARTUP = auto()
    ERR_PROTOCOL = auto()
    ERR_TRANSPORT = auto()


TERMINAL_STATES = frozenset(
    {
        HandlerState.TERMINATED,
        HandlerState.ERR_STARTUP,
        HandlerState.ERR_PROTOCOL,
        HandlerState.ERR_TRANSPORT,
    }
)
