from enum import Enum, auto


class RuntimeState(Enum):
    """
    Handler-side state machine.
    """

    S0_BOOT = auto()          # Process started, handler not loaded
    S1_READY = auto()         # ready emitted, waiting for work
    S2_INVOKING = auto()      # handler running on a batch
    S3_EXITING = auto()       # shutdown received or host gone

    S_ERR_PROTOCOL = auto()   # Host violated protocol
    S_ERR_FATAL = auto()      # Unhandled exception
