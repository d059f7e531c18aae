from .state import HandlerState
from .messages import Message, MessageType, MessageDirection
from .validator import ProtocolValidator, Endpoint
from .errors import ProtocolError

__all__ = [
    "Endpoint",
    "HandlerState",
    "Message",
    "MessageType",
    "MessageDirection",
    "ProtocolValidator",
    "ProtocolError",
]
