class RuntimeFailure(Exception):
    """Base class for all handler runtime errors."""


class HandlerLoadError(RuntimeFailure):
    """The handler module, file or function could not be resolved."""


class InvalidStateTransition(RuntimeFailure):
    """Message not allowed in current runtime state."""
