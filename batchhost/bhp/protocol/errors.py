class ProtocolError(RuntimeError):
    """Raised on BHP protocol violations."""
