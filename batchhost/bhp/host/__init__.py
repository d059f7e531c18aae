from .handler_process import HandlerProcess, StopOutcome
from .managed_process import ManagedProcess, kill_process_tree
from .process_registry import ProcessRegistry, ProcessRecord, ProcessMetadata

__all__ = [
    "HandlerProcess",
    "ManagedProcess",
    "ProcessMetadata",
    "ProcessRecord",
    "ProcessRegistry",
    "StopOutcome",
    "kill_process_tree",
]
