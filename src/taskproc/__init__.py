"""taskproc - launch OS processes and learn of their termination asynchronously.

Environment variables:
    TASKPROC_WAIT_SLICE: cooperative wait slice in seconds (default 0.05)
    TASKPROC_LOG_DEBUG: log at DEBUG level to a temp file (default false)
    TASKPROC_SIGNAL_MODE: process | group (default process)

Usage:
    python -m taskproc -- /bin/sh -c "exit 3"
"""

__version__ = "0.1.0"

from .errors import ErrorKind, LaunchError, ProcessStateError, TaskProcError
from .launcher import launch, run
from .notifications import TerminationBroadcast, termination_broadcast
from .process import ProcessDescriptor, ProcessHandle, ProcessState, TerminationReason
from .reactor import ExitWatcher, TerminationReactor, get_reactor
from .stdio import Pipe, StdioBinding, StdioKind

__all__ = [
    "__version__",
    "ErrorKind",
    "ExitWatcher",
    "LaunchError",
    "Pipe",
    "ProcessDescriptor",
    "ProcessHandle",
    "ProcessState",
    "ProcessStateError",
    "StdioBinding",
    "StdioKind",
    "TaskProcError",
    "TerminationBroadcast",
    "TerminationReactor",
    "TerminationReason",
    "get_reactor",
    "launch",
    "run",
    "termination_broadcast",
]
