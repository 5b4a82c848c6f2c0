"""Process descriptors and live process handles.

``ProcessDescriptor`` describes how to launch a process and can be changed
freely until it is launched. ``ProcessHandle`` is the launched process:

    NOT_STARTED -> RUNNING -> TERMINATED

``RUNNING`` is entered by the launcher, ``TERMINATED`` only by the
termination reactor. Suspend/resume, signals and waiting never change the
state themselves.
"""

from __future__ import annotations

import logging
import os
import signal
import subprocess
import threading
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, ClassVar

import anyio

from .config import SignalMode, get_config
from .errors import ProcessStateError
from .notifications import termination_broadcast
from .stdio import StdioBinding

if TYPE_CHECKING:
    from .reactor import ReactorRegistration

__all__ = [
    "ProcessDescriptor",
    "ProcessHandle",
    "ProcessState",
    "TerminationReason",
]

logger = logging.getLogger(__name__)

_STDIO_FIELDS = frozenset({"stdin", "stdout", "stderr"})


class ProcessState(Enum):
    """Lifecycle state of a process handle."""

    NOT_STARTED = "not_started"
    RUNNING = "running"
    TERMINATED = "terminated"


class TerminationReason(Enum):
    """Why a process terminated.

    - EXIT: normal exit, status is the exit code
    - UNCAUGHT_SIGNAL: killed by a signal, status is the signal number
    - UNKNOWN: the exit status could not be collected, status is -1
    """

    EXIT = "exit"
    UNCAUGHT_SIGNAL = "uncaught_signal"
    UNKNOWN = "unknown"


@dataclass
class ProcessDescriptor:
    """How to launch a process.

    Every field is writable until the descriptor is launched; after that any
    assignment raises ProcessStateError, and ``arguments`` and
    ``environment`` are frozen into a tuple and a read-only mapping.

    Attributes:
        executable: path of the executable (argv[0])
        arguments: arguments after argv[0]
        environment: child environment (None = inherit os.environ)
        working_directory: child working directory (None = the caller's
            directory at launch time)
        user_id: uid for the child (defaults to the caller's)
        group_id: gid for the child (defaults to the caller's)
        process_group: None = caller's group, 0 = own group, N = join group N
        stdin: stdio binding (Pipe, fd, file object, None or StdioBinding)
        stdout: stdio binding
        stderr: stdio binding
        termination_handler: called once with the handle when the process
            terminates; when unset, the termination broadcast is used
    """

    executable: str | os.PathLike[str] | None = None
    arguments: Sequence[str] = field(default_factory=list)
    environment: Mapping[str, str] | None = None
    working_directory: str | os.PathLike[str] | None = None
    user_id: int = field(default_factory=os.getuid)
    group_id: int = field(default_factory=os.getgid)
    process_group: int | None = None
    stdin: Any = field(default_factory=StdioBinding.inherit)
    stdout: Any = field(default_factory=StdioBinding.inherit)
    stderr: Any = field(default_factory=StdioBinding.inherit)
    termination_handler: Callable[["ProcessHandle"], None] | None = None
    _launched: bool = field(default=False, init=False, repr=False, compare=False)

    _claim_lock: ClassVar[threading.Lock] = threading.Lock()

    def __setattr__(self, name: str, value: Any) -> None:
        if getattr(self, "_launched", False):
            raise ProcessStateError(
                f"cannot set {name!r}: descriptor has already been launched"
            )
        if name in _STDIO_FIELDS:
            value = StdioBinding.coerce(value)
        object.__setattr__(self, name, value)

    @property
    def launched(self) -> bool:
        """Whether a launch was attempted with this descriptor."""
        return self._launched

    def _claim(self) -> bool:
        """Mark the descriptor launched; False if it already was."""
        with self._claim_lock:
            if self._launched:
                return False
            object.__setattr__(self, "arguments", tuple(self.arguments))
            if self.environment is not None:
                object.__setattr__(
                    self, "environment", MappingProxyType(dict(self.environment))
                )
            object.__setattr__(self, "_launched", True)
            return True


class ProcessHandle:
    """A launched process.

    Created by the launcher; updated by the launcher (RUNNING) and the
    termination reactor (TERMINATED). All mutations go through ``_lock``.
    """

    def __init__(self, descriptor: ProcessDescriptor) -> None:
        self._descriptor = descriptor
        self._lock = threading.Lock()
        self._terminated = threading.Event()
        self._pid = 0
        self._state = ProcessState.NOT_STARTED
        self._suspend_count = 0
        self._status = 0
        self._reason = TerminationReason.EXIT
        self._delivered = False
        self._popen: subprocess.Popen | None = None
        self.registration: ReactorRegistration | None = None

    # -- status ---------------------------------------------------------------

    @property
    def descriptor(self) -> ProcessDescriptor:
        return self._descriptor

    @property
    def pid(self) -> int:
        """Process identifier (0 until launched)."""
        return self._pid

    @property
    def state(self) -> ProcessState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state is ProcessState.RUNNING

    @property
    def suspend_count(self) -> int:
        return self._suspend_count

    @property
    def termination_status(self) -> int:
        """Exit code or signal number; only valid once terminated."""
        self._require_terminated("termination_status")
        return self._status

    @property
    def termination_reason(self) -> TerminationReason:
        """Reason for termination; only valid once terminated."""
        self._require_terminated("termination_reason")
        return self._reason

    @property
    def exit_code(self) -> int | None:
        """``subprocess``-style return code.

        None while running, the exit code after a normal exit, and the
        negated signal number after an uncaught signal.
        """
        if self._state is not ProcessState.TERMINATED:
            return None
        if self._reason is TerminationReason.UNCAUGHT_SIGNAL:
            return -self._status
        return self._status

    def _require_started(self, operation: str) -> None:
        if self._state is ProcessState.NOT_STARTED:
            raise ProcessStateError(f"{operation}: process not launched")

    def _require_terminated(self, operation: str) -> None:
        self._require_started(operation)
        if self._state is not ProcessState.TERMINATED:
            raise ProcessStateError(f"{operation}: process pid={self._pid} still running")

    # -- signals --------------------------------------------------------------

    def _send(self, sig: int) -> bool:
        """Send ``sig`` to the child (or its group). Caller holds ``_lock``."""
        if self._state is ProcessState.TERMINATED:
            return False
        leads_group = self._descriptor.process_group == 0
        try:
            if get_config().signal_mode is SignalMode.GROUP and leads_group:
                os.killpg(self._pid, sig)
            else:
                os.kill(self._pid, sig)
        except OSError as e:
            logger.debug(f"Signal {sig} to pid={self._pid} failed: {e}")
            return False
        return True

    def send_signal(self, sig: int) -> bool:
        """Send an arbitrary signal.

        Returns:
            True if the signal was sent, False if the process has already
            terminated or the OS refused
        """
        self._require_started("send_signal")
        with self._lock:
            return self._send(sig)

    def interrupt(self) -> bool:
        """Send SIGINT."""
        return self.send_signal(signal.SIGINT)

    def terminate(self) -> bool:
        """Send SIGTERM."""
        return self.send_signal(signal.SIGTERM)

    def kill(self) -> bool:
        """Send SIGKILL."""
        return self.send_signal(signal.SIGKILL)

    def suspend(self) -> bool:
        """Stop the process (SIGSTOP) and count the suspension."""
        self._require_started("suspend")
        with self._lock:
            if not self._send(signal.SIGSTOP):
                return False
            self._suspend_count += 1
            logger.debug(f"Suspended pid={self._pid} count={self._suspend_count}")
            return True

    def resume(self) -> bool:
        """Undo one ``suspend()``.

        The process only continues (SIGCONT) when the last outstanding
        suspension is resumed. With nothing suspended this is a no-op that
        returns True.
        """
        self._require_started("resume")
        with self._lock:
            if self._suspend_count == 0:
                return True
            if self._suspend_count == 1 and not self._send(signal.SIGCONT):
                return False
            self._suspend_count -= 1
            logger.debug(f"Resumed pid={self._pid} count={self._suspend_count}")
            return True

    # -- waiting --------------------------------------------------------------

    def wait_until_exit(self, timeout: float | None = None) -> bool:
        """Block until the process has terminated.

        Args:
            timeout: seconds to wait (None = forever)

        Returns:
            True once terminated, False if the timeout expired first
        """
        self._require_started("wait_until_exit")
        return self._terminated.wait(timeout)

    async def wait(self) -> int:
        """Wait cooperatively, yielding to the event loop between checks.

        Returns:
            The termination status
        """
        self._require_started("wait")
        wait_slice = get_config().wait_slice
        while not self._terminated.is_set():
            await anyio.sleep(wait_slice)
        return self._status

    # -- transitions (launcher / reactor) ---------------------------------------

    def _mark_running(self, pid: int, popen: subprocess.Popen | None = None) -> None:
        with self._lock:
            if self._state is not ProcessState.NOT_STARTED:
                raise ProcessStateError(f"process already started pid={self._pid}")
            self._pid = pid
            self._popen = popen
            self._state = ProcessState.RUNNING

    def _mark_terminated(self, reason: TerminationReason, status: int) -> bool:
        """Record termination and wake waiters.

        Returns:
            False if the handle was already terminated
        """
        with self._lock:
            if self._state is ProcessState.TERMINATED:
                return False
            self._reason = reason
            self._status = status
            self._state = ProcessState.TERMINATED
            self._suspend_count = 0
            if self._popen is not None:
                # Already reaped here; keep Popen from waiting on the pid again
                self._popen.returncode = self.exit_code
        self._terminated.set()
        logger.debug(f"Process terminated pid={self._pid} reason={reason.value} status={status}")
        return True

    def _deliver(self) -> None:
        """Invoke the termination handler, or post the broadcast. Runs once."""
        with self._lock:
            if self._delivered:
                return
            self._delivered = True

        handler = self._descriptor.termination_handler
        if handler is None:
            termination_broadcast.post(self)
            return
        try:
            handler(self)
        except Exception as e:
            logger.warning(f"Error in termination handler for pid={self._pid}: {e}")

    def __repr__(self) -> str:
        return (
            f"ProcessHandle(pid={self._pid}, "
            f"state={self._state.value}, "
            f"executable={self._descriptor.executable})"
        )
