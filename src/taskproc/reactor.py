"""Termination reactor.

One background thread detects the exit of every child launched through
taskproc. Before each spawn a connected socketpair is created; the child
inherits one end and the reactor keeps the other. When the child dies the
kernel closes its end, so the reactor's end reads EOF. The reactor then
reaps the child, records the status on the handle and delivers the
termination event.

Key design points:
- One thread and one selector for all children, never a thread per child
- No SIGCHLD handler, so no races with other code that installs one
- The selector is only touched by the reactor thread; other threads hand
  registrations over through a queue plus a wakeup pipe
- Handlers and broadcasts run on one delivery thread, also fed by a queue,
  so a slow handler never stalls exit detection
"""

from __future__ import annotations

import logging
import os
import queue
import selectors
import socket
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field

from .process import ProcessHandle, TerminationReason

__all__ = [
    "ExitToken",
    "ExitWatcher",
    "ReactorRegistration",
    "TerminationReactor",
    "classify_wait_status",
    "get_reactor",
]

logger = logging.getLogger(__name__)


def classify_wait_status(status: int) -> tuple[TerminationReason, int]:
    """Split a raw ``waitpid`` status into reason and status."""
    if os.WIFSIGNALED(status):
        return TerminationReason.UNCAUGHT_SIGNAL, os.WTERMSIG(status)
    if os.WIFEXITED(status):
        return TerminationReason.EXIT, os.WEXITSTATUS(status)
    return TerminationReason.UNKNOWN, -1


@dataclass
class ExitToken:
    """A descriptor pair reserved for one launch.

    Attributes:
        child_fd: end inherited by the child (closed in the parent after spawn)
        watch_fd: end kept by the watcher
    """

    child_fd: int
    watch_fd: int

    def close_child(self) -> None:
        if self.child_fd >= 0:
            os.close(self.child_fd)
            self.child_fd = -1

    def close_watch(self) -> None:
        if self.watch_fd >= 0:
            os.close(self.watch_fd)
            self.watch_fd = -1


@dataclass(eq=False)
class ReactorRegistration:
    """A live child watched by the reactor.

    Attributes:
        pid: process identifier
        handle: the handle to update on exit
        watch_fd: reactor-side descriptor
    """

    pid: int
    handle: ProcessHandle
    watch_fd: int
    delivered: bool = field(default=False, repr=False)
    reaping: bool = field(default=False, repr=False)


class ExitWatcher(ABC):
    """Reports the exit of launched children.

    The launcher calls ``prepare()`` before spawning and passes the token's
    ``child_fd`` to the child, then ``watch()`` once the pid is known, or
    ``discard()`` if the spawn failed.
    """

    @abstractmethod
    def prepare(self) -> ExitToken:
        """Reserve resources for one launch."""

    @abstractmethod
    def watch(self, token: ExitToken, handle: ProcessHandle) -> ReactorRegistration:
        """Start watching a running child."""

    @abstractmethod
    def discard(self, token: ExitToken) -> None:
        """Release a token whose spawn failed."""


class TerminationReactor(ExitWatcher):
    """Socketpair-EOF exit watcher running on one daemon thread."""

    def __init__(self) -> None:
        self._start_lock = threading.Lock()
        self._started = threading.Event()
        self._thread: threading.Thread | None = None
        self._table_lock = threading.Lock()
        self._registrations: dict[int, ReactorRegistration] = {}
        self._pending: queue.Queue[ReactorRegistration] = queue.Queue()
        self._deliveries: queue.Queue[ProcessHandle] = queue.Queue()
        self._delivery_thread: threading.Thread | None = None
        self._wakeup_r = -1
        self._wakeup_w = -1

    # -- lifecycle --------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._started.is_set()

    def start(self) -> None:
        """Start the worker once; block until it is running."""
        with self._start_lock:
            if self._thread is None:
                self._wakeup_r, self._wakeup_w = os.pipe()
                os.set_blocking(self._wakeup_r, False)
                os.set_blocking(self._wakeup_w, False)
                self._thread = threading.Thread(
                    target=self._run,
                    daemon=True,
                    name="taskproc-reactor",
                )
                self._thread.start()
                self._delivery_thread = threading.Thread(
                    target=self._deliver_loop,
                    daemon=True,
                    name="taskproc-deliver",
                )
                self._delivery_thread.start()
        self._started.wait()

    def _run(self) -> None:
        selector = selectors.DefaultSelector()
        selector.register(self._wakeup_r, selectors.EVENT_READ, None)
        self._started.set()
        logger.debug("Termination reactor running")

        while True:
            for key, _ in selector.select():
                try:
                    self._dispatch(selector, key.data)
                except Exception:
                    logger.exception("Termination reactor failed to process an event")

    def _dispatch(
        self,
        selector: selectors.BaseSelector,
        registration: ReactorRegistration | None,
    ) -> None:
        if registration is None:
            self._drain_wakeup()
            self._register_pending(selector)
            return

        try:
            if not self._read_eof(registration.watch_fd):
                return
            selector.unregister(registration.watch_fd)
            self._on_exit(registration)
        except Exception:
            logger.exception(f"Failed to handle exit of pid={registration.pid}")
            self._abandon(selector, registration)

    def _abandon(
        self,
        selector: selectors.BaseSelector,
        registration: ReactorRegistration,
    ) -> None:
        """Terminate a registration whose exit could not be processed."""
        fd, registration.watch_fd = registration.watch_fd, -1
        if fd >= 0:
            try:
                selector.unregister(fd)
            except (KeyError, ValueError):
                pass
            try:
                os.close(fd)
            except OSError as e:
                logger.warning(f"Could not close fd={fd} of pid={registration.pid}: {e}")

        self._complete(registration, TerminationReason.UNKNOWN, -1)
        if registration.reaping:
            return
        # The child may still be alive; reap it whenever it exits
        registration.reaping = True
        threading.Thread(
            target=self._reap_blocking,
            args=(registration,),
            daemon=True,
            name=f"taskproc-reaper-{registration.pid}",
        ).start()

    def _drain_wakeup(self) -> None:
        try:
            while os.read(self._wakeup_r, 4096):
                pass
        except BlockingIOError:
            pass

    def _register_pending(self, selector: selectors.BaseSelector) -> None:
        while True:
            try:
                registration = self._pending.get_nowait()
            except queue.Empty:
                return
            try:
                selector.register(registration.watch_fd, selectors.EVENT_READ, registration)
            except (OSError, ValueError) as e:
                logger.warning(
                    f"Cannot watch pid={registration.pid} fd={registration.watch_fd}: {e}; "
                    f"falling back to a blocking reap"
                )
                self._on_exit(registration)

    @staticmethod
    def _read_eof(fd: int) -> bool:
        """Consume readable data; True on end of stream."""
        try:
            return os.read(fd, 4096) == b""
        except ConnectionResetError:
            return True

    # -- ExitWatcher ----------------------------------------------------------------

    def prepare(self) -> ExitToken:
        self.start()
        parent_sock, child_sock = socket.socketpair(socket.AF_UNIX, socket.SOCK_STREAM)
        # Both ends are non-inheritable here; the launcher opens child_fd up
        # to the child only while it holds the launch lock.
        return ExitToken(child_fd=child_sock.detach(), watch_fd=parent_sock.detach())

    def watch(self, token: ExitToken, handle: ProcessHandle) -> ReactorRegistration:
        token.close_child()
        registration = ReactorRegistration(
            pid=handle.pid,
            handle=handle,
            watch_fd=token.watch_fd,
        )
        # Ownership of watch_fd moves to the registration
        token.watch_fd = -1
        handle.registration = registration

        with self._table_lock:
            self._registrations[registration.pid] = registration
        self._pending.put(registration)
        try:
            os.write(self._wakeup_w, b"\0")
        except BlockingIOError:
            # Pipe full: the reactor already has a wakeup pending
            pass

        logger.debug(f"Watching pid={registration.pid} fd={registration.watch_fd}")
        return registration

    def discard(self, token: ExitToken) -> None:
        token.close_child()
        token.close_watch()

    # -- reaping ----------------------------------------------------------------------

    def _on_exit(self, registration: ReactorRegistration) -> None:
        fd, registration.watch_fd = registration.watch_fd, -1
        try:
            os.close(fd)
        except OSError as e:
            logger.warning(f"Could not close fd={fd} of pid={registration.pid}: {e}")

        registration.reaping = True
        try:
            pid, status = os.waitpid(registration.pid, os.WNOHANG)
        except ChildProcessError as e:
            logger.warning(f"Could not reap pid={registration.pid}: {e}")
            self._complete(registration, TerminationReason.UNKNOWN, -1)
            return

        if pid == 0:
            # EOF arrived before the child became waitable, or the child
            # closed its end early. Reap off the reactor thread.
            threading.Thread(
                target=self._reap_blocking,
                args=(registration,),
                daemon=True,
                name=f"taskproc-reaper-{registration.pid}",
            ).start()
            return

        self._complete(registration, *classify_wait_status(status))

    def _reap_blocking(self, registration: ReactorRegistration) -> None:
        try:
            _, status = os.waitpid(registration.pid, 0)
        except ChildProcessError as e:
            logger.warning(f"Could not reap pid={registration.pid}: {e}")
            self._complete(registration, TerminationReason.UNKNOWN, -1)
            return
        self._complete(registration, *classify_wait_status(status))

    def _complete(
        self,
        registration: ReactorRegistration,
        reason: TerminationReason,
        status: int,
    ) -> None:
        with self._table_lock:
            if registration.delivered:
                return
            registration.delivered = True
            self._registrations.pop(registration.pid, None)

        handle = registration.handle
        if handle._mark_terminated(reason, status):
            self._deliveries.put(handle)

    def _deliver_loop(self) -> None:
        while True:
            handle = self._deliveries.get()
            try:
                handle._deliver()
            except Exception:
                logger.exception(f"Termination delivery failed for pid={handle.pid}")

    # -- diagnostics ------------------------------------------------------------------

    @property
    def live_count(self) -> int:
        """Number of children currently watched."""
        with self._table_lock:
            return len(self._registrations)

    def registered_pids(self) -> list[int]:
        with self._table_lock:
            return sorted(self._registrations)


# Process-wide reactor (lazily created)
_reactor: TerminationReactor | None = None
_reactor_lock = threading.Lock()


def get_reactor() -> TerminationReactor:
    """Return the process-wide reactor, starting it on first use."""
    global _reactor
    with _reactor_lock:
        if _reactor is None:
            _reactor = TerminationReactor()
        reactor = _reactor
    reactor.start()
    return reactor


def _reset_after_fork() -> None:
    # The reactor thread does not survive fork(); a child starts its own
    global _reactor, _reactor_lock
    _reactor = None
    _reactor_lock = threading.Lock()


if hasattr(os, "register_at_fork"):
    os.register_at_fork(after_in_child=_reset_after_fork)
