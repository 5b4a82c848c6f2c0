"""Process launcher.

``launch()`` validates a descriptor, resolves its stdio, builds the spawn
plan and spawns the child in one step, then hands the new process to the
termination reactor.

Key design points:
- The executable is stat()ed and access()-checked up front, because the
  spawn primitive can report success even when loading the program fails
- ``os.posix_spawn`` has no working-directory parameter, so the launcher
  changes the process-wide cwd around the call; a single lock serializes
  that change-spawn-restore sequence across threads, and the caller's
  directory is only read while holding it
- Plans that switch uid/gid go through ``subprocess.Popen``, which applies
  the identity, process group and fds in the child before exec
"""

from __future__ import annotations

import logging
import os
import stat
import subprocess
import threading
from collections.abc import Callable, Sequence

from .errors import ErrorKind, LaunchError
from .process import ProcessDescriptor, ProcessHandle
from .reactor import ExitToken, ExitWatcher, get_reactor
from .spawn_plan import SpawnPlan, build_spawn_plan
from .stdio import resolve_stdio

__all__ = ["launch", "run"]

logger = logging.getLogger(__name__)

# Guards the process-wide cwd and the inheritable window of exit-watch fds
_launch_lock = threading.Lock()


def _validate_executable(executable: str | os.PathLike[str] | None) -> str:
    """Check that ``executable`` is a regular, executable file.

    A relative path is made absolute against the caller's directory.

    Returns:
        The absolute path as a string

    Raises:
        LaunchError: NOT_FOUND, PERMISSION_DENIED or NOT_EXECUTABLE
    """
    if executable is None:
        raise LaunchError(ErrorKind.NOT_FOUND, "the launch path is not set")

    path = os.fspath(executable)
    if not os.path.isabs(path):
        # Resolve against the caller's directory, never a launch's transient one
        with _launch_lock:
            path = os.path.abspath(path)

    try:
        info = os.stat(path)
    except OSError as e:
        raise LaunchError.from_os_error(e, path=path) from e

    if not stat.S_ISREG(info.st_mode):
        raise LaunchError(ErrorKind.NOT_FOUND, "the launch path does not exist", path=path)

    if not os.access(path, os.X_OK):
        raise LaunchError(ErrorKind.NOT_EXECUTABLE, "the launch path is not executable", path=path)

    return path


def _spawn(plan: SpawnPlan, token: ExitToken) -> tuple[int, subprocess.Popen | None]:
    """Spawn the child described by ``plan``.

    Returns:
        (pid, Popen object for the identity path or None)
    """
    with _launch_lock:
        try:
            if plan.identity_override:
                return _spawn_with_identity(plan)
            os.set_inheritable(token.child_fd, True)
            return _posix_spawn(plan), None
        finally:
            # Only the child may hold this end from here on
            token.close_child()


def _call_posix_spawn(plan: SpawnPlan) -> int:
    try:
        return os.posix_spawn(plan.path, plan.argv, plan.env, **plan.posix_spawn_kwargs())
    except OSError as e:
        raise LaunchError.from_os_error(e, path=plan.path) from e


def _posix_spawn(plan: SpawnPlan) -> int:
    if plan.cwd is None:
        return _call_posix_spawn(plan)

    try:
        previous = os.getcwd()
    except OSError as e:
        raise LaunchError.from_os_error(e, working_directory=True) from e

    try:
        os.chdir(plan.cwd)
    except OSError as e:
        raise LaunchError.from_os_error(e, path=plan.cwd, working_directory=True) from e

    try:
        return _call_posix_spawn(plan)
    finally:
        os.chdir(previous)


def _spawn_with_identity(plan: SpawnPlan) -> tuple[int, subprocess.Popen]:
    if plan.cwd is not None and not os.path.isdir(plan.cwd):
        raise LaunchError(
            ErrorKind.WORKING_DIRECTORY_INVALID,
            "the working directory does not exist",
            path=plan.cwd,
        )
    try:
        popen = subprocess.Popen(plan.argv, **plan.popen_kwargs())
    except OSError as e:
        raise LaunchError.from_os_error(e, path=plan.path) from e
    return popen.pid, popen


def launch(
    descriptor: ProcessDescriptor,
    *,
    watcher: ExitWatcher | None = None,
) -> ProcessHandle:
    """Launch ``descriptor`` and return its running handle.

    A descriptor can be launched once. The attempt consumes it even when
    it fails: it stays readable for diagnostics but cannot be launched or
    modified again.

    Args:
        descriptor: what to launch
        watcher: exit watcher (defaults to the process-wide reactor)

    Returns:
        A RUNNING handle registered with the watcher

    Raises:
        LaunchError: If the descriptor was launched before or the process
            could not be started
    """
    if not descriptor._claim():
        raise LaunchError(ErrorKind.ALREADY_LAUNCHED, "the process is launched more than once")

    path = _validate_executable(descriptor.executable)
    watcher = watcher if watcher is not None else get_reactor()

    with resolve_stdio(descriptor.stdin, descriptor.stdout, descriptor.stderr) as stdio:
        try:
            token = watcher.prepare()
        except OSError as e:
            raise LaunchError.from_os_error(e) from e

        try:
            plan = build_spawn_plan(descriptor, path, stdio, inherit_fds=(token.child_fd,))
            pid, popen = _spawn(plan, token)
        except BaseException:
            watcher.discard(token)
            raise

        stdio.close_parent_ends()

    handle = ProcessHandle(descriptor)
    handle._mark_running(pid, popen)
    watcher.watch(token, handle)

    logger.debug(f"Launched pid={pid} argv={plan.argv[0]} cwd={plan.cwd}")
    return handle


def run(
    executable: str | os.PathLike[str],
    arguments: Sequence[str] = (),
    termination_handler: Callable[[ProcessHandle], None] | None = None,
    **descriptor_fields,
) -> ProcessHandle:
    """Create a descriptor and launch it in one call.

    Example:
        handle = run("/bin/sh", ["-c", "exit 7"])
        handle.wait_until_exit()
        assert handle.termination_status == 7
    """
    descriptor = ProcessDescriptor(
        executable=executable,
        arguments=list(arguments),
        termination_handler=termination_handler,
        **descriptor_fields,
    )
    return launch(descriptor)
