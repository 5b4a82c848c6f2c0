"""Spawn plan construction.

A ``SpawnPlan`` is the OS-ready form of a ``ProcessDescriptor``: argv and
environment, the fd duplication/close actions from the stdio plan, the
signal state the child starts with, the process-group attribute and the
identity override. It belongs to a single launch and is dropped once the
spawn call returns.
"""

from __future__ import annotations

import functools
import os
import signal
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from .errors import ErrorKind, LaunchError
from .stdio import STDERR_FILENO, STDIN_FILENO, STDOUT_FILENO, StdioPlan

if TYPE_CHECKING:
    from .process import ProcessDescriptor

__all__ = ["SpawnPlan", "build_spawn_plan", "default_signal_set"]

# Signals whose disposition cannot be changed
_UNALTERABLE_SIGNALS = frozenset({signal.SIGKILL, signal.SIGSTOP})


def default_signal_set() -> frozenset[int]:
    """Every valid signal except SIGKILL and SIGSTOP."""
    return frozenset(
        int(sig) for sig in signal.valid_signals() if sig not in _UNALTERABLE_SIGNALS
    )


def _reset_signal_state(sigdefault: frozenset[int], sigmask: frozenset[int]) -> None:
    """Apply the plan's signal state in a forked child, before exec."""
    for sig in sigdefault:
        signal.signal(sig, signal.SIG_DFL)
    signal.pthread_sigmask(signal.SIG_SETMASK, sigmask)


@dataclass
class SpawnPlan:
    """Compiled spawn parameters for one launch.

    Attributes:
        path: executable path (also argv[0])
        argv: full argument vector
        env: environment for the child
        cwd: working directory for the child (None = stay in the caller's)
        dup2: ordered (target_fd, source_fd) duplication actions
        close: fds to close in the child
        inherit_fds: extra fds the child keeps open (exit watcher end)
        sigmask: signals blocked in the child (always empty)
        sigdefault: signals reset to their default disposition
        process_group: None = caller's group, 0 = own group, N = join N
        user_id: uid to switch to, None when unchanged
        group_id: gid to switch to, None when unchanged
    """

    path: str
    argv: list[str]
    env: dict[str, str]
    cwd: str | None
    dup2: list[tuple[int, int]] = field(default_factory=list)
    close: frozenset[int] = frozenset()
    inherit_fds: tuple[int, ...] = ()
    sigmask: frozenset[int] = frozenset()
    sigdefault: frozenset[int] = field(default_factory=default_signal_set)
    process_group: int | None = None
    user_id: int | None = None
    group_id: int | None = None

    @property
    def envp(self) -> list[str]:
        """Environment serialized as ``KEY=VALUE`` entries."""
        return [f"{key}={value}" for key, value in self.env.items()]

    @property
    def identity_override(self) -> bool:
        return self.user_id is not None or self.group_id is not None

    def stdio_source(self, target: int) -> int | None:
        for dup_target, source in self.dup2:
            if dup_target == target:
                return source
        return None

    def file_actions(self) -> list[tuple[Any, ...]]:
        """``os.posix_spawn`` file actions: duplications first, then closes."""
        actions: list[tuple[Any, ...]] = [
            (os.POSIX_SPAWN_DUP2, source, target) for target, source in self.dup2
        ]
        actions.extend((os.POSIX_SPAWN_CLOSE, fd) for fd in sorted(self.close))
        return actions

    def posix_spawn_kwargs(self) -> dict[str, Any]:
        """Keyword arguments for ``os.posix_spawn``."""
        kwargs: dict[str, Any] = {
            "file_actions": self.file_actions(),
            "setsigmask": tuple(self.sigmask),
            "setsigdef": tuple(sorted(self.sigdefault)),
        }
        # Group membership is set by the spawn primitive itself, never by a
        # setpgid() after the fact.
        if self.process_group is not None:
            kwargs["setpgroup"] = self.process_group
        return kwargs

    def popen_kwargs(self) -> dict[str, Any]:
        """Keyword arguments for ``subprocess.Popen`` (identity override path)."""
        kwargs: dict[str, Any] = {
            "executable": self.path,
            "env": self.env,
            "cwd": self.cwd,
            "stdin": self.stdio_source(STDIN_FILENO),
            "stdout": self.stdio_source(STDOUT_FILENO),
            "stderr": self.stdio_source(STDERR_FILENO),
            "close_fds": True,
            "pass_fds": self.inherit_fds,
            "restore_signals": True,
            "preexec_fn": functools.partial(
                _reset_signal_state, self.sigdefault, self.sigmask
            ),
        }
        if self.process_group is not None:
            kwargs["process_group"] = self.process_group
        if self.user_id is not None:
            kwargs["user"] = self.user_id
        if self.group_id is not None:
            kwargs["group"] = self.group_id
        return kwargs


def _build_env(environment: Mapping[str, str] | None) -> dict[str, str]:
    source = os.environ if environment is None else environment
    env: dict[str, str] = {}
    for key, value in source.items():
        key, value = str(key), str(value)
        if not key or "=" in key:
            raise LaunchError(
                ErrorKind.UNKNOWN, f"invalid environment variable name: {key!r}"
            )
        env[key] = value
    return env


def build_spawn_plan(
    descriptor: "ProcessDescriptor",
    executable: str,
    stdio: StdioPlan,
    *,
    inherit_fds: tuple[int, ...] = (),
) -> SpawnPlan:
    """Compile a descriptor and its stdio plan into a ``SpawnPlan``.

    Args:
        descriptor: the validated descriptor
        executable: resolved executable path
        stdio: resolved stdio plan
        inherit_fds: extra fds the child must keep

    Raises:
        LaunchError: If an attribute cannot be expressed (bad environment
            entry, negative process group)
    """
    argv = [executable]
    argv.extend(str(arg) for arg in descriptor.arguments)

    process_group = descriptor.process_group
    if process_group is not None and process_group < 0:
        raise LaunchError(
            ErrorKind.UNKNOWN, f"invalid process group identifier: {process_group}"
        )

    working_directory = descriptor.working_directory
    cwd = os.fspath(working_directory) if working_directory is not None else None

    user_id = descriptor.user_id if descriptor.user_id != os.getuid() else None
    group_id = descriptor.group_id if descriptor.group_id != os.getgid() else None

    return SpawnPlan(
        path=executable,
        argv=argv,
        env=_build_env(descriptor.environment),
        cwd=cwd,
        dup2=list(stdio.dup2),
        close=frozenset(stdio.close),
        inherit_fds=tuple(inherit_fds),
        process_group=process_group,
        user_id=user_id,
        group_id=group_id,
    )
