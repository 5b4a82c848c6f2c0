"""Standard I/O bindings and the stdio resolver.

Each of a child's three standard streams is bound to one of:

- INHERIT: the child keeps the parent's stream (no action)
- PIPE: one end of an anonymous ``Pipe``
- FILE: an explicit file descriptor (or object with ``fileno()``)
- NULL: the null device

``resolve_stdio()`` turns three bindings into a ``StdioPlan``: the
duplication actions onto fds 0/1/2, the fds the child must close, and the
pipes whose parent-side child ends are closed once the child is running.
"""

from __future__ import annotations

import logging
import os
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .errors import LaunchError

__all__ = [
    "STDIN_FILENO",
    "STDOUT_FILENO",
    "STDERR_FILENO",
    "Pipe",
    "StdioKind",
    "StdioBinding",
    "StdioPlan",
    "resolve_stdio",
]

logger = logging.getLogger(__name__)

STDIN_FILENO = 0
STDOUT_FILENO = 1
STDERR_FILENO = 2

_READ_CHUNK = 65536


class Pipe:
    """An anonymous pipe.

    Both ends are created non-inheritable; the launcher duplicates the end
    the child needs onto the target standard fd.

    Example:
        ```python
        out = Pipe()
        descriptor = ProcessDescriptor("/bin/echo", ["hi"], stdout=out)
        handle = launch(descriptor)
        handle.wait_until_exit()
        assert out.read_all() == b"hi\\n"
        ```
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._read_fd, self._write_fd = os.pipe()

    @property
    def read_fd(self) -> int:
        """Read end, or -1 once closed."""
        return self._read_fd

    @property
    def write_fd(self) -> int:
        """Write end, or -1 once closed."""
        return self._write_fd

    def close_read(self) -> None:
        with self._lock:
            fd, self._read_fd = self._read_fd, -1
        if fd >= 0:
            os.close(fd)

    def close_write(self) -> None:
        with self._lock:
            fd, self._write_fd = self._write_fd, -1
        if fd >= 0:
            os.close(fd)

    def close(self) -> None:
        self.close_read()
        self.close_write()

    def write(self, data: bytes) -> int:
        """Write all of ``data`` to the write end.

        Returns:
            Number of bytes written

        Raises:
            ValueError: If the write end is closed
        """
        if self._write_fd < 0:
            raise ValueError("write end of pipe is closed")
        view = memoryview(data)
        total = 0
        while total < len(view):
            total += os.write(self._write_fd, view[total:])
        return total

    def read(self, size: int = _READ_CHUNK) -> bytes:
        """Read up to ``size`` bytes; b"" means end of stream."""
        if self._read_fd < 0:
            raise ValueError("read end of pipe is closed")
        return os.read(self._read_fd, size)

    def read_all(self) -> bytes:
        """Read until every copy of the write end is closed."""
        chunks: list[bytes] = []
        while True:
            chunk = self.read()
            if not chunk:
                break
            chunks.append(chunk)
        return b"".join(chunks)

    def __enter__(self) -> "Pipe":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"Pipe(read_fd={self._read_fd}, write_fd={self._write_fd})"


class StdioKind(Enum):
    """How a standard stream is bound."""

    INHERIT = "inherit"
    PIPE = "pipe"
    FILE = "file"
    NULL = "null"


@dataclass(frozen=True)
class StdioBinding:
    """Binding of one standard stream.

    Attributes:
        kind: binding kind
        pipe: the pipe, for PIPE
        fd: the descriptor, for FILE
        source: the object the fd came from (kept alive until launch)
    """

    kind: StdioKind
    pipe: Pipe | None = None
    fd: int | None = None
    source: Any = field(default=None, compare=False, repr=False)

    @classmethod
    def inherit(cls) -> "StdioBinding":
        return cls(StdioKind.INHERIT)

    @classmethod
    def null(cls) -> "StdioBinding":
        return cls(StdioKind.NULL)

    @classmethod
    def to_pipe(cls, pipe: Pipe) -> "StdioBinding":
        return cls(StdioKind.PIPE, pipe=pipe)

    @classmethod
    def to_file(cls, handle: Any) -> "StdioBinding":
        """Bind to an int fd or any object with ``fileno()``."""
        fd = handle if isinstance(handle, int) else handle.fileno()
        if fd < 0:
            raise ValueError(f"invalid file descriptor: {fd}")
        return cls(StdioKind.FILE, fd=fd, source=handle)

    @classmethod
    def coerce(cls, value: Any) -> "StdioBinding":
        """Convert a user-facing value into a binding.

        None is the null device, a Pipe is PIPE, an int or file-like object
        is FILE, and a StdioBinding is returned unchanged.
        """
        if isinstance(value, StdioBinding):
            return value
        if value is None:
            return cls.null()
        if isinstance(value, Pipe):
            return cls.to_pipe(value)
        if isinstance(value, int) or hasattr(value, "fileno"):
            return cls.to_file(value)
        raise TypeError(
            f"stdio binding must be a Pipe, file descriptor, file object or None, "
            f"not {type(value).__name__}"
        )


@dataclass
class StdioPlan:
    """Resolved file actions for the three standard streams.

    Attributes:
        dup2: ordered (target_fd, source_fd) duplication actions
        close: fds to close in the child after the duplications
        pipes: target fd -> pipe handed to the child
        null_fd: shared null-device fd, if any stream asked for it
    """

    dup2: list[tuple[int, int]] = field(default_factory=list)
    close: set[int] = field(default_factory=set)
    pipes: dict[int, Pipe] = field(default_factory=dict)
    null_fd: int | None = None

    def close_parent_ends(self) -> None:
        """Close the parent's copies of the pipe ends now held by the child."""
        for target, pipe in self.pipes.items():
            if target == STDIN_FILENO:
                pipe.close_read()
            else:
                pipe.close_write()

    def release(self) -> None:
        """Close the null device, if opened."""
        if self.null_fd is not None:
            os.close(self.null_fd)
            self.null_fd = None

    def __enter__(self) -> "StdioPlan":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.release()


def _open_null_device() -> int:
    try:
        return os.open(os.devnull, os.O_RDWR)
    except OSError as e:
        raise LaunchError.from_os_error(e, path=os.devnull) from e


def resolve_stdio(stdin: Any, stdout: Any, stderr: Any) -> StdioPlan:
    """Resolve the three bindings into a ``StdioPlan``.

    Exactly one duplication action exists per stream that is not inherited.
    The close set is a set so a pipe shared by stdout and stderr is closed
    only once, and it never holds an fd that receives a duplication.

    Raises:
        LaunchError: If the null device cannot be opened
    """
    plan = StdioPlan()
    bindings = (
        (STDIN_FILENO, StdioBinding.coerce(stdin)),
        (STDOUT_FILENO, StdioBinding.coerce(stdout)),
        (STDERR_FILENO, StdioBinding.coerce(stderr)),
    )

    try:
        for target, binding in bindings:
            if binding.kind is StdioKind.INHERIT:
                continue

            if binding.kind is StdioKind.PIPE:
                pipe = binding.pipe
                if target == STDIN_FILENO:
                    source, other = pipe.read_fd, pipe.write_fd
                else:
                    source, other = pipe.write_fd, pipe.read_fd
                if source < 0:
                    raise ValueError(f"pipe end for fd {target} is already closed")
                plan.dup2.append((target, source))
                if other >= 0:
                    plan.close.add(other)
                plan.pipes[target] = pipe

            elif binding.kind is StdioKind.FILE:
                # Same stream as the target: nothing to do
                if binding.fd != target:
                    plan.dup2.append((target, binding.fd))

            else:
                if plan.null_fd is None:
                    plan.null_fd = _open_null_device()
                plan.dup2.append((target, plan.null_fd))
    except BaseException:
        plan.release()
        raise

    plan.close.difference_update(target for target, _ in plan.dup2)
    logger.debug(f"Resolved stdio dup2={plan.dup2} close={sorted(plan.close)}")
    return plan
