"""Exception hierarchy and errno mapping for process launching.

taskproc v0.1.0

Launch-time failures are reported as ``LaunchError`` carrying an
``ErrorKind``. Contract violations (reading a status too early, signaling a
process that was never launched, mutating a launched descriptor) raise
``ProcessStateError``.
"""

from __future__ import annotations

import errno as _errno
from enum import Enum

__all__ = [
    "ErrorKind",
    "TaskProcError",
    "LaunchError",
    "ProcessStateError",
    "map_errno",
]


class ErrorKind(Enum):
    """Launch error taxonomy."""

    NOT_FOUND = "not_found"
    PERMISSION_DENIED = "permission_denied"
    ALREADY_LAUNCHED = "already_launched"
    NOT_EXECUTABLE = "not_executable"
    WORKING_DIRECTORY_INVALID = "working_directory_invalid"
    RESOURCE_EXHAUSTED = "resource_exhausted"
    UNKNOWN = "unknown"


_ERRNO_KINDS: dict[int, ErrorKind] = {
    _errno.ENOENT: ErrorKind.NOT_FOUND,
    _errno.ENOTDIR: ErrorKind.NOT_FOUND,
    _errno.ENAMETOOLONG: ErrorKind.NOT_FOUND,
    _errno.ELOOP: ErrorKind.NOT_FOUND,
    _errno.EPERM: ErrorKind.PERMISSION_DENIED,
    _errno.EACCES: ErrorKind.PERMISSION_DENIED,
    _errno.ENOEXEC: ErrorKind.NOT_EXECUTABLE,
    _errno.EAGAIN: ErrorKind.RESOURCE_EXHAUSTED,
    _errno.ENOMEM: ErrorKind.RESOURCE_EXHAUSTED,
    _errno.EMFILE: ErrorKind.RESOURCE_EXHAUSTED,
    _errno.ENFILE: ErrorKind.RESOURCE_EXHAUSTED,
    _errno.EMLINK: ErrorKind.RESOURCE_EXHAUSTED,
}


def map_errno(code: int | None, *, working_directory: bool = False) -> ErrorKind:
    """Map a raw errno to an ``ErrorKind``.

    Args:
        code: errno value (None is treated as unknown)
        working_directory: True when the error came from changing into the
            child's working directory; every code then maps to
            WORKING_DIRECTORY_INVALID

    Returns:
        The mapped kind. Unmapped codes are UNKNOWN; callers keep the raw
        code on the error so it is never lost.
    """
    if working_directory:
        return ErrorKind.WORKING_DIRECTORY_INVALID
    if code is None:
        return ErrorKind.UNKNOWN
    return _ERRNO_KINDS.get(code, ErrorKind.UNKNOWN)


class TaskProcError(Exception):
    """Base exception for taskproc."""
    pass


class LaunchError(TaskProcError):
    """A process could not be launched.

    Attributes:
        kind: mapped error kind
        message: human readable message
        errno: raw OS error code, if the failure came from the OS
        path: the path involved (executable or working directory)
    """

    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        errno: int | None = None,
        path: str | None = None,
    ) -> None:
        self.kind = kind
        self.message = message
        self.errno = errno
        self.path = path
        detail = f" (errno={errno})" if errno is not None else ""
        super().__init__(f"[{kind.value}] {message}{detail}")

    @classmethod
    def from_os_error(
        cls,
        exc: OSError,
        *,
        path: str | None = None,
        working_directory: bool = False,
    ) -> "LaunchError":
        """Build a LaunchError from an ``OSError``, keeping its errno."""
        kind = map_errno(exc.errno, working_directory=working_directory)
        message = exc.strerror or str(exc)
        return cls(kind, message, errno=exc.errno, path=path or exc.filename)


class ProcessStateError(TaskProcError, RuntimeError):
    """An operation was used out of order (caller misuse).

    Attributes:
        message: description of the violated contract
    """

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)
