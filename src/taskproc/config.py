"""taskproc environment configuration.

Environment variables:
    TASKPROC_WAIT_SLICE: cooperative wait slice in seconds
        - default 0.05
        - clamped to 0.001 - 1.0

    TASKPROC_LOG_DEBUG: debug logging
        - true/1/yes = on (log to a file in the temp directory)
        - false/0/no = off (default, log to stderr)

    TASKPROC_SIGNAL_MODE: target of interrupt/terminate/kill
        - process = the child only (default)
        - group = the child's process group, when the child leads one
"""

from __future__ import annotations

import os
import tempfile
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path

__all__ = ["Config", "SignalMode", "load_config", "get_config", "reload_config"]

DEFAULT_WAIT_SLICE = 0.05


class SignalMode(Enum):
    """Where control signals are delivered.

    - PROCESS: only the tracked pid
    - GROUP: the process group led by the tracked pid (falls back to the
      pid when the child is not a group leader)
    """

    PROCESS = "process"
    GROUP = "group"

    @classmethod
    def from_string(cls, value: str) -> "SignalMode":
        """Parse a mode string; unknown values give PROCESS."""
        value = value.lower().strip()
        for mode in cls:
            if mode.value == value:
                return mode
        return cls.PROCESS


def _parse_bool(value: str | None, default: bool = False) -> bool:
    """Parse a boolean environment variable."""
    if value is None:
        return default
    return value.lower() in ("true", "1", "yes", "on")


def _parse_wait_slice(value: str | None) -> float:
    """Parse the wait slice; invalid values fall back to the default."""
    if not value:
        return DEFAULT_WAIT_SLICE
    try:
        slice_ = float(value)
    except ValueError:
        return DEFAULT_WAIT_SLICE
    return max(0.001, min(slice_, 1.0))


def _parse_signal_mode(value: str | None) -> SignalMode:
    if not value:
        return SignalMode.PROCESS
    return SignalMode.from_string(value)


def _generate_log_file_path() -> str:
    """Return a timestamped log file path under the temp directory."""
    log_dir = Path(tempfile.gettempdir()) / "taskproc"
    log_dir.mkdir(parents=True, exist_ok=True)

    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    log_file = log_dir / f"taskproc_debug_{timestamp}.log"

    return str(log_file.resolve())


@dataclass
class Config:
    """taskproc configuration.

    Attributes:
        wait_slice: seconds between checks when waiting cooperatively
        log_debug: log at DEBUG level to a file
        log_file: log file path (set when log_debug is True)
        signal_mode: target of interrupt/terminate/kill
    """

    wait_slice: float = DEFAULT_WAIT_SLICE
    log_debug: bool = False
    log_file: str | None = None
    signal_mode: SignalMode = SignalMode.PROCESS

    def __repr__(self) -> str:
        return (
            f"Config(wait_slice={self.wait_slice}, "
            f"log_debug={self.log_debug}, "
            f"log_file={self.log_file}, "
            f"signal_mode={self.signal_mode.value})"
        )


def load_config() -> Config:
    """Load configuration from the environment."""
    log_debug = _parse_bool(os.environ.get("TASKPROC_LOG_DEBUG"), default=False)
    log_file = _generate_log_file_path() if log_debug else None

    return Config(
        wait_slice=_parse_wait_slice(os.environ.get("TASKPROC_WAIT_SLICE")),
        log_debug=log_debug,
        log_file=log_file,
        signal_mode=_parse_signal_mode(os.environ.get("TASKPROC_SIGNAL_MODE")),
    )


# Global configuration (lazily loaded)
_config: Config | None = None


def get_config() -> Config:
    """Return the global configuration."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def reload_config() -> Config:
    """Reload the global configuration (for tests)."""
    global _config
    _config = load_config()
    return _config
