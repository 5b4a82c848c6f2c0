"""Pytest configuration and fixtures."""

from __future__ import annotations

import os
import sys
import threading
import time
from pathlib import Path

import pytest

# Project root
PROJECT_ROOT = Path(__file__).parent.parent

# Add src to the Python path
SRC_DIR = PROJECT_ROOT / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from taskproc.notifications import termination_broadcast  # noqa: E402

IS_LINUX = sys.platform.startswith("linux")


@pytest.fixture
def temp_workspace(tmp_path: Path) -> Path:
    """Temporary working directory."""
    workspace = tmp_path / "workspace"
    workspace.mkdir()
    return workspace


class EventRecorder:
    """Collects termination broadcasts posted while the fixture is active."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.events: list = []

    def __call__(self, handle) -> None:
        with self._lock:
            self.events.append(handle)

    def for_handles(self, handles) -> list:
        ids = {id(h) for h in handles}
        with self._lock:
            return [h for h in self.events if id(h) in ids]

    def wait_for(self, handles, count: int, timeout: float = 10.0) -> list:
        """Poll until ``count`` events for ``handles`` arrived (or timeout)."""
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            events = self.for_handles(handles)
            if len(events) >= count:
                return events
            time.sleep(0.01)
        return self.for_handles(handles)


@pytest.fixture
def recorder():
    """Subscribe an EventRecorder to the termination broadcast."""
    rec = EventRecorder()
    unsubscribe = termination_broadcast.subscribe(rec)
    try:
        yield rec
    finally:
        unsubscribe()


def proc_state(pid: int) -> str | None:
    """Single-letter scheduler state from /proc, or None if unavailable."""
    try:
        with open(f"/proc/{pid}/stat", encoding="utf-8") as f:
            data = f.read()
    except OSError:
        return None
    # Field 3, after the parenthesised command name
    return data.rsplit(")", 1)[1].split()[0]


def wait_for_state(pid: int, predicate, timeout: float = 5.0) -> str | None:
    deadline = time.monotonic() + timeout
    state = proc_state(pid)
    while time.monotonic() < deadline:
        state = proc_state(pid)
        if state is not None and predicate(state):
            return state
        time.sleep(0.01)
    return state


def which_or_skip(path: str) -> str:
    if not os.access(path, os.X_OK):
        pytest.skip(f"{path} not available")
    return path
