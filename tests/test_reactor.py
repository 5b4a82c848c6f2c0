"""Termination reactor tests.

Test coverage:
- Wait status classification
- Lazy singleton start
- Exactly-once delivery under concurrent launches
- Reaping (no zombies left behind)
- Children that close their exit-watch descriptor early
- Custom ExitWatcher plumbing in the launcher
- Read and reap failures end in an UNKNOWN termination
- Single delivery thread
"""

from __future__ import annotations

import errno
import os
import signal
import sys
import threading
import time
from collections import Counter
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

import pytest

from conftest import proc_state
from taskproc import (
    LaunchError,
    ProcessDescriptor,
    ProcessHandle,
    TerminationReason,
    launch,
)
from taskproc.reactor import (
    ExitToken,
    ExitWatcher,
    ReactorRegistration,
    TerminationReactor,
    classify_wait_status,
    get_reactor,
)

WAIT_TIMEOUT = 20.0


class TestClassify:
    def test_normal_exit(self):
        assert classify_wait_status(0) == (TerminationReason.EXIT, 0)
        assert classify_wait_status(7 << 8) == (TerminationReason.EXIT, 7)
        assert classify_wait_status(255 << 8) == (TerminationReason.EXIT, 255)

    def test_signalled(self):
        assert classify_wait_status(signal.SIGKILL) == (
            TerminationReason.UNCAUGHT_SIGNAL,
            signal.SIGKILL,
        )
        # Core dump flag does not change the signal number
        assert classify_wait_status(signal.SIGSEGV | 0x80) == (
            TerminationReason.UNCAUGHT_SIGNAL,
            signal.SIGSEGV,
        )


class TestSingleton:
    def test_get_reactor_returns_running_singleton(self):
        reactor = get_reactor()
        assert reactor is get_reactor()
        assert reactor.is_running

    def test_registration_removed_after_exit(self):
        reactor = get_reactor()
        handle = launch(ProcessDescriptor("/bin/sh", ["-c", "sleep 0.2"]))

        assert isinstance(handle.registration, ReactorRegistration)
        assert handle.pid in reactor.registered_pids()

        assert handle.wait_until_exit(WAIT_TIMEOUT)
        assert handle.pid not in reactor.registered_pids()


class TestConcurrency:
    def test_hundred_concurrent_launches(self, recorder):
        """100 concurrent launches give 100 events, each exactly once."""
        count = 100

        def start(i: int) -> ProcessHandle:
            return launch(ProcessDescriptor("/bin/sh", ["-c", f"exit {i % 256}"], stdin=None))

        with ThreadPoolExecutor(max_workers=16) as pool:
            handles = list(pool.map(start, range(count)))

        for handle in handles:
            assert handle.wait_until_exit(WAIT_TIMEOUT)

        events = recorder.wait_for(handles, count, timeout=WAIT_TIMEOUT)
        time.sleep(0.1)
        events = recorder.for_handles(handles)

        assert len(events) == count
        assert all(n == 1 for n in Counter(id(h) for h in events).values())
        assert [h.termination_status for h in handles] == [i % 256 for i in range(count)]

        assert len({h.pid for h in handles}) == count
        for handle in handles:
            # Already reaped by the reactor
            with pytest.raises(ChildProcessError):
                os.waitpid(handle.pid, os.WNOHANG)

    def test_concurrent_working_directories(self, tmp_path: Path):
        """Concurrent launches never see each other's working directory."""
        from taskproc import Pipe

        dirs = []
        for i in range(20):
            d = tmp_path / f"d{i}"
            d.mkdir()
            dirs.append(d)

        def start(d: Path) -> tuple[Path, Pipe, ProcessHandle]:
            out = Pipe()
            handle = launch(
                ProcessDescriptor("/bin/sh", ["-c", "pwd -P"], working_directory=d, stdout=out)
            )
            return d, out, handle

        with ThreadPoolExecutor(max_workers=8) as pool:
            launched = list(pool.map(start, dirs))

        for d, out, handle in launched:
            assert handle.wait_until_exit(WAIT_TIMEOUT)
            assert out.read_all().decode().strip() == os.path.realpath(d)
            out.close()


class TestEarlyClose:
    def test_child_closing_watch_fd_is_not_reported_early(self):
        """EOF while the child is alive falls back to a blocking reap."""
        code = (
            "import os, time\n"
            "os.closerange(3, 65536)\n"
            "time.sleep(0.6)\n"
            "raise SystemExit(5)\n"
        )
        handle = launch(ProcessDescriptor(sys.executable, ["-c", code], stdin=None))

        time.sleep(0.3)
        assert handle.is_running

        assert handle.wait_until_exit(WAIT_TIMEOUT)
        assert handle.termination_reason is TerminationReason.EXIT
        assert handle.termination_status == 5


class RecordingWatcher(ExitWatcher):
    """Delegates to the real reactor and records the calls."""

    def __init__(self) -> None:
        self.inner = get_reactor()
        self.calls: list[str] = []

    def prepare(self) -> ExitToken:
        self.calls.append("prepare")
        return self.inner.prepare()

    def watch(self, token: ExitToken, handle: ProcessHandle) -> ReactorRegistration:
        self.calls.append("watch")
        return self.inner.watch(token, handle)

    def discard(self, token: ExitToken) -> None:
        self.calls.append("discard")
        self.inner.discard(token)


class TestWatcherPlumbing:
    def test_success_path(self):
        watcher = RecordingWatcher()
        handle = launch(ProcessDescriptor("/bin/sh", ["-c", "exit 0"]), watcher=watcher)

        assert handle.wait_until_exit(WAIT_TIMEOUT)
        assert watcher.calls == ["prepare", "watch"]

    def test_failed_spawn_discards_token(self, tmp_path: Path):
        watcher = RecordingWatcher()
        descriptor = ProcessDescriptor(
            "/bin/sh", ["-c", "exit 0"], working_directory=tmp_path / "missing"
        )

        with pytest.raises(LaunchError):
            launch(descriptor, watcher=watcher)

        assert watcher.calls == ["prepare", "discard"]

    def test_validation_failure_touches_nothing(self, tmp_path: Path):
        watcher = RecordingWatcher()
        with pytest.raises(LaunchError):
            launch(ProcessDescriptor(tmp_path / "missing"), watcher=watcher)
        assert watcher.calls == []

    def test_token_ownership_moves_to_registration(self):
        """After launch the token holds nothing; the registration owns the watch end."""
        tokens: list[ExitToken] = []

        class Capture(RecordingWatcher):
            def prepare(self) -> ExitToken:
                token = super().prepare()
                tokens.append(token)
                return token

        handle = launch(ProcessDescriptor("/bin/sh", ["-c", "sleep 0.3"]), watcher=Capture())

        assert tokens[0].child_fd == -1
        assert tokens[0].watch_fd == -1
        assert handle.registration.watch_fd >= 0
        assert not os.get_inheritable(handle.registration.watch_fd)
        assert handle.wait_until_exit(WAIT_TIMEOUT)


class TestFailures:
    """Reactor-side failures still terminate the handle exactly once."""

    def test_read_failure_reports_unknown(self, recorder):
        reactor = TerminationReactor()

        def failing_read(fd: int) -> bool:
            raise OSError(errno.EIO, "simulated read failure")

        reactor._read_eof = failing_read
        handle = launch(ProcessDescriptor("/bin/sh", ["-c", "exit 3"]), watcher=reactor)

        assert handle.wait_until_exit(WAIT_TIMEOUT)
        assert handle.termination_reason is TerminationReason.UNKNOWN
        assert handle.termination_status == -1
        assert reactor.live_count == 0

        recorder.wait_for([handle], 1)
        time.sleep(0.1)
        assert recorder.for_handles([handle]) == [handle]

        if proc_state(os.getpid()) is not None:
            # Reaped in the background, so no zombie is left
            deadline = time.monotonic() + WAIT_TIMEOUT
            while proc_state(handle.pid) is not None and time.monotonic() < deadline:
                time.sleep(0.01)
            assert proc_state(handle.pid) is None

    def test_reactor_keeps_running_after_failure(self):
        reactor = TerminationReactor()
        failing_fds: set[int] = set()
        real_read = TerminationReactor._read_eof

        def flaky_read(fd: int) -> bool:
            if fd in failing_fds:
                raise OSError(errno.EIO, "simulated read failure")
            return real_read(fd)

        reactor._read_eof = flaky_read
        broken = launch(ProcessDescriptor("/bin/sh", ["-c", "sleep 0.3"]), watcher=reactor)
        failing_fds.add(broken.registration.watch_fd)
        healthy = launch(ProcessDescriptor("/bin/sh", ["-c", "sleep 0.3; exit 4"]), watcher=reactor)

        assert broken.wait_until_exit(WAIT_TIMEOUT)
        assert healthy.wait_until_exit(WAIT_TIMEOUT)
        assert broken.termination_reason is TerminationReason.UNKNOWN
        assert healthy.termination_reason is TerminationReason.EXIT
        assert healthy.termination_status == 4

    def test_reap_failure_reports_unknown(self, recorder):
        class EarlyReaper(TerminationReactor):
            """Reaps the child itself before handing it to the reactor."""

            def watch(self, token: ExitToken, handle: ProcessHandle) -> ReactorRegistration:
                os.waitpid(handle.pid, 0)
                return super().watch(token, handle)

        handle = launch(ProcessDescriptor("/bin/sh", ["-c", "exit 0"]), watcher=EarlyReaper())

        assert handle.wait_until_exit(WAIT_TIMEOUT)
        assert handle.termination_reason is TerminationReason.UNKNOWN
        assert handle.termination_status == -1
        assert handle.exit_code == -1

        recorder.wait_for([handle], 1)
        time.sleep(0.1)
        assert recorder.for_handles([handle]) == [handle]


class TestDeliveryThread:
    def test_handlers_share_one_delivery_thread(self):
        names: list[str] = []
        lock = threading.Lock()
        done = threading.Semaphore(0)

        def on_exit(handle: ProcessHandle) -> None:
            with lock:
                names.append(threading.current_thread().name)
            done.release()

        for _ in range(10):
            launch(ProcessDescriptor("/bin/sh", ["-c", "exit 0"], termination_handler=on_exit))
        for _ in range(10):
            assert done.acquire(timeout=WAIT_TIMEOUT)

        assert set(names) == {"taskproc-deliver"}
