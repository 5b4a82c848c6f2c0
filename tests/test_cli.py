"""Command line tests."""

from __future__ import annotations

import signal
from pathlib import Path

import pytest

from conftest import which_or_skip
from taskproc.cli import EXIT_LAUNCH_FAILED, EXIT_NOT_FOUND, _parse_env, build_parser, main


class TestMain:
    def test_exit_code_passthrough(self):
        assert main(["--", "/bin/sh", "-c", "exit 3"]) == 3

    def test_success(self):
        assert main(["--", "/bin/sh", "-c", "exit 0"]) == 0

    def test_path_lookup(self):
        which_or_skip("/bin/sh")
        assert main(["--", "sh", "-c", "exit 4"]) == 4

    def test_missing_command(self, tmp_path: Path, capsys):
        missing = str(tmp_path / "no-such-command")
        assert main(["--", missing]) == EXIT_NOT_FOUND
        assert "no-such-command" in capsys.readouterr().err

    def test_not_executable(self, tmp_path: Path):
        script = tmp_path / "script.sh"
        script.write_text("#!/bin/sh\nexit 0\n")
        script.chmod(0o644)
        assert main(["--", str(script)]) == EXIT_LAUNCH_FAILED

    def test_signalled_child(self):
        assert main(["--", "/bin/sh", "-c", "kill -TERM $$"]) == 128 + signal.SIGTERM

    def test_timeout_terminates(self):
        sleep = which_or_skip("/bin/sleep")
        assert main(["--timeout", "0.2", "--", sleep, "30"]) == 128 + signal.SIGTERM

    def test_working_directory(self, tmp_path: Path):
        (tmp_path / "marker").write_text("x")
        assert main(["--cwd", str(tmp_path), "--", "/bin/sh", "-c", "test -f marker"]) == 0

    def test_env(self):
        code = main(["--env", "TASKPROC_CLI=7", "--", "/bin/sh", "-c", 'exit "$TASKPROC_CLI"'])
        assert code == 7

    def test_clean_env(self, monkeypatch):
        monkeypatch.setenv("TASKPROC_CLI_LEAK", "1")
        code = main(
            ["--clean-env", "--", "/bin/sh", "-c", 'test -z "$TASKPROC_CLI_LEAK"']
        )
        assert code == 0

    def test_no_command(self):
        with pytest.raises(SystemExit) as exc_info:
            main([])
        assert exc_info.value.code == 2


class TestParsing:
    def test_parse_env_default_inherits(self):
        assert _parse_env([], clean=False) is None

    def test_parse_env_clean(self):
        assert _parse_env(["A=1", "B=x=y"], clean=True) == {"A": "1", "B": "x=y"}

    def test_parse_env_rejects_bad_pair(self):
        import argparse

        with pytest.raises(argparse.ArgumentTypeError):
            _parse_env(["NOVALUE"], clean=True)

    def test_options_after_separator_belong_to_command(self):
        args = build_parser().parse_args(["--new-group", "--", "/bin/ls", "--timeout", "1"])
        assert args.new_group is True
        assert args.timeout is None
        assert args.command[-2:] == ["--timeout", "1"]
