"""Command line: run one command through the launcher.

Usage:
    python -m taskproc [--cwd DIR] [--env KEY=VALUE ...] [--clean-env]
                       [--new-group] [--timeout SECONDS] -- EXECUTABLE [ARGS...]

Exit code is the child's exit code, 128 + signal number when the child was
killed by a signal, 127 when the executable cannot be found and 126 for
other launch failures.
"""

from __future__ import annotations

import argparse
import logging
import os
import shutil
import sys

from .config import Config, get_config
from .errors import ErrorKind, LaunchError
from .launcher import launch
from .process import ProcessDescriptor, ProcessHandle, TerminationReason

__all__ = ["main", "configure_logging"]

logger = logging.getLogger(__name__)

EXIT_NOT_FOUND = 127
EXIT_LAUNCH_FAILED = 126
DEFAULT_TERM_GRACE = 2.0


def configure_logging(config: Config) -> None:
    """Configure handlers: temp-file DEBUG log or stderr INFO log."""
    log_handlers: list[logging.Handler] = []

    if config.log_debug and config.log_file:
        file_handler = logging.FileHandler(config.log_file, encoding="utf-8")
        file_handler.setFormatter(
            logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")
        )
        log_handlers.append(file_handler)
        log_level = logging.DEBUG
    else:
        stderr_handler = logging.StreamHandler(sys.stderr)
        stderr_handler.setFormatter(
            logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")
        )
        log_handlers.append(stderr_handler)
        log_level = logging.INFO

    # Root logger (third-party libraries) stays at WARNING
    logging.basicConfig(level=logging.WARNING, handlers=log_handlers)
    logging.getLogger("taskproc").setLevel(log_level)


def _parse_env(pairs: list[str], clean: bool) -> dict[str, str] | None:
    if not pairs and not clean:
        return None
    env = {} if clean else dict(os.environ)
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise argparse.ArgumentTypeError(f"expected KEY=VALUE, got {pair!r}")
        env[key] = value
    return env


def _resolve_executable(name: str) -> str:
    if os.sep in name:
        return name
    return shutil.which(name) or name


def _exit_code_for(handle: ProcessHandle) -> int:
    reason = handle.termination_reason
    if reason is TerminationReason.UNCAUGHT_SIGNAL:
        return 128 + handle.termination_status
    if reason is TerminationReason.UNKNOWN:
        return 1
    return handle.termination_status


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="taskproc",
        description="Launch a command and report how it terminated.",
    )
    parser.add_argument("--cwd", default=None, help="working directory for the command")
    parser.add_argument(
        "--env",
        action="append",
        default=[],
        metavar="KEY=VALUE",
        help="set an environment variable (repeatable)",
    )
    parser.add_argument(
        "--clean-env",
        action="store_true",
        help="start from an empty environment",
    )
    parser.add_argument(
        "--new-group",
        action="store_true",
        help="run the command as the leader of a new process group",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=None,
        help="terminate the command after this many seconds",
    )
    parser.add_argument("command", nargs=argparse.REMAINDER, help="executable and arguments")
    return parser


def main(argv: list[str] | None = None) -> int:
    """Entry point."""
    configure_logging(get_config())

    parser = build_parser()
    args = parser.parse_args(argv)

    command = list(args.command)
    if command and command[0] == "--":
        command = command[1:]
    if not command:
        parser.error("no command given")

    try:
        environment = _parse_env(args.env, args.clean_env)
    except argparse.ArgumentTypeError as e:
        parser.error(str(e))

    descriptor = ProcessDescriptor(
        executable=_resolve_executable(command[0]),
        arguments=command[1:],
        environment=environment,
        working_directory=args.cwd,
        process_group=0 if args.new_group else None,
    )

    try:
        handle = launch(descriptor)
    except LaunchError as e:
        print(f"taskproc: {command[0]}: {e}", file=sys.stderr)
        return EXIT_NOT_FOUND if e.kind is ErrorKind.NOT_FOUND else EXIT_LAUNCH_FAILED

    if not handle.wait_until_exit(args.timeout):
        logger.info(f"Timeout after {args.timeout}s, terminating pid={handle.pid}")
        handle.terminate()
        if not handle.wait_until_exit(DEFAULT_TERM_GRACE):
            logger.warning(f"pid={handle.pid} ignored SIGTERM, killing")
            handle.kill()
            handle.wait_until_exit()

    return _exit_code_for(handle)
