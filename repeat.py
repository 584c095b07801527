#!/usr/bin/env python3
"""
repeat.py

Run a command over and over, forever or until a stop condition fires,
optionally paced on a fixed interval.
"""

from __future__ import annotations

import argparse
import logging
import math
import shlex
import signal
import subprocess
import sys
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, NoReturn, Optional, Sequence, Tuple, Union

try:
    import yaml
except ImportError:  # pragma: no cover - dependency check at runtime
    yaml = None


__version__ = "1.0.0"

PROG = "repeat"
LOG_FORMAT = "%(asctime)s %(levelname)s %(message)s"
NS_PER_SEC = 1_000_000_000
INTERVAL_UNITS = {"d": 86400, "h": 3600, "m": 60, "s": 1}
INTERRUPT_SIGNALS = (signal.SIGINT, signal.SIGQUIT)
CONFIG_KEYS = {"interval", "times", "untilerr", "untilsuccess", "precise", "noshell", "debug", "log_file"}

DESCRIPTION = "Repeatedly call COMMAND forever, or until specified option."
EXAMPLES = """\
Examples:
  repeat echo Hello World              Prints out Hello World forever
  repeat -t 5 echo Hello World         Prints out Hello World five times
  repeat -i 1 echo Hello World         Prints out Hello World with a second
                                       between each invocation
  repeat -i 1 -e -p -t 5 echo Hello    Prints out Hello five times, once a
                                       second, stopping if echo returns an error

In shell mode the command and its arguments are joined with single spaces
and handed to /bin/sh -c without any quoting.
"""

Command = Union[Tuple[str, ...], str]

logger = logging.getLogger(PROG)


class RepeatError(Exception):
    """Base error for repeat."""


class UsageError(RepeatError):
    """Malformed or missing command-line arguments."""


class ConfigError(UsageError):
    """Defaults file validation error."""


class FatalSystemError(RepeatError):
    """The process table or the clock failed us; no schedule can be kept."""


class ExitRequest(Exception):
    """Help or version output was requested; nothing should be run."""

    def __init__(self, text: str) -> None:
        super().__init__(text)
        self.text = text


def setup_logging(debug: bool = False, log_file: Optional[Path] = None) -> logging.Logger:
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.setLevel(logging.DEBUG if debug else logging.WARNING)
    formatter = logging.Formatter(LOG_FORMAT)
    # stdout belongs to the child.
    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(formatter)
    logger.addHandler(stream_handler)
    if log_file is not None:
        try:
            file_handler = logging.FileHandler(log_file, encoding="utf-8")
        except OSError as exc:
            raise ConfigError(f"Error: Cannot open log file {log_file}: {exc}") from exc
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)
    return logger


@dataclass(frozen=True)
class RunConfig:
    command: Command
    interval: timedelta = timedelta(0)
    times: int = 0
    until_error: bool = False
    until_success: bool = False
    precise: bool = False
    no_shell: bool = False
    debug: bool = False
    log_file: Optional[Path] = None

    @property
    def bounded(self) -> bool:
        return self.times > 0


@dataclass
class ScheduleState:
    remaining_runs: int
    next_wake_ns: int = 0


@dataclass(frozen=True)
class Exited:
    code: int

    @property
    def exit_code(self) -> int:
        return self.code


@dataclass(frozen=True)
class Signaled:
    signum: int

    @property
    def exit_code(self) -> int:
        return 128 + self.signum

    @property
    def is_interrupt(self) -> bool:
        return self.signum in INTERRUPT_SIGNALS

    @property
    def name(self) -> str:
        try:
            return signal.Signals(self.signum).name
        except ValueError:
            return f"signal {self.signum}"


RunOutcome = Union[Exited, Signaled]


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


class _ArgumentParser(argparse.ArgumentParser):
    def error(self, message: str) -> NoReturn:
        raise UsageError(message)


def require_yaml_dependency() -> None:
    if yaml is None:
        raise ConfigError("Missing required dependency: PyYAML. Install with: pip install PyYAML")


def parse_interval(text: str) -> timedelta:
    """Parse ``"1.5"``, ``"30s"``, ``"1.5m"``, ``"2h"`` or ``"1d"`` into a timedelta."""

    value = text.strip()
    multiplier = 1
    if value and value[-1].isalpha():
        unit = value[-1]
        if unit not in INTERVAL_UNITS:
            raise UsageError(f'Bad unit for interval "{text}" - must be one of d, h, m, or s.')
        multiplier = INTERVAL_UNITS[unit]
        value = value[:-1]
    try:
        amount = float(value)
    except ValueError as exc:
        raise UsageError(f'Invalid interval "{text}".') from exc
    if not math.isfinite(amount) or amount < 0:
        raise UsageError(f'Interval must be a non-negative number, got "{text}".')
    try:
        interval = timedelta(seconds=amount * multiplier)
    except OverflowError as exc:
        raise UsageError(f'Interval "{text}" is too large.') from exc
    if amount > 0 and not interval:
        raise UsageError(f'Interval "{text}" is shorter than one microsecond.')
    return interval


def build_command(args: Sequence[str], no_shell: bool) -> Command:
    if no_shell:
        return tuple(args)
    return " ".join(args)


def describe_command(command: Command) -> str:
    if isinstance(command, str):
        return command
    return shlex.join(command)


def ensure_bool(value: Any, field_path: str) -> bool:
    if not isinstance(value, bool):
        raise ConfigError(f"Error: {field_path} must be true or false.")
    return value


def ensure_int(value: Any, field_path: str, minimum: int = 0) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"Error: {field_path} must be an integer.")
    if value < minimum:
        raise ConfigError(f"Error: {field_path} must be >= {minimum}.")
    return value


def ensure_str(value: Any, field_path: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"Error: {field_path} must be a non-empty string.")
    return value.strip()


def ensure_interval(value: Any, field_path: str) -> timedelta:
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        raise ConfigError(f"Error: {field_path} must be a number of seconds or a duration like 5m.")
    try:
        return parse_interval(str(value))
    except UsageError as exc:
        raise ConfigError(f"Error: {field_path}: {exc}") from exc


def _read_defaults_file(config_path: Path) -> Dict[str, Any]:
    require_yaml_dependency()
    try:
        with config_path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle)
    except FileNotFoundError as exc:
        raise ConfigError(f"Error: Config file not found: {config_path}") from exc
    except OSError as exc:
        raise ConfigError(f"Error: Cannot read {config_path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ConfigError(f"Error: {config_path} is not valid YAML: {exc}") from exc

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Error: {config_path} must hold a mapping of option defaults.")
    return data


def load_defaults(config_path: Path) -> Dict[str, Any]:
    """Read option defaults from a YAML file.

    Keys mirror the long option names. Relative ``log_file`` paths are
    resolved against the directory holding the file.
    """

    payload = _read_defaults_file(config_path)
    unknown = sorted(str(key) for key in payload if key not in CONFIG_KEYS)
    if unknown:
        raise ConfigError(f"Error: Unknown key(s) in {config_path}: {', '.join(unknown)}")

    defaults: Dict[str, Any] = {}
    if payload.get("interval") is not None:
        defaults["interval"] = ensure_interval(payload["interval"], "interval")
    if payload.get("times") is not None:
        defaults["times"] = ensure_int(payload["times"], "times")
    for key in ("untilerr", "untilsuccess", "precise", "noshell", "debug"):
        if payload.get(key) is not None:
            defaults[key] = ensure_bool(payload[key], key)
    if payload.get("log_file") is not None:
        log_file = Path(ensure_str(payload["log_file"], "log_file")).expanduser()
        if not log_file.is_absolute():
            log_file = config_path.parent / log_file
        defaults["log_file"] = log_file
    return defaults


def build_parser() -> argparse.ArgumentParser:
    parser = _ArgumentParser(
        prog=PROG,
        description=DESCRIPTION,
        epilog=EXAMPLES,
        formatter_class=argparse.RawDescriptionHelpFormatter,
        add_help=False,
    )
    parser.add_argument(
        "-i",
        "--interval",
        metavar="DURATION",
        help="interval between invocations, in seconds or with a d/h/m/s suffix",
    )
    parser.add_argument(
        "-t",
        "--times",
        metavar="NUM",
        type=int,
        help="execute this many times, then stop",
    )
    parser.add_argument(
        "-e",
        "--untilerr",
        action="store_true",
        default=None,
        help="stop repeating when the command's exit code is non-zero",
    )
    parser.add_argument(
        "-s",
        "--untilsuccess",
        action="store_true",
        default=None,
        help="stop repeating when the command's exit code is zero",
    )
    parser.add_argument(
        "-p",
        "--precise",
        action="store_true",
        default=None,
        help="run the command at fixed intervals instead of waiting the interval between runs",
    )
    parser.add_argument(
        "-x",
        "--noshell",
        action="store_true",
        default=None,
        help='run the command directly instead of via "sh -c"',
    )
    parser.add_argument("-c", "--config", metavar="PATH", help="YAML file with option defaults")
    parser.add_argument("--log-file", metavar="PATH", help="also write diagnostics to this file")
    parser.add_argument("-d", "--debug", action="store_true", default=None, help="print debug diagnostics")
    parser.add_argument("-h", "--help", action="store_true", help="display usage and exit")
    parser.add_argument("-v", "--version", action="store_true", help="display version info and exit")
    parser.add_argument("command", nargs=argparse.REMAINDER, help="command to run, with its arguments")
    return parser


def _pick(cli_value: Any, defaults: Dict[str, Any], key: str, fallback: Any) -> Any:
    if cli_value is not None:
        return cli_value
    return defaults.get(key, fallback)


def resolve_config(argv: Optional[Sequence[str]] = None) -> RunConfig:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.help:
        raise ExitRequest(parser.format_help())
    if args.version:
        raise ExitRequest(f"{PROG} {__version__}\n")

    defaults = load_defaults(Path(args.config).expanduser().resolve()) if args.config else {}

    command_args: List[str] = list(args.command)
    if command_args and command_args[0] == "--":
        command_args = command_args[1:]
    if not command_args:
        raise UsageError("a command to repeat is required")

    if args.times is not None and args.times < 0:
        raise UsageError("--times must be >= 0")
    interval = parse_interval(args.interval) if args.interval is not None else defaults.get("interval", timedelta(0))
    no_shell = bool(_pick(args.noshell, defaults, "noshell", False))
    log_file = Path(args.log_file) if args.log_file else defaults.get("log_file")

    return RunConfig(
        command=build_command(command_args, no_shell),
        interval=interval,
        times=_pick(args.times, defaults, "times", 0),
        until_error=bool(_pick(args.untilerr, defaults, "untilerr", False)),
        until_success=bool(_pick(args.untilsuccess, defaults, "untilsuccess", False)),
        precise=bool(_pick(args.precise, defaults, "precise", False)),
        no_shell=no_shell,
        debug=bool(_pick(args.debug, defaults, "debug", False)),
        log_file=log_file,
    )


def log_run_config(config: RunConfig) -> None:
    logger.debug("times = %s", config.times)
    logger.debug("interval = %s", config.interval)
    logger.debug("precise = %s", config.precise)
    logger.debug("until_error = %s", config.until_error)
    logger.debug("until_success = %s", config.until_success)
    logger.debug("no_shell = %s", config.no_shell)
    logger.debug("command = %s", describe_command(config.command))


# ---------------------------------------------------------------------------
# Execution
# ---------------------------------------------------------------------------


def _defer_interrupt(signum: int, frame: Any) -> None:
    logger.debug("Received %s while the command is running.", signal.Signals(signum).name)


@contextmanager
def interrupts_deferred() -> Iterator[None]:
    """Keep SIGINT/SIGQUIT from killing us while a child runs.

    The child still receives the terminal's signal (handlers are reset on
    exec), and we see it as the child's termination signal.
    """

    if threading.current_thread() is not threading.main_thread():
        yield
        return
    previous = {signum: signal.signal(signum, _defer_interrupt) for signum in INTERRUPT_SIGNALS}
    try:
        yield
    finally:
        for signum, handler in previous.items():
            signal.signal(signum, handler if handler is not None else signal.SIG_DFL)


def outcome_from_returncode(returncode: int) -> RunOutcome:
    if returncode < 0:
        return Signaled(-returncode)
    return Exited(returncode)


def launch(command: Command) -> RunOutcome:
    shell = isinstance(command, str)
    with interrupts_deferred():
        try:
            process = subprocess.Popen(command, shell=shell)
        except OSError as exc:
            raise FatalSystemError(f"Couldn't run command: {exc}") from exc
        # No pipes to close, so no context manager: its __exit__ would wait again.
        try:
            returncode = process.wait()
        except OSError as exc:
            raise FatalSystemError(f"Fatal error waiting on child: {exc}") from exc
    return outcome_from_returncode(returncode)


def classify_outcome(outcome: RunOutcome, config: RunConfig, state: ScheduleState) -> Optional[int]:
    """Return the exit code to stop with, or None to keep going."""

    if isinstance(outcome, Signaled) and outcome.is_interrupt:
        logger.info("Command was interrupted by %s; stopping.", outcome.name)
        return 0
    code = outcome.exit_code
    if code != 0 and config.until_error:
        logger.info("Command exited with status %s; stopping (--untilerr).", code)
        return code
    if code == 0 and config.until_success:
        logger.info("Command succeeded; stopping (--untilsuccess).")
        return 0
    if config.bounded:
        state.remaining_runs -= 1
        if state.remaining_runs == 0:
            logger.info("Ran %s time(s); stopping with status %s.", config.times, code)
            return code
    return None


def _interval_ns(interval: timedelta) -> int:
    return (interval // timedelta(microseconds=1)) * 1000


class Scheduler:
    """Drive the repeat loop for one :class:`RunConfig`.

    ``clock`` returns monotonic nanoseconds, ``sleep`` takes seconds and
    ``launcher`` runs one command to completion; all three are swappable so
    the loop can be driven without real processes or wall time.

    :func:`time.sleep` already resumes after EINTR on its own, so the
    ``InterruptedError`` retry in :meth:`sleep_until` only comes into play
    with a ``sleep`` replacement that surfaces interruptions.
    """

    def __init__(
        self,
        config: RunConfig,
        clock: Callable[[], int] = time.monotonic_ns,
        sleep: Callable[[float], None] = time.sleep,
        launcher: Callable[[Command], RunOutcome] = launch,
    ) -> None:
        self.config = config
        self._clock = clock
        self._sleep = sleep
        self._launcher = launcher

    def now(self) -> int:
        try:
            return self._clock()
        except OSError as exc:
            raise FatalSystemError(f"Fatal error getting time: {exc}") from exc

    def sleep_until(self, deadline_ns: int) -> None:
        while True:
            remaining = deadline_ns - self.now()
            if remaining <= 0:
                return
            try:
                self._sleep(remaining / NS_PER_SEC)
            except InterruptedError:
                continue

    def run(self) -> int:
        config = self.config
        interval_ns = _interval_ns(config.interval)
        state = ScheduleState(remaining_runs=config.times)
        if config.precise:
            state.next_wake_ns = self.now()

        iteration = 0
        while True:
            iteration += 1
            # Fixed before launch so a slow run cannot push the schedule back.
            if config.precise:
                state.next_wake_ns += interval_ns

            logger.debug("Launching run %s: %s", iteration, describe_command(config.command))
            outcome = self._launcher(config.command)
            logger.debug("Run %s finished: %s", iteration, outcome)

            exit_code = classify_outcome(outcome, config, state)
            if exit_code is not None:
                return exit_code

            if interval_ns:
                if not config.precise:
                    state.next_wake_ns = self.now() + interval_ns
                logger.debug("Sleeping until %.3f", state.next_wake_ns / NS_PER_SEC)
                self.sleep_until(state.next_wake_ns)


def run(config: RunConfig) -> int:
    return Scheduler(config).run()


def main(argv: Optional[List[str]] = None) -> int:
    try:
        config = resolve_config(argv)
    except ExitRequest as request:
        sys.stdout.write(request.text)
        return 0
    except UsageError as exc:
        sys.stderr.write(build_parser().format_usage())
        sys.stderr.write(f"{PROG}: error: {exc}\n")
        return 1

    try:
        setup_logging(debug=config.debug, log_file=config.log_file)
        log_run_config(config)
        return run(config)
    except UsageError as exc:
        sys.stderr.write(f"{PROG}: error: {exc}\n")
        return 1
    except FatalSystemError as exc:
        logger.error(str(exc))
        return 1
    except KeyboardInterrupt:
        logger.info("Interrupted by user.")
        return 130
    except Exception as exc:  # pragma: no cover - defensive
        logger.exception("Unexpected error: %s", exc)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
