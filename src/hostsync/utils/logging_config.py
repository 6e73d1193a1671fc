"""Logging configuration for hostsync.

Provides configurable logging with:
- An append-only run log file (the artifact ``hostsync log`` reads back),
  written only by the ``hostsync.run`` logger behind the ReportingSink
- Colored console output mirroring the run log line for line
- A debug log next to the run log for module diagnostics
- A SUCCESS level between INFO and WARNING
- Performance timing for each applied action

Environment Variables:
    HOSTSYNC_LOG_LEVEL: DEBUG, INFO, SUCCESS, WARNING, ERROR (default: INFO)
    HOSTSYNC_LOG_FILE: Path to log file (default: ~<user>/.hostsync/hostsync.log)

Usage:
    from hostsync.utils.logging_config import setup_logging, timed_section

    setup_logging(home="/home/alice")  # Call once at startup

    with timed_section("install", ref="package_set:tools"):
        ...
"""
import logging
import os
import pwd
import sys
import time
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Optional, TextIO

SUCCESS = 25
logging.addLevelName(SUCCESS, "SUCCESS")

LOG_FORMAT = "[%(asctime)s] [%(levelname)s] %(message)s"
PERF_FORMAT = "[%(asctime)s] [PERF] %(message)s"

# Run log: console and file, fed only by the ReportingSink
run_logger = logging.getLogger("hostsync.run")
# Performance logger - separate file, not part of the run log
perf_logger = logging.getLogger("hostsync.perf")
# Module diagnostics - debug file only
main_logger = logging.getLogger("hostsync")

DEBUG_LOG_NAME = "hostsync-debug.log"
PERF_LOG_NAME = "hostsync-perf.log"

RESET = "\033[0m"
LEVEL_COLORS = {
    logging.DEBUG: "\033[2m",
    logging.INFO: "\033[34m",
    SUCCESS: "\033[32m",
    logging.WARNING: "\033[33m",
    logging.ERROR: "\033[31m",
    logging.CRITICAL: "\033[1;31m",
}


def get_log_level() -> int:
    """Get console log level from environment."""
    level_str = os.environ.get("HOSTSYNC_LOG_LEVEL", "INFO").upper()
    if level_str == "SUCCESS":
        return SUCCESS
    return getattr(logging, level_str, logging.INFO)


def get_log_file(home: Optional[str] = None) -> Path:
    """Get log file path from environment."""
    base = Path(home) if home else Path.home()
    default_path = base / ".hostsync" / "hostsync.log"
    return Path(os.environ.get("HOSTSYNC_LOG_FILE", str(default_path)))


class IsoFormatter(logging.Formatter):
    """Formatter stamping records with a local ISO-8601 timestamp."""

    def formatTime(self, record: logging.LogRecord, datefmt: Optional[str] = None) -> str:
        return datetime.fromtimestamp(record.created).astimezone().isoformat(timespec="seconds")


class ColorFormatter(IsoFormatter):
    """Console formatter; same text as the file, wrapped in a level color."""

    def __init__(self, fmt: str, use_color: bool = True):
        super().__init__(fmt)
        self.use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        text = super().format(record)
        color = LEVEL_COLORS.get(record.levelno)
        if not self.use_color or color is None:
            return text
        return f"{color}{text}{RESET}"


def _reset_handlers(logger: logging.Logger) -> None:
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()


def _file_handler(path: Path, level: int, fmt: str) -> logging.FileHandler:
    handler = logging.FileHandler(path, mode="a", encoding="utf-8")
    handler.setLevel(level)
    handler.setFormatter(IsoFormatter(fmt))
    return handler


def _give_to(owner: str, paths: list[Path]) -> None:
    """Hand files created by a root run over to the acting user."""
    entry = pwd.getpwnam(owner)
    for path in paths:
        os.chown(path, entry.pw_uid, entry.pw_gid)


def setup_logging(
    level: Optional[int] = None,
    log_file: Optional[Path] = None,
    home: Optional[str] = None,
    stream: Optional[TextIO] = None,
    owner: Optional[str] = None,
) -> Path:
    """Configure logging for the application.

    Sets up:
    - Run log: console and append-mode file handlers on ``hostsync.run``,
      both at one level (INFO by default, respects HOSTSYNC_LOG_LEVEL)
    - Debug log next to the run log (DEBUG level - every module logger)
    - Performance logger writing next to the run log

    Calling it again replaces the handlers of the previous call.

    Args:
        level: Run log level
        log_file: Run log path (default: from the environment or ``home``)
        home: Home directory of the acting user
        stream: Console stream (default: stderr)
        owner: When running as root, files and the log directory created
            here are chowned to this user

    Returns:
        Path of the run log file
    """
    log_level = get_log_level() if level is None else level
    log_file = Path(log_file) if log_file else get_log_file(home)
    debug_log_file = log_file.parent / DEBUG_LOG_NAME
    perf_log_file = log_file.parent / PERF_LOG_NAME
    stream = stream or sys.stderr

    created = []
    if not log_file.parent.exists():
        log_file.parent.mkdir(parents=True)
        created.append(log_file.parent)
    created += [p for p in (log_file, debug_log_file, perf_log_file) if not p.exists()]

    console_handler = logging.StreamHandler(stream)
    console_handler.setLevel(log_level)
    console_handler.setFormatter(
        ColorFormatter(LOG_FORMAT, use_color=hasattr(stream, "isatty") and stream.isatty())
    )
    file_handler = _file_handler(log_file, log_level, LOG_FORMAT)
    debug_handler = _file_handler(debug_log_file, logging.DEBUG, LOG_FORMAT)
    perf_handler = _file_handler(perf_log_file, logging.DEBUG, PERF_FORMAT)

    if owner and created and os.geteuid() == 0:
        _give_to(owner, created)

    _reset_handlers(run_logger)
    run_logger.setLevel(logging.DEBUG)  # Capture all, handlers filter
    run_logger.addHandler(console_handler)
    run_logger.addHandler(file_handler)
    run_logger.addHandler(debug_handler)
    run_logger.propagate = False

    _reset_handlers(main_logger)
    main_logger.setLevel(logging.DEBUG)
    main_logger.addHandler(debug_handler)

    _reset_handlers(perf_logger)
    perf_logger.setLevel(logging.DEBUG)
    perf_logger.addHandler(perf_handler)
    perf_logger.propagate = False

    main_logger.debug(
        f"Logging initialized: level={logging.getLevelName(log_level)}, file={log_file}"
    )
    return log_file


@contextmanager
def timed_section(operation: str, ref: Optional[str] = None, **extra):
    """Context manager for timing one action.

    Args:
        operation: Step name (e.g. "install", "mount")
        ref: ``kind:identity`` of the resource
        **extra: Additional context to log

    Usage:
        with timed_section("mount", ref="mount:/mnt/games"):
            mounts.mount(...)
    """
    start = time.perf_counter()
    extra_str = " | ".join(f"{k}={v}" for k, v in extra.items()) if extra else ""

    try:
        yield
        elapsed = (time.perf_counter() - start) * 1000
        msg = f"{operation:16s} | {ref or 'N/A':40s} | {elapsed:10.2f}ms | OK"
        if extra_str:
            msg += f" | {extra_str}"
        perf_logger.debug(msg)
    except Exception as e:
        elapsed = (time.perf_counter() - start) * 1000
        msg = f"{operation:16s} | {ref or 'N/A':40s} | {elapsed:10.2f}ms | FAIL: {e}"
        if extra_str:
            msg += f" | {extra_str}"
        perf_logger.warning(msg)
        raise
