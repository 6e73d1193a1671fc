"""Run log and reporting sink.

The ReportingSink is the only writer of a run's log. Every entry is kept
in an in-memory RunLog (append-only, frozen at run end) and emitted
through the ``hostsync.run`` logger, whose handlers write the on-disk
artifact and the console.
"""
import logging
import os
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from ..engine.errors import RunLogClosedError
from ..engine.schema import RunSummary
from .logging_config import SUCCESS, get_log_file, run_logger

LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "SUCCESS": SUCCESS,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
}

_LINE = re.compile(r"^\[(?P<timestamp>[^\]]+)\] \[(?P<level>[A-Z]+)\] (?P<message>.*)$")


@dataclass
class RunLogEntry:
    """One timestamped, leveled line of the run log."""
    timestamp: datetime
    level: str
    message: str
    ref: Optional[str] = None

    @property
    def levelno(self) -> int:
        return LEVELS.get(self.level, logging.INFO)

    def format(self) -> str:
        return f"[{self.timestamp.isoformat(timespec='seconds')}] [{self.level}] {self.message}"


@dataclass
class RunLog:
    """Ordered entries of one run. Closed logs reject new entries."""
    entries: list[RunLogEntry] = field(default_factory=list)
    closed: bool = False

    def append(self, entry: RunLogEntry) -> None:
        if self.closed:
            raise RunLogClosedError(f"Run log is closed; cannot append: {entry.message}")
        self.entries.append(entry)

    def close(self) -> None:
        self.closed = True

    def at_level(self, level: str) -> list[RunLogEntry]:
        return [e for e in self.entries if e.level == level]

    def for_ref(self, ref: str) -> list[RunLogEntry]:
        return [e for e in self.entries if e.ref == ref]


class ReportingSink:
    """Record probes, decisions and action outcomes for one run.

    Usage:
        sink = ReportingSink()
        sink.info("Starting run")
        sink.success("install package_set:tools [git]", ref="package_set:tools")
        sink.emit_summary(summary)
        sink.close()
    """

    def __init__(self, run_log: Optional[RunLog] = None, logger: Optional[logging.Logger] = None):
        self.run_log = run_log or RunLog()
        self.logger = logger or run_logger

    def _emit(self, level: str, message: str, ref: Optional[str]) -> RunLogEntry:
        entry = RunLogEntry(
            timestamp=datetime.now().astimezone(),
            level=level,
            message=message,
            ref=ref,
        )
        self.run_log.append(entry)
        self.logger.log(LEVELS[level], message)
        return entry

    def debug(self, message: str, ref: Optional[str] = None) -> RunLogEntry:
        return self._emit("DEBUG", message, ref)

    def info(self, message: str, ref: Optional[str] = None) -> RunLogEntry:
        return self._emit("INFO", message, ref)

    def success(self, message: str, ref: Optional[str] = None) -> RunLogEntry:
        return self._emit("SUCCESS", message, ref)

    def warning(self, message: str, ref: Optional[str] = None) -> RunLogEntry:
        return self._emit("WARNING", message, ref)

    def error(self, message: str, ref: Optional[str] = None) -> RunLogEntry:
        return self._emit("ERROR", message, ref)

    def emit_summary(self, summary: RunSummary) -> None:
        """Write the end-of-run totals and itemize every failure."""
        self.info(
            f"Summary: {summary.attempted} attempted, {summary.succeeded} succeeded, "
            f"{summary.skipped} skipped, {summary.failed} failed, "
            f"{summary.not_attempted} not attempted"
        )
        for failure in summary.failures:
            self.error(f"Failed {failure.ref} ({failure.step}): {failure.reason}", ref=failure.ref)

        if summary.aborted:
            self.error(f"Run aborted: {summary.abort_reason}")
        elif summary.failed:
            self.warning(f"Run finished with {summary.failed} failure(s)")
        else:
            self.success("Run finished: host converged")

    def close(self) -> None:
        self.run_log.close()


def _parse_timestamp(text: str) -> Optional[datetime]:
    try:
        return datetime.fromisoformat(text)
    except ValueError:
        return None


def read_run_log(
    log_file: Optional[str] = None,
    level: Optional[str] = None,
    limit: int = 100,
) -> list[RunLogEntry]:
    """Read recent entries from a run log file.

    Lines that do not start a new entry are continuation lines of the
    previous message.

    Args:
        log_file: Path to the log. Defaults to ~/.hostsync/hostsync.log
        level: Only entries at or above this level
        limit: Maximum number of entries to return

    Returns:
        List of RunLogEntry, most recent first
    """
    path = log_file or str(get_log_file())
    if not os.path.exists(path):
        return []

    minimum = LEVELS.get(level.upper(), logging.DEBUG) if level else logging.DEBUG

    entries: list[RunLogEntry] = []
    with open(path, "r", encoding="utf-8", errors="replace") as f:
        for raw in f:
            line = raw.rstrip("\n")
            match = _LINE.match(line)
            timestamp = _parse_timestamp(match.group("timestamp")) if match else None
            if match and timestamp and match.group("level") in LEVELS:
                entries.append(RunLogEntry(
                    timestamp=timestamp,
                    level=match.group("level"),
                    message=match.group("message"),
                ))
            elif entries and line:
                entries[-1].message += "\n" + line

    entries = [e for e in entries if e.levelno >= minimum]
    return list(reversed(entries[-limit:])) if limit > 0 else []
