"""Utility modules for logging, the run log and the run lock."""
from .lock import host_lock, lock_path
from .logging_config import (
    SUCCESS,
    perf_logger,
    setup_logging,
    timed_section,
)
from .run_log import ReportingSink, RunLog, RunLogEntry, read_run_log

__all__ = [
    "host_lock",
    "lock_path",
    "SUCCESS",
    "perf_logger",
    "setup_logging",
    "timed_section",
    "ReportingSink",
    "RunLog",
    "RunLogEntry",
    "read_run_log",
]
