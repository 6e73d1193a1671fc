"""Run-level exclusive lock so two runs never reconcile one host at once."""
import fcntl
import logging
import os
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

from ..engine.errors import LockError

logger = logging.getLogger(__name__)

DEFAULT_LOCK_DIR = "/run/hostsync"


def lock_path(hostname: str, lock_dir: Optional[str] = None) -> Path:
    directory = lock_dir or os.environ.get("HOSTSYNC_LOCK_DIR", DEFAULT_LOCK_DIR)
    return Path(directory) / f"{hostname or 'localhost'}.lock"


@contextmanager
def host_lock(hostname: str, lock_dir: Optional[str] = None) -> Iterator[Path]:
    """Hold an exclusive, non-blocking flock for the duration of a run.

    Raises:
        LockError: Another process holds the lock
    """
    path = lock_path(hostname, lock_dir)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        try:
            fcntl.flock(f, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            raise LockError(f"Another hostsync run holds the lock ({path})")
        f.write(f"{os.getpid()}\n")
        f.flush()
        logger.debug(f"Acquired run lock {path}")
        try:
            yield path
        finally:
            fcntl.flock(f, fcntl.LOCK_UN)
            logger.debug(f"Released run lock {path}")
