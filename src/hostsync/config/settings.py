"""Runtime settings from the environment.

Environment variables:
- HOSTSYNC_LOG_LEVEL: Console log level (default: INFO)
- HOSTSYNC_LOG_FILE: Run log path (default: ~<user>/.hostsync/hostsync.log)
- HOSTSYNC_LOCK_DIR: Directory of the run lock (default: /run/hostsync)
- HOSTSYNC_PROFILE: Profile path, searched first
- HOSTSYNC_DOWNLOAD_RETRIES: Attempts per download (default: 3)
- HOSTSYNC_PACKAGE_MANAGER: Package manager handler (default: dnf)
"""
import logging
import os
from dataclasses import dataclass
from typing import Optional

from ..utils.lock import DEFAULT_LOCK_DIR

logger = logging.getLogger(__name__)

DEFAULT_DOWNLOAD_RETRIES = 3


@dataclass
class Settings:
    """Settings that are not part of the host profile."""
    log_level: str = "INFO"
    log_file: Optional[str] = None
    lock_dir: str = DEFAULT_LOCK_DIR
    profile: Optional[str] = None
    download_retries: int = DEFAULT_DOWNLOAD_RETRIES
    package_manager: str = "dnf"

    @classmethod
    def from_env(cls) -> "Settings":
        """Load settings from environment variables."""
        retries_str = os.environ.get("HOSTSYNC_DOWNLOAD_RETRIES", str(DEFAULT_DOWNLOAD_RETRIES))
        try:
            retries = max(1, int(retries_str))
        except ValueError:
            logger.warning(f"Ignoring invalid HOSTSYNC_DOWNLOAD_RETRIES: {retries_str}")
            retries = DEFAULT_DOWNLOAD_RETRIES

        return cls(
            log_level=os.environ.get("HOSTSYNC_LOG_LEVEL", "INFO").upper(),
            log_file=os.environ.get("HOSTSYNC_LOG_FILE") or None,
            lock_dir=os.environ.get("HOSTSYNC_LOCK_DIR", DEFAULT_LOCK_DIR),
            profile=os.environ.get("HOSTSYNC_PROFILE") or None,
            download_retries=retries,
            package_manager=os.environ.get("HOSTSYNC_PACKAGE_MANAGER", "dnf"),
        )
