"""Snapper snapshot handler."""
import logging

from ..engine.errors import CollaboratorError
from .base import SnapshotTool
from .command import CommandResult

logger = logging.getLogger(__name__)


class SnapperTool(SnapshotTool):
    """Create snapper configs and snapshots."""

    def config_exists(self, label: str) -> bool:
        result = self.runner.run(["snapper", "-c", label, "list"])
        if result.returncode == 127:
            raise CollaboratorError("snapper is not installed", result.command)
        return result.success

    def create_config(self, label: str, path: str) -> CommandResult:
        return self.runner.run(["snapper", "-c", label, "create-config", path])

    def create_snapshot(self, label: str, description: str) -> CommandResult:
        return self.runner.run(["snapper", "-c", label, "create", "-d", description])
