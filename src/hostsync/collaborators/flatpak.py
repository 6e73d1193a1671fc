"""Flatpak application sandbox handler (system installation)."""
import logging

from ..engine.errors import CollaboratorError
from .base import AppSandboxClient
from .command import CommandResult

logger = logging.getLogger(__name__)


class FlatpakClient(AppSandboxClient):
    """Manage flatpak remotes and applications."""

    def _columns(self, argv: list[str], what: str) -> set[str]:
        result = self.runner.run(argv)
        if not result.success:
            raise CollaboratorError(f"Cannot list {what}: {result.error}", result.command)
        return {line.strip() for line in result.output.splitlines() if line.strip()}

    def has_remote(self, name: str) -> bool:
        return name in self._columns(
            ["flatpak", "remotes", "--system", "--columns=name"], "flatpak remotes"
        )

    def add_remote(self, name: str, url: str) -> CommandResult:
        return self.runner.run(
            ["flatpak", "remote-add", "--system", "--if-not-exists", name, url]
        )

    def installed_apps(self) -> set[str]:
        return self._columns(
            ["flatpak", "list", "--app", "--columns=application"], "flatpak apps"
        )

    def install(self, app_ids: list[str], remote: str) -> CommandResult:
        return self.runner.run(
            ["flatpak", "install", "-y", "--noninteractive", "--system", remote] + list(app_ids)
        )

    def prune_unused(self) -> CommandResult:
        return self.runner.run(["flatpak", "uninstall", "--unused", "-y", "--noninteractive"])
