"""Abstract interfaces for the external tools the reconciler drives.

Query methods answer questions about the host and raise
``CollaboratorError`` when the underlying tool cannot answer. Mutating
methods return a ``CommandResult`` and report failure through it.
"""
import logging
from abc import ABC, abstractmethod
from typing import Optional

from ..engine.schema import RunContext
from .command import CommandResult, CommandRunner

logger = logging.getLogger(__name__)


class Collaborator(ABC):
    """Common state for every collaborator."""

    def __init__(self, context: RunContext, runner: Optional[CommandRunner] = None):
        self.context = context
        self.runner = runner or CommandRunner()


class PackageManager(Collaborator):
    """OS package manager (dnf on Fedora)."""

    # Queries
    @abstractmethod
    def is_installed(self, name: str) -> bool:
        """Check whether a package (or ``@group``) is installed."""
        pass

    def installed_subset(self, names: list[str]) -> set[str]:
        """Return the subset of ``names`` that is installed."""
        return {name for name in names if self.is_installed(name)}

    @abstractmethod
    def is_available(self, name: str) -> bool:
        """Check whether a package can be installed from enabled repos."""
        pass

    @abstractmethod
    def has_repository(self, repo_id: str) -> bool:
        """Check whether a repository id is configured."""
        pass

    @abstractmethod
    def has_repo_file(self, name: str) -> bool:
        """Check whether a repository definition file exists."""
        pass

    @abstractmethod
    def has_updates(self) -> bool:
        """Check whether package upgrades are pending."""
        pass

    # Mutations
    @abstractmethod
    def install(self, names: list[str], allow_erasing: bool = False) -> CommandResult:
        pass

    @abstractmethod
    def remove(self, names: list[str], keep_dependents: bool = False) -> CommandResult:
        """Remove packages.

        With ``keep_dependents`` only the named packages go, as in one half
        of a swap; otherwise dependent packages are removed too.
        """
        pass

    @abstractmethod
    def add_repository(
        self,
        url: str,
        method: str = "repofile",
        gpg_key: Optional[str] = None,
    ) -> CommandResult:
        pass

    @abstractmethod
    def remove_repository(self, name: str) -> CommandResult:
        pass

    @abstractmethod
    def upgrade_all(self, refresh: bool = True) -> CommandResult:
        pass

    @abstractmethod
    def clean_cache(self) -> CommandResult:
        pass


class AppSandboxClient(Collaborator):
    """Sandboxed application distribution client (flatpak)."""

    @abstractmethod
    def has_remote(self, name: str) -> bool:
        pass

    @abstractmethod
    def add_remote(self, name: str, url: str) -> CommandResult:
        pass

    @abstractmethod
    def installed_apps(self) -> set[str]:
        pass

    @abstractmethod
    def install(self, app_ids: list[str], remote: str) -> CommandResult:
        pass

    @abstractmethod
    def prune_unused(self) -> CommandResult:
        pass


class SnapshotTool(Collaborator):
    """Filesystem snapshot tool (snapper)."""

    @abstractmethod
    def config_exists(self, label: str) -> bool:
        pass

    @abstractmethod
    def create_config(self, label: str, path: str) -> CommandResult:
        pass

    @abstractmethod
    def create_snapshot(self, label: str, description: str) -> CommandResult:
        pass


class SystemIdentity(Collaborator):
    """Users, host name and login shells."""

    @abstractmethod
    def current_user(self) -> str:
        """The human user the run acts for (not root)."""
        pass

    @abstractmethod
    def home_dir(self, user: str) -> str:
        pass

    @abstractmethod
    def current_hostname(self) -> str:
        pass

    @abstractmethod
    def set_hostname(self, name: str) -> CommandResult:
        pass

    @abstractmethod
    def login_shell(self, user: str) -> str:
        pass

    @abstractmethod
    def resolve_shell(self, shell: str) -> Optional[str]:
        """Resolve a shell name like ``zsh`` to its absolute path."""
        pass

    @abstractmethod
    def set_login_shell(self, user: str, shell_path: str) -> CommandResult:
        pass


class MountTable(Collaborator):
    """Mounted filesystems and /etc/fstab."""

    @abstractmethod
    def is_mounted(self, path: str) -> bool:
        pass

    @abstractmethod
    def device_exists(self, device: str) -> bool:
        """Check a device spec such as ``UUID=...`` is attached."""
        pass

    @abstractmethod
    def mount(self, device: str, path: str, fstype: str, options: str) -> CommandResult:
        pass

    @abstractmethod
    def fstab_has_entry(self, device: str, path: str) -> bool:
        pass

    @abstractmethod
    def append_fstab_entry(self, entry: str) -> bool:
        """Append a line to fstab.

        Returns:
            True if appended, False if an entry was already present
        """
        pass


class GroupRegistry(Collaborator):
    """System groups and memberships."""

    @abstractmethod
    def group_exists(self, name: str) -> bool:
        pass

    @abstractmethod
    def user_in_group(self, user: str, name: str) -> bool:
        pass

    @abstractmethod
    def add_user_to_group(self, user: str, name: str) -> CommandResult:
        pass


class ServiceManager(Collaborator):
    """Service unit state (systemd)."""

    @abstractmethod
    def is_enabled(self, unit: str, scope: str = "system") -> bool:
        pass

    @abstractmethod
    def is_active(self, unit: str, scope: str = "system") -> bool:
        pass

    @abstractmethod
    def enable(self, unit: str, now: bool = True, scope: str = "system") -> CommandResult:
        pass


class HostFacts(Collaborator):
    """Hardware and environment facts used by preconditions."""

    @abstractmethod
    def has_amd_gpu(self) -> bool:
        pass

    @abstractmethod
    def has_intel_cpu(self) -> bool:
        pass

    @abstractmethod
    def root_fstype(self) -> str:
        pass

    @abstractmethod
    def is_mountpoint(self, path: str) -> bool:
        pass

    @abstractmethod
    def user_unit_active(self, unit: str) -> bool:
        pass

    def command_exists(self, name: str) -> bool:
        return self.runner.which(name) is not None
