"""Handlers for the external tools a run drives."""
from dataclasses import dataclass
from typing import Optional

from ..engine.schema import RunContext
from .base import (
    AppSandboxClient,
    GroupRegistry,
    HostFacts,
    MountTable,
    PackageManager,
    ServiceManager,
    SnapshotTool,
    SystemIdentity,
)
from .command import CommandResult, CommandRunner
from .dnf import DnfPackageManager
from .download import Downloader, DownloadError
from .files import FileStore
from .flatpak import FlatpakClient
from .linux import (
    LinuxFacts,
    LinuxGroupRegistry,
    LinuxIdentity,
    LinuxMountTable,
    SystemdServiceManager,
    detect_acting_user,
)
from .snapper import SnapperTool

__all__ = [
    "Collaborators",
    "create_collaborators",
    "PACKAGE_MANAGERS",
    "AppSandboxClient",
    "GroupRegistry",
    "HostFacts",
    "MountTable",
    "PackageManager",
    "ServiceManager",
    "SnapshotTool",
    "SystemIdentity",
    "CommandResult",
    "CommandRunner",
    "DnfPackageManager",
    "Downloader",
    "DownloadError",
    "FileStore",
    "FlatpakClient",
    "LinuxFacts",
    "LinuxGroupRegistry",
    "LinuxIdentity",
    "LinuxMountTable",
    "SystemdServiceManager",
    "SnapperTool",
    "detect_acting_user",
]


@dataclass
class Collaborators:
    """Everything the probe layer and executor talk to."""
    packages: PackageManager
    apps: AppSandboxClient
    snapshots: SnapshotTool
    identity: SystemIdentity
    mounts: MountTable
    groups: GroupRegistry
    services: ServiceManager
    facts: HostFacts
    files: FileStore
    downloader: Downloader
    runner: CommandRunner


# Package manager registry
PACKAGE_MANAGERS = {
    "dnf": DnfPackageManager,
}


def create_collaborators(
    context: RunContext,
    package_manager: str = "dnf",
    runner: Optional[CommandRunner] = None,
    download_retries: int = 3,
) -> Collaborators:
    """Factory function wiring the real Linux collaborators."""
    if package_manager not in PACKAGE_MANAGERS:
        raise ValueError(f"Unknown package manager: {package_manager}")

    runner = runner or CommandRunner()
    return Collaborators(
        packages=PACKAGE_MANAGERS[package_manager](context, runner),
        apps=FlatpakClient(context, runner),
        snapshots=SnapperTool(context, runner),
        identity=LinuxIdentity(context, runner),
        mounts=LinuxMountTable(context, runner),
        groups=LinuxGroupRegistry(context, runner),
        services=SystemdServiceManager(context, runner),
        facts=LinuxFacts(context, runner),
        files=FileStore(context),
        downloader=Downloader(retries=download_retries),
        runner=runner,
    )
