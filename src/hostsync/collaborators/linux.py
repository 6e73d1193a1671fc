"""Linux system handlers: identity, mounts, groups, systemd units and facts."""
import getpass
import logging
import os
import pwd
import socket
from pathlib import Path
from typing import Optional

from ..engine.errors import CollaboratorError
from ..engine.schema import RunContext
from .base import (
    GroupRegistry,
    HostFacts,
    MountTable,
    ServiceManager,
    SystemIdentity,
)
from .command import CommandResult, CommandRunner

logger = logging.getLogger(__name__)

FSTAB_PATH = "/etc/fstab"
CPUINFO_PATH = "/proc/cpuinfo"

# getent exit code for "key not found"
GETENT_NOT_FOUND = 2

NETWORK_FSTYPES = {"cifs", "smb3", "nfs", "nfs4", "sshfs"}


def detect_acting_user(runner: Optional[CommandRunner] = None) -> str:
    """Find the human user behind a sudo/root session.

    Order: SUDO_USER, ``logname``, then the current process user.
    """
    sudo_user = os.environ.get("SUDO_USER")
    if sudo_user and sudo_user != "root":
        return sudo_user

    runner = runner or CommandRunner()
    result = runner.run(["logname"])
    name = result.output.strip()
    if result.success and name:
        return name

    return getpass.getuser()


class LinuxIdentity(SystemIdentity):
    """Users and host name via pwd, hostnamectl and chsh."""

    def current_user(self) -> str:
        return self.context.user or detect_acting_user(self.runner)

    def home_dir(self, user: str) -> str:
        try:
            return pwd.getpwnam(user).pw_dir
        except KeyError:
            raise CollaboratorError(f"Unknown user: {user}")

    def current_hostname(self) -> str:
        return socket.gethostname()

    def set_hostname(self, name: str) -> CommandResult:
        return self.runner.run(["hostnamectl", "set-hostname", name])

    def login_shell(self, user: str) -> str:
        try:
            return pwd.getpwnam(user).pw_shell
        except KeyError:
            raise CollaboratorError(f"Unknown user: {user}")

    def resolve_shell(self, shell: str) -> Optional[str]:
        if shell.startswith("/"):
            return shell if Path(shell).exists() else None
        return self.runner.which(shell)

    def set_login_shell(self, user: str, shell_path: str) -> CommandResult:
        return self.runner.run(["chsh", "-s", shell_path, user])


def _split_fstab_line(line: str) -> Optional[list[str]]:
    text = line.strip()
    if not text or text.startswith("#"):
        return None
    fields = text.split()
    return fields if len(fields) >= 2 else None


class LinuxMountTable(MountTable):
    """Mounts via findmnt/blkid/mount and a plain-text fstab."""

    def __init__(
        self,
        context: RunContext,
        runner: Optional[CommandRunner] = None,
        fstab_path: str = FSTAB_PATH,
    ):
        super().__init__(context, runner)
        self.fstab_path = Path(fstab_path)

    def is_mounted(self, path: str) -> bool:
        result = self.runner.run(["findmnt", "-n", "--mountpoint", path])
        if result.returncode == 127:
            raise CollaboratorError("findmnt is not available", result.command)
        return result.success

    def device_exists(self, device: str) -> bool:
        if device.startswith("UUID="):
            return self._blkid("-U", device[len("UUID="):])
        if device.startswith("LABEL="):
            return self._blkid("-L", device[len("LABEL="):])
        if device.startswith("//") or (":" in device and not device.startswith("/")):
            # Network shares are resolved at mount time
            return True
        return Path(device).exists()

    def _blkid(self, flag: str, value: str) -> bool:
        result = self.runner.run(["blkid", flag, value])
        if result.returncode == 127:
            raise CollaboratorError("blkid is not available", result.command)
        return result.success

    def mount(self, device: str, path: str, fstype: str, options: str) -> CommandResult:
        argv = ["mount"]
        if fstype:
            argv += ["-t", fstype]
        if options:
            argv += ["-o", options]
        return self.runner.run(argv + [device, path])

    def _entries(self) -> list[list[str]]:
        try:
            text = self.fstab_path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return []
        except OSError as e:
            raise CollaboratorError(f"Cannot read {self.fstab_path}: {e}")
        return [f for f in map(_split_fstab_line, text.splitlines()) if f]

    def fstab_has_entry(self, device: str, path: str) -> bool:
        """An entry for ``path`` counts; one mount point has one fstab line."""
        entries = self._entries()
        for fields in entries:
            if fields[1] == path:
                if fields[0] != device:
                    logger.warning(
                        f"{self.fstab_path}: {path} is mounted from {fields[0]}, not {device}"
                    )
                return True
        for fields in entries:
            if fields[0] == device:
                logger.warning(f"{self.fstab_path}: {device} is also mounted at {fields[1]}")
        return False

    def append_fstab_entry(self, entry: str) -> bool:
        fields = _split_fstab_line(entry)
        if fields is None:
            raise ValueError(f"Not an fstab entry: {entry!r}")
        if self.fstab_has_entry(fields[0], fields[1]):
            return False

        existing = ""
        if self.fstab_path.exists():
            existing = self.fstab_path.read_text(encoding="utf-8")
        with open(self.fstab_path, "a", encoding="utf-8") as f:
            if existing and not existing.endswith("\n"):
                f.write("\n")
            f.write(entry.rstrip("\n") + "\n")

        # Let systemd regenerate mount units from the new fstab
        reload = self.runner.run(["systemctl", "daemon-reload"])
        if not reload.success:
            logger.warning(f"systemctl daemon-reload failed: {reload.error}")
        return True


class LinuxGroupRegistry(GroupRegistry):
    """Groups via getent, id and usermod."""

    def group_exists(self, name: str) -> bool:
        result = self.runner.run(["getent", "group", name])
        if result.success:
            return True
        if result.returncode == GETENT_NOT_FOUND:
            return False
        raise CollaboratorError(f"getent group {name} failed: {result.error}", result.command)

    def user_in_group(self, user: str, name: str) -> bool:
        result = self.runner.run(["id", "-nG", user])
        if not result.success:
            raise CollaboratorError(f"Cannot list groups of {user}: {result.error}", result.command)
        return name in result.output.split()

    def add_user_to_group(self, user: str, name: str) -> CommandResult:
        return self.runner.run(["usermod", "-aG", name, user])


class SystemdServiceManager(ServiceManager):
    """systemd units, system or per-user."""

    def _systemctl(self, scope: str) -> list[str]:
        if scope == "user":
            return ["systemctl", "--user", "-M", f"{self.context.user}@"]
        return ["systemctl"]

    def is_enabled(self, unit: str, scope: str = "system") -> bool:
        result = self.runner.run(self._systemctl(scope) + ["is-enabled", "--quiet", unit])
        if result.returncode == 127:
            raise CollaboratorError("systemctl is not available", result.command)
        return result.success

    def is_active(self, unit: str, scope: str = "system") -> bool:
        result = self.runner.run(self._systemctl(scope) + ["is-active", "--quiet", unit])
        if result.returncode == 127:
            raise CollaboratorError("systemctl is not available", result.command)
        return result.success

    def enable(self, unit: str, now: bool = True, scope: str = "system") -> CommandResult:
        argv = self._systemctl(scope) + ["enable"]
        if now:
            argv.append("--now")
        return self.runner.run(argv + [unit])


class LinuxFacts(HostFacts):
    """Hardware facts from lspci, /proc/cpuinfo and findmnt."""

    def __init__(
        self,
        context: RunContext,
        runner: Optional[CommandRunner] = None,
        cpuinfo_path: str = CPUINFO_PATH,
    ):
        super().__init__(context, runner)
        self.cpuinfo_path = Path(cpuinfo_path)

    def has_amd_gpu(self) -> bool:
        result = self.runner.run(["lspci"])
        if not result.success:
            raise CollaboratorError(f"lspci failed: {result.error}", result.command)
        for line in result.output.splitlines():
            lowered = line.lower()
            if any(k in lowered for k in ("vga", "3d controller", "display")):
                if "amd" in lowered or "ati " in lowered or "radeon" in lowered:
                    return True
        return False

    def has_intel_cpu(self) -> bool:
        try:
            text = self.cpuinfo_path.read_text(encoding="utf-8", errors="replace")
        except OSError as e:
            raise CollaboratorError(f"Cannot read {self.cpuinfo_path}: {e}")
        return "GenuineIntel" in text

    def root_fstype(self) -> str:
        result = self.runner.run(["findmnt", "-no", "FSTYPE", "/"])
        if not result.success:
            raise CollaboratorError(f"findmnt failed: {result.error}", result.command)
        return result.output.strip()

    def is_mountpoint(self, path: str) -> bool:
        result = self.runner.run(["findmnt", path])
        if result.returncode == 127:
            raise CollaboratorError("findmnt is not available", result.command)
        return result.success

    def user_unit_active(self, unit: str) -> bool:
        result = self.runner.run(
            ["systemctl", "--user", "-M", f"{self.context.user}@", "is-active", "--quiet", unit]
        )
        return result.success
