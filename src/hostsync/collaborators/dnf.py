"""dnf/rpm package manager handler.

Command reference (dnf4 and dnf5):
- rpm -q --quiet --whatprovides NAME   : installed check (matches provides, e.g. vim)
- dnf -q list NAME                     : known to enabled repos (installed or available)
- dnf -q repolist --all                : configured repository ids
- dnf -q check-update                  : exit 100 when upgrades are pending
- dnf config-manager --add-repo URL    : dnf4 repo file import
- dnf config-manager addrepo --from-repofile=URL : dnf5 equivalent
"""
import logging
from pathlib import Path
from typing import Optional

from ..engine.errors import CollaboratorError
from ..engine.schema import RunContext
from .base import PackageManager
from .command import CommandResult, CommandRunner

logger = logging.getLogger(__name__)

REPOS_DIR = "/etc/yum.repos.d"

# dnf check-update exit code when upgrades are available
CHECK_UPDATE_PENDING = 100


class DnfPackageManager(PackageManager):
    """Package manager backed by dnf and rpm."""

    def __init__(
        self,
        context: RunContext,
        runner: Optional[CommandRunner] = None,
        repos_dir: str = REPOS_DIR,
    ):
        super().__init__(context, runner)
        self.repos_dir = Path(repos_dir)
        self._dnf5: Optional[bool] = None

    def _require(self, result: CommandResult, what: str) -> CommandResult:
        if result.returncode == 127:
            raise CollaboratorError(f"Cannot {what}: {result.error}", result.command)
        return result

    @property
    def is_dnf5(self) -> bool:
        if self._dnf5 is None:
            result = self.runner.run(["dnf", "--version"])
            self._dnf5 = "dnf5" in (result.output + result.error).lower()
        return self._dnf5

    # === Queries ===

    def is_installed(self, name: str) -> bool:
        if name.startswith("@"):
            return self._group_installed(name[1:])
        result = self._require(
            self.runner.run(["rpm", "-q", "--quiet", "--whatprovides", name]),
            f"query package {name}",
        )
        return result.success

    def _group_installed(self, group: str) -> bool:
        result = self._require(
            self.runner.run(["dnf", "-q", "group", "list", "--installed", "--hidden"]),
            "list package groups",
        )
        if not result.success:
            raise CollaboratorError(
                f"dnf group list failed: {result.error}", result.command
            )
        wanted = group.lower()
        for line in result.output.splitlines():
            text = line.strip().lower()
            if not text:
                continue
            if text == wanted or wanted in text.split():
                return True
        return False

    def is_available(self, name: str) -> bool:
        result = self._require(
            self.runner.run(["dnf", "-q", "list", name]),
            f"look up package {name}",
        )
        return result.success

    def has_repository(self, repo_id: str) -> bool:
        result = self._require(
            self.runner.run(["dnf", "-q", "repolist", "--all"]),
            "list repositories",
        )
        if not result.success:
            raise CollaboratorError(f"dnf repolist failed: {result.error}", result.command)

        for line in result.output.splitlines():
            parts = line.split()
            if not parts or parts[0].lower() in ("repo", "repo id"):
                continue
            if parts[0] == repo_id:
                return True
        return False

    def has_repo_file(self, name: str) -> bool:
        return self._repo_file(name).exists()

    def _repo_file(self, name: str) -> Path:
        filename = name if name.endswith(".repo") else f"{name}.repo"
        return self.repos_dir / filename

    def has_updates(self) -> bool:
        result = self._require(
            self.runner.run(["dnf", "-q", "check-update"]),
            "check for updates",
        )
        if result.returncode == CHECK_UPDATE_PENDING:
            return True
        if result.success:
            return False
        raise CollaboratorError(f"dnf check-update failed: {result.error}", result.command)

    # === Mutations ===

    def install(self, names: list[str], allow_erasing: bool = False) -> CommandResult:
        argv = ["dnf", "install", "-y"]
        if allow_erasing:
            argv.append("--allowerasing")
        return self.runner.run(argv + list(names))

    def remove(self, names: list[str], keep_dependents: bool = False) -> CommandResult:
        if keep_dependents:
            return self.runner.run(["rpm", "-e", "--nodeps"] + list(names))
        return self.runner.run(["dnf", "remove", "-y"] + list(names))

    def add_repository(
        self,
        url: str,
        method: str = "repofile",
        gpg_key: Optional[str] = None,
    ) -> CommandResult:
        if gpg_key:
            imported = self.runner.run(["rpm", "--import", gpg_key])
            if not imported.success:
                return imported

        if method == "release_rpm":
            return self.runner.run(["dnf", "install", "-y", url])

        if self.is_dnf5:
            argv = ["dnf", "config-manager", "addrepo", f"--from-repofile={url}"]
        else:
            argv = ["dnf", "config-manager", "--add-repo", url]
        return self.runner.run(argv)

    def remove_repository(self, name: str) -> CommandResult:
        path = self._repo_file(name)
        try:
            path.unlink()
        except FileNotFoundError:
            return CommandResult.ok(f"{path} already absent", command=f"rm -f {path}")
        except OSError as e:
            return CommandResult.failed(str(e), command=f"rm -f {path}")
        logger.debug(f"Removed repository file {path}")
        return CommandResult.ok(command=f"rm -f {path}")

    def upgrade_all(self, refresh: bool = True) -> CommandResult:
        argv = ["dnf", "upgrade", "-y"]
        if refresh:
            argv.append("--refresh")
        return self.runner.run(argv)

    def clean_cache(self) -> CommandResult:
        return self.runner.run(["dnf", "clean", "packages"])
