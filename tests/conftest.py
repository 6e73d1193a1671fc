"""Shared fixtures: an in-memory host behind the collaborator interfaces."""
import os
import pwd
from typing import Callable, Optional

import httpx
import pytest

from hostsync.collaborators import Collaborators, CommandResult, Downloader, FileStore
from hostsync.engine.errors import CollaboratorError
from hostsync.engine.schema import RunContext
from hostsync.utils.logging_config import main_logger, perf_logger, run_logger
from hostsync.utils.run_log import ReportingSink


class FakeRunner:
    """CommandRunner that records argv lists and answers from a script."""

    def __init__(self):
        self.calls: list[dict] = []
        self.responses: dict[tuple, CommandResult] = {}
        self.commands: dict[str, str] = {}
        self.side_effects: dict[tuple, Callable[[], None]] = {}

    def script(self, argv: list[str], result: CommandResult, side_effect=None) -> None:
        self.responses[tuple(argv)] = result
        if side_effect:
            self.side_effects[tuple(argv)] = side_effect

    def run(self, argv, *, as_user=None, input_text=None, env=None, cwd=None) -> CommandResult:
        key = tuple(argv)
        self.calls.append({"argv": list(argv), "as_user": as_user, "env": env, "cwd": cwd})
        if key in self.side_effects:
            self.side_effects[key]()
        return self.responses.get(key, CommandResult.ok(command=" ".join(argv)))

    def which(self, name: str) -> Optional[str]:
        return self.commands.get(name)

    def argvs(self) -> list[list[str]]:
        return [c["argv"] for c in self.calls]


class _Recording:
    """Base for fakes: records mutating calls and fails the ones listed in ``failing``."""

    def __init__(self):
        self.calls: list[tuple] = []
        self.failing: set[str] = set()

    def _call(self, name: str, *args) -> Optional[CommandResult]:
        self.calls.append((name,) + args)
        if name in self.failing:
            return CommandResult.failed(f"{name} failed", command=name)
        return None

    def called(self, name: str) -> list[tuple]:
        return [c for c in self.calls if c[0] == name]


class FakePackages(_Recording):
    """Packages and repositories held in sets.

    Repository ids are derived from the URL file name, so
    ``https://example.com/A.repo`` adds repository ``A``.
    """

    def __init__(self):
        super().__init__()
        self.installed: set[str] = set()
        self.available: set[str] = set()
        self.repos: set[str] = set()
        self.repo_files: set[str] = set()
        self.updates = False
        self.query_error: Optional[str] = None
        self.failing_packages: set[str] = set()

    def _check(self) -> None:
        if self.query_error:
            raise CollaboratorError(self.query_error, "rpm -q")

    def is_installed(self, name: str) -> bool:
        self._check()
        return name in self.installed

    def installed_subset(self, names: list[str]) -> set[str]:
        self._check()
        return {n for n in names if n in self.installed}

    def is_available(self, name: str) -> bool:
        self._check()
        return name in self.available or name in self.installed

    def has_repository(self, repo_id: str) -> bool:
        return repo_id in self.repos

    def has_repo_file(self, name: str) -> bool:
        return name in self.repo_files

    def has_updates(self) -> bool:
        return self.updates

    def install(self, names: list[str], allow_erasing: bool = False) -> CommandResult:
        failed = self._call("install", list(names), allow_erasing)
        if failed:
            return failed
        bad = [n for n in names if n in self.failing_packages]
        if bad:
            return CommandResult.failed(f"No match for argument: {bad[0]}", command="dnf install")
        self.installed.update(names)
        return CommandResult.ok(command="dnf install")

    def remove(self, names: list[str], keep_dependents: bool = False) -> CommandResult:
        failed = self._call("remove", list(names), keep_dependents)
        if failed:
            return failed
        self.installed.difference_update(names)
        return CommandResult.ok(command="rpm -e")

    def add_repository(self, url: str, method: str = "repofile", gpg_key: Optional[str] = None) -> CommandResult:
        failed = self._call("add_repository", url, method, gpg_key)
        if failed:
            return failed
        self.repos.add(url.rsplit("/", 1)[-1].removesuffix(".repo"))
        return CommandResult.ok(command="dnf config-manager")

    def remove_repository(self, name: str) -> CommandResult:
        failed = self._call("remove_repository", name)
        if failed:
            return failed
        self.repo_files.discard(name)
        return CommandResult.ok(command=f"rm -f {name}.repo")

    def upgrade_all(self, refresh: bool = True) -> CommandResult:
        failed = self._call("upgrade_all", refresh)
        if failed:
            return failed
        self.updates = False
        return CommandResult.ok(command="dnf upgrade")

    def clean_cache(self) -> CommandResult:
        return self._call("clean_cache") or CommandResult.ok(command="dnf clean packages")


class FakeApps(_Recording):
    def __init__(self):
        super().__init__()
        self.remotes: set[str] = set()
        self.installed: set[str] = set()

    def has_remote(self, name: str) -> bool:
        return name in self.remotes

    def add_remote(self, name: str, url: str) -> CommandResult:
        failed = self._call("add_remote", name, url)
        if failed:
            return failed
        self.remotes.add(name)
        return CommandResult.ok()

    def installed_apps(self) -> set[str]:
        return set(self.installed)

    def install(self, app_ids: list[str], remote: str) -> CommandResult:
        failed = self._call("install", list(app_ids), remote)
        if failed:
            return failed
        self.installed.update(app_ids)
        return CommandResult.ok()

    def prune_unused(self) -> CommandResult:
        return self._call("prune_unused") or CommandResult.ok()


class FakeSnapshots(_Recording):
    def __init__(self):
        super().__init__()
        self.configs: dict[str, str] = {}
        self.snapshots: list[tuple[str, str]] = []
        self.installed = True

    def config_exists(self, label: str) -> bool:
        if not self.installed:
            raise CollaboratorError("snapper is not installed", "snapper list")
        return label in self.configs

    def create_config(self, label: str, path: str) -> CommandResult:
        failed = self._call("create_config", label, path)
        if failed:
            return failed
        self.configs[label] = path
        return CommandResult.ok()

    def create_snapshot(self, label: str, description: str) -> CommandResult:
        failed = self._call("create_snapshot", label, description)
        if failed:
            return failed
        self.snapshots.append((label, description))
        return CommandResult.ok()


class FakeIdentity(_Recording):
    def __init__(self, user: str, home: str):
        super().__init__()
        self.user = user
        self.home = home
        self.hostname = "localhost"
        self.shells: dict[str, str] = {user: "/bin/bash"}
        self.shell_paths = {"bash": "/bin/bash", "zsh": "/usr/bin/zsh"}

    def current_user(self) -> str:
        return self.user

    def home_dir(self, user: str) -> str:
        return self.home

    def current_hostname(self) -> str:
        return self.hostname

    def set_hostname(self, name: str) -> CommandResult:
        failed = self._call("set_hostname", name)
        if failed:
            return failed
        self.hostname = name
        return CommandResult.ok()

    def login_shell(self, user: str) -> str:
        return self.shells.get(user, "/bin/bash")

    def resolve_shell(self, shell: str) -> Optional[str]:
        if shell.startswith("/"):
            return shell if shell in self.shell_paths.values() else None
        return self.shell_paths.get(shell)

    def set_login_shell(self, user: str, shell_path: str) -> CommandResult:
        failed = self._call("set_login_shell", user, shell_path)
        if failed:
            return failed
        self.shells[user] = shell_path
        return CommandResult.ok()


class FakeMounts(_Recording):
    def __init__(self):
        super().__init__()
        self.devices: set[str] = set()
        self.mounted: set[str] = set()
        self.fstab: list[str] = []

    def is_mounted(self, path: str) -> bool:
        return path in self.mounted

    def device_exists(self, device: str) -> bool:
        return device in self.devices

    def mount(self, device: str, path: str, fstype: str, options: str) -> CommandResult:
        failed = self._call("mount", device, path, fstype, options)
        if failed:
            return failed
        self.mounted.add(path)
        return CommandResult.ok()

    def fstab_has_entry(self, device: str, path: str) -> bool:
        for line in self.fstab:
            fields = line.split()
            if fields[1] == path:
                return True
        return False

    def append_fstab_entry(self, entry: str) -> bool:
        self.calls.append(("append_fstab_entry", entry))
        fields = entry.split()
        if self.fstab_has_entry(fields[0], fields[1]):
            return False
        self.fstab.append(entry)
        return True


class FakeGroups(_Recording):
    def __init__(self):
        super().__init__()
        self.groups: dict[str, set[str]] = {}

    def group_exists(self, name: str) -> bool:
        return name in self.groups

    def user_in_group(self, user: str, name: str) -> bool:
        return user in self.groups.get(name, set())

    def add_user_to_group(self, user: str, name: str) -> CommandResult:
        failed = self._call("add_user_to_group", user, name)
        if failed:
            return failed
        self.groups[name].add(user)
        return CommandResult.ok()


class FakeServices(_Recording):
    def __init__(self):
        super().__init__()
        self.enabled: set[str] = set()
        self.active: set[str] = set()

    def is_enabled(self, unit: str, scope: str = "system") -> bool:
        return unit in self.enabled

    def is_active(self, unit: str, scope: str = "system") -> bool:
        return unit in self.active

    def enable(self, unit: str, now: bool = True, scope: str = "system") -> CommandResult:
        failed = self._call("enable", unit, now, scope)
        if failed:
            return failed
        self.enabled.add(unit)
        if now:
            self.active.add(unit)
        return CommandResult.ok()


class FakeFacts:
    """Host facts with call counting, so caching can be checked."""

    def __init__(self):
        self.amd_gpu = False
        self.intel_cpu = False
        self.fstype = "btrfs"
        self.mountpoints: set[str] = set()
        self.user_units: set[str] = set()
        self.commands: set[str] = set()
        self.counts: dict[str, int] = {}

    def _count(self, name: str) -> None:
        self.counts[name] = self.counts.get(name, 0) + 1

    def has_amd_gpu(self) -> bool:
        self._count("amd_gpu")
        return self.amd_gpu

    def has_intel_cpu(self) -> bool:
        self._count("intel_cpu")
        return self.intel_cpu

    def root_fstype(self) -> str:
        self._count("root_fstype")
        return self.fstype

    def is_mountpoint(self, path: str) -> bool:
        self._count("is_mountpoint")
        return path in self.mountpoints

    def user_unit_active(self, unit: str) -> bool:
        self._count("user_unit_active")
        return unit in self.user_units

    def command_exists(self, name: str) -> bool:
        self._count("command_exists")
        return name in self.commands


class FakeHttp:
    """httpx MockTransport backend serving a dict of URL to body."""

    def __init__(self):
        self.bodies: dict[str, bytes] = {}
        self.redirects: dict[str, str] = {}
        self.requests: list[str] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        self.requests.append(url)
        if url in self.redirects:
            return httpx.Response(302, headers={"Location": self.redirects[url]})
        if url in self.bodies:
            return httpx.Response(200, content=self.bodies[url])
        return httpx.Response(404)


@pytest.fixture
def context(tmp_path):
    home = tmp_path / "home"
    home.mkdir()
    return RunContext(
        user=pwd.getpwuid(os.getuid()).pw_name,
        home=str(home),
        hostname="testhost",
        os_release={"ID": "fedora", "VERSION_ID": "40"},
    )


@pytest.fixture
def runner():
    return FakeRunner()


@pytest.fixture
def http():
    return FakeHttp()


@pytest.fixture
def collaborators(context, runner, http):
    return Collaborators(
        packages=FakePackages(),
        apps=FakeApps(),
        snapshots=FakeSnapshots(),
        identity=FakeIdentity(context.user, context.home),
        mounts=FakeMounts(),
        groups=FakeGroups(),
        services=FakeServices(),
        facts=FakeFacts(),
        files=FileStore(context),
        downloader=Downloader(retries=1, transport=httpx.MockTransport(http.handler)),
        runner=runner,
    )


@pytest.fixture
def sink():
    return ReportingSink()


@pytest.fixture
def clean_logging():
    """Drop the handlers setup_logging attaches."""
    yield
    for logger in (run_logger, main_logger, perf_logger):
        for handler in list(logger.handlers):
            logger.removeHandler(handler)
            handler.close()
    run_logger.propagate = True
