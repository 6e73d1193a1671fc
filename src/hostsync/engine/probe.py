"""Probe layer: read-only queries of actual system state.

Every query goes through a collaborator. A resource that does not exist
yet is a normal result; a collaborator that cannot answer produces a
ProbeResult with ``error`` set instead of raising.
"""
import logging
from typing import TYPE_CHECKING, Any, Callable, Optional

from ..collaborators.download import DownloadError
from .errors import CollaboratorError, ProbeError
from .render import render_dotfile
from .schema import (
    ProbeResult,
    ResourceKind,
    ResourceSpec,
    ResourceState,
    RunContext,
)

if TYPE_CHECKING:
    from ..collaborators import Collaborators
    from ..utils.run_log import ReportingSink

logger = logging.getLogger(__name__)

# Facts that depend only on hardware; cached for the run
STATIC_FACTS = ("amd_gpu", "intel_cpu", "btrfs_root", "separate_home")
DYNAMIC_FACTS = ("pipewire_active",)
# Facts taking an argument after a colon; re-evaluated every time
PARAMETRIC_FACTS = ("command", "path", "package")

PROBE_FAILURES = (CollaboratorError, DownloadError, OSError, ValueError)


def parse_precondition(expr: str) -> tuple[bool, str, Optional[str]]:
    """Split ``!name:arg`` into (negated, name, arg)."""
    text = expr.strip()
    negated = text.startswith("!")
    if negated:
        text = text[1:].strip()
    name, sep, arg = text.partition(":")
    return negated, name.strip(), (arg.strip() if sep else None)


def is_known_precondition(expr: str) -> bool:
    _, name, arg = parse_precondition(expr)
    if name in PARAMETRIC_FACTS:
        return bool(arg)
    return arg is None and name in STATIC_FACTS + DYNAMIC_FACTS


class FactProbe:
    """Evaluate precondition expressions such as ``amd_gpu`` or ``!path:/x``."""

    def __init__(self, collaborators: "Collaborators", context: RunContext):
        self.collaborators = collaborators
        self.context = context
        self._cache: dict[str, bool] = {}

    def evaluate(self, expr: str) -> bool:
        """Evaluate an expression.

        Raises:
            CollaboratorError: The fact could not be determined
            ValueError: Unknown fact
        """
        negated, name, arg = parse_precondition(expr)
        value = self._fact(name, arg)
        return not value if negated else value

    def _fact(self, name: str, arg: Optional[str]) -> bool:
        facts = self.collaborators.facts

        if name in STATIC_FACTS:
            if name not in self._cache:
                self._cache[name] = self._static(name)
            return self._cache[name]

        if name == "pipewire_active":
            return facts.user_unit_active("pipewire")
        if name == "command" and arg:
            return facts.command_exists(arg)
        if name == "path" and arg:
            return self.collaborators.files.exists(self.context.expand_path(arg))
        if name == "package" and arg:
            return self.collaborators.packages.is_available(arg)

        raise ValueError(f"Unknown precondition fact: {name}")

    def _static(self, name: str) -> bool:
        facts = self.collaborators.facts
        if name == "amd_gpu":
            return facts.has_amd_gpu()
        if name == "intel_cpu":
            return facts.has_intel_cpu()
        if name == "btrfs_root":
            return facts.root_fstype() == "btrfs"
        if name == "separate_home":
            return facts.is_mountpoint("/home")
        raise ValueError(f"Unknown precondition fact: {name}")


class ProbeLayer:
    """Capture ProbeResults for resource specs.

    Results are cached per ``(kind, identity)`` and re-captured only through
    ``refresh``, which the executor calls right before applying an action.
    """

    def __init__(
        self,
        collaborators: "Collaborators",
        context: RunContext,
        sink: Optional["ReportingSink"] = None,
    ):
        self.collaborators = collaborators
        self.context = context
        self.sink = sink
        self.facts = FactProbe(collaborators, context)
        self._cache: dict[tuple[str, str], ProbeResult] = {}
        self._probes: dict[ResourceKind, Callable[[ResourceSpec], tuple[bool, dict]]] = {
            ResourceKind.REPOSITORY: self._probe_repository,
            ResourceKind.SYSTEM_UPGRADE: self._probe_upgrade,
            ResourceKind.PACKAGE_SET: self._probe_package_set,
            ResourceKind.APP_REMOTE: self._probe_app_remote,
            ResourceKind.APP_SET: self._probe_app_set,
            ResourceKind.GROUP_MEMBERSHIP: self._probe_group,
            ResourceKind.MOUNT: self._probe_mount,
            ResourceKind.SNAPSHOT_CONFIG: self._probe_snapshot_config,
            ResourceKind.SNAPSHOT: self._probe_snapshot,
            ResourceKind.DOTFILE: self._probe_dotfile,
            ResourceKind.DIRECTORY: self._probe_directory,
            ResourceKind.SERVICE_STATE: self._probe_service,
            ResourceKind.HOSTNAME: self._probe_hostname,
            ResourceKind.LOGIN_SHELL: self._probe_login_shell,
            ResourceKind.FONT_ARCHIVE: self._probe_font_archive,
            ResourceKind.COMMAND: self._probe_command,
        }

    # === Public API ===

    def probe(self, spec: ResourceSpec) -> ProbeResult:
        """Return the cached probe for ``spec``, capturing it on first use."""
        cached = self._cache.get(spec.key)
        if cached is not None:
            return cached
        return self.refresh(spec)

    def refresh(self, spec: ResourceSpec) -> ProbeResult:
        """Capture a fresh probe, replacing any cached one."""
        result = self._capture(spec)
        self._cache[spec.key] = result
        self._record(result)
        return result

    def precondition(self, spec: ResourceSpec) -> tuple[bool, Optional[str]]:
        """Evaluate the spec's declared precondition.

        Returns:
            (holds, reason); reason explains a false or unknown result
        """
        for term in spec.preconditions:
            try:
                holds = self.facts.evaluate(term)
            except PROBE_FAILURES as e:
                return False, f"precondition '{term}' could not be evaluated: {e}"
            if not holds:
                return False, f"precondition '{term}' is false"
        return True, None

    # === Capture ===

    def _capture(self, spec: ResourceSpec) -> ProbeResult:
        probe_fn = self._probes.get(spec.kind)
        if probe_fn is None:
            return ProbeResult(spec.kind, spec.identity, error=f"no probe for kind {spec.kind.value}")
        try:
            exists, details = probe_fn(spec)
        except ProbeError as e:
            return ProbeResult(spec.kind, spec.identity, error=e.reason)
        except PROBE_FAILURES as e:
            return ProbeResult(spec.kind, spec.identity, error=str(e) or type(e).__name__)
        return ProbeResult(spec.kind, spec.identity, exists=exists, details=details)

    def _record(self, result: ProbeResult) -> None:
        ref = f"{result.kind.value}:{result.identity}"
        if result.error:
            message = f"Probe {ref}: state unknown ({result.error})"
            if self.sink:
                self.sink.warning(message, ref=ref)
            else:
                logger.warning(message)
            return
        message = f"Probe {ref}: {'present' if result.exists else 'not satisfied'}"
        if self.sink:
            self.sink.info(message, ref=ref)
        else:
            logger.debug(message)

    # === Per-kind probes ===

    def _user(self, spec: ResourceSpec, name: str = "user") -> str:
        user = spec.param(name) or self.context.user
        return self.context.user if user == "user" else user

    def _probe_repository(self, spec: ResourceSpec) -> tuple[bool, dict]:
        packages = self.collaborators.packages
        if spec.state == ResourceState.ABSENT:
            present = packages.has_repo_file(spec.identity)
            return present, {"present": present}
        present = packages.has_repository(spec.identity)
        return present, {"present": present}

    def _probe_upgrade(self, spec: ResourceSpec) -> tuple[bool, dict]:
        pending = self.collaborators.packages.has_updates()
        return not pending, {"updates_pending": pending}

    def _probe_package_set(self, spec: ResourceSpec) -> tuple[bool, dict]:
        packages = list(spec.param("packages", []))
        swaps = list(spec.param("swaps", []))
        names = packages + [s["from"] for s in swaps] + [s["to"] for s in swaps]
        installed = self.collaborators.packages.installed_subset(list(dict.fromkeys(names)))

        missing = [p for p in packages if p not in installed]
        swaps_pending = [
            s for s in swaps if s["from"] in installed or s["to"] not in installed
        ]
        return not missing and not swaps_pending, {
            "installed": sorted(installed),
            "missing": missing,
        }

    def _probe_app_remote(self, spec: ResourceSpec) -> tuple[bool, dict]:
        present = self.collaborators.apps.has_remote(spec.identity)
        return present, {"present": present}

    def _probe_app_set(self, spec: ResourceSpec) -> tuple[bool, dict]:
        apps = list(spec.param("apps", []))
        installed = self.collaborators.apps.installed_apps()
        missing = [a for a in apps if a not in installed]
        return not missing, {
            "installed": sorted(a for a in apps if a in installed),
            "missing": missing,
        }

    def _probe_group(self, spec: ResourceSpec) -> tuple[bool, dict]:
        groups = self.collaborators.groups
        user = self._user(spec)
        exists = groups.group_exists(spec.identity)
        member = groups.user_in_group(user, spec.identity) if exists else False
        return member, {"user": user, "group_exists": exists, "member": member}

    def _probe_mount(self, spec: ResourceSpec) -> tuple[bool, dict]:
        mounts = self.collaborators.mounts
        path = spec.identity
        device = spec.param("device", "")
        device_exists = mounts.device_exists(device)
        dir_exists = self.collaborators.files.is_dir(path)
        mounted = mounts.is_mounted(path) if dir_exists else False
        in_fstab = mounts.fstab_has_entry(device, path)
        return dir_exists and mounted and in_fstab, {
            "device_exists": device_exists,
            "dir_exists": dir_exists,
            "mounted": mounted,
            "in_fstab": in_fstab,
        }

    def _probe_snapshot_config(self, spec: ResourceSpec) -> tuple[bool, dict]:
        exists = self.collaborators.snapshots.config_exists(spec.identity)
        return exists, {"config_exists": exists}

    def _probe_snapshot(self, spec: ResourceSpec) -> tuple[bool, dict]:
        label = spec.param("config", spec.identity)
        exists = self.collaborators.snapshots.config_exists(label)
        # A snapshot is never "already there"; every run takes a new one
        return False, {"config": label, "config_exists": exists}

    def _probe_dotfile(self, spec: ResourceSpec) -> tuple[bool, dict]:
        files = self.collaborators.files
        path = self.context.expand_path(spec.identity)
        existing = files.read_text(path)

        fetched = None
        if spec.param("source_url"):
            fetched = self.collaborators.downloader.fetch_text(spec.param("source_url"))
        desired = render_dotfile(spec, existing=existing, fetched=fetched)

        content_matches = existing == desired
        mode = spec.param("mode")
        mode_matches = mode is None or existing is None or files.mode_of(path) == int(str(mode), 8)
        details: dict[str, Any] = {
            "path": path,
            "file_exists": existing is not None,
            "content_matches": content_matches,
            "mode_matches": mode_matches,
            "desired": desired,
        }
        return content_matches and mode_matches, details

    def _probe_directory(self, spec: ResourceSpec) -> tuple[bool, dict]:
        files = self.collaborators.files
        path = self.context.expand_path(spec.identity)
        exists = files.is_dir(path)
        wanted = files.resolve_owner(spec.param("owner"))
        owner_matches = wanted is None or not exists or files.owner_of(path) == wanted
        return exists and owner_matches, {
            "path": path,
            "dir_exists": exists,
            "owner_matches": owner_matches,
        }

    def _probe_service(self, spec: ResourceSpec) -> tuple[bool, dict]:
        services = self.collaborators.services
        scope = spec.param("scope", "system")
        enabled = services.is_enabled(spec.identity, scope)
        active = services.is_active(spec.identity, scope)
        want_enabled = spec.param("enabled", True)
        want_active = spec.param("active", True)
        satisfied = (enabled or not want_enabled) and (active or not want_active)
        return satisfied, {"enabled": enabled, "active": active}

    def _probe_hostname(self, spec: ResourceSpec) -> tuple[bool, dict]:
        current = self.collaborators.identity.current_hostname()
        return current == spec.identity, {"current": current}

    def _probe_login_shell(self, spec: ResourceSpec) -> tuple[bool, dict]:
        identity = self.collaborators.identity
        user = self.context.user if spec.identity == "user" else spec.identity
        current = identity.login_shell(user)
        resolved = identity.resolve_shell(spec.param("shell", ""))
        return resolved is not None and current == resolved, {
            "user": user,
            "current": current,
            "resolved": resolved,
        }

    def _probe_font_archive(self, spec: ResourceSpec) -> tuple[bool, dict]:
        dest = self.context.expand_path(spec.param("dest", ""))
        present = self.collaborators.files.is_nonempty_dir(dest)
        return present, {"dest": dest, "present": present}

    def _probe_command(self, spec: ResourceSpec) -> tuple[bool, dict]:
        creates = spec.param("creates")
        if creates:
            path = self.context.expand_path(creates)
            done = self.collaborators.files.exists(path)
            return done, {"creates": path, "done": done}

        unless = spec.param("unless")
        as_user = self.context.user if spec.param("run_as", "root") == "user" else None
        result = self.collaborators.runner.run(list(unless), as_user=as_user)
        if result.returncode == 127:
            raise ProbeError(spec.kind.value, spec.identity, f"unless check not runnable: {result.error}")
        return result.success, {"done": result.success}
