"""Executor for applying action plans to the host.

Actions run strictly in plan order. Each one is re-probed and re-gated
right before it runs, so state changed by earlier actions is seen.
A failed action is recorded and the run goes on, unless the action is
on the critical path.
"""
import logging
import os
from typing import TYPE_CHECKING, Callable, Optional

from ..collaborators.command import CommandResult
from ..collaborators.download import DownloadError
from ..utils.logging_config import timed_section
from .diff import gate_reason, step_satisfied
from .errors import ActionError, CollaboratorError, CriticalError
from .probe import ProbeLayer
from .render import render_fstab_entry
from .schema import (
    Action,
    ActionStatus,
    Plan,
    ProbeResult,
    ResourceKind,
    RunSummary,
)

if TYPE_CHECKING:
    from ..collaborators import Collaborators
    from ..utils.run_log import ReportingSink

logger = logging.getLogger(__name__)

Handler = Callable[[Action, ProbeResult], CommandResult]

# Errors a handler may raise; anything else is a bug and propagates
HANDLER_FAILURES = (ActionError, CollaboratorError, DownloadError, OSError, ValueError, KeyError)


class ActionExecutor:
    """Apply a Plan through the collaborators."""

    def __init__(
        self,
        collaborators: "Collaborators",
        probe_layer: ProbeLayer,
        sink: "ReportingSink",
        cleanup: bool = True,
    ):
        """
        Initialize executor.

        Args:
            collaborators: Handlers for the external tools
            probe_layer: Shared probe layer (used for re-checks)
            sink: Reporting sink for the run
            cleanup: Run the post-run cache cleanup
        """
        self.collaborators = collaborators
        self.probe_layer = probe_layer
        self.sink = sink
        self.context = probe_layer.context
        self.cleanup = cleanup
        self._handlers: dict[tuple[ResourceKind, str], Handler] = {
            (ResourceKind.REPOSITORY, "add-repo"): self._add_repo,
            (ResourceKind.REPOSITORY, "remove-repo"): self._remove_repo,
            (ResourceKind.SYSTEM_UPGRADE, "upgrade"): self._upgrade,
            (ResourceKind.PACKAGE_SET, "install"): self._install_packages,
            (ResourceKind.PACKAGE_SET, "swap-remove"): self._swap_remove,
            (ResourceKind.PACKAGE_SET, "swap-install"): self._swap_install,
            (ResourceKind.APP_REMOTE, "add-remote"): self._add_remote,
            (ResourceKind.APP_SET, "install-apps"): self._install_apps,
            (ResourceKind.GROUP_MEMBERSHIP, "add-to-group"): self._add_to_group,
            (ResourceKind.MOUNT, "mkdir"): self._mount_mkdir,
            (ResourceKind.MOUNT, "mount"): self._mount,
            (ResourceKind.MOUNT, "fstab"): self._fstab,
            (ResourceKind.SNAPSHOT_CONFIG, "create-config"): self._create_config,
            (ResourceKind.SNAPSHOT, "create-config"): self._create_config,
            (ResourceKind.SNAPSHOT, "create-snapshot"): self._create_snapshot,
            (ResourceKind.DOTFILE, "write"): self._write_dotfile,
            (ResourceKind.DIRECTORY, "mkdir"): self._make_directory,
            (ResourceKind.SERVICE_STATE, "enable"): self._enable_service,
            (ResourceKind.HOSTNAME, "set-hostname"): self._set_hostname,
            (ResourceKind.LOGIN_SHELL, "set-shell"): self._set_shell,
            (ResourceKind.FONT_ARCHIVE, "install-font"): self._install_font,
            (ResourceKind.COMMAND, "run"): self._run_command,
        }

    def execute(self, plan: Plan) -> RunSummary:
        """
        Execute every pending action of a plan in order.

        Args:
            plan: Plan from the diff engine

        Returns:
            RunSummary; ``aborted`` is set when a critical action failed
        """
        aborted = False
        abort_reason = None

        try:
            for action in plan.actions:
                if action.is_pending:
                    self._execute_one(action, plan)
        except CriticalError as e:
            aborted = True
            abort_reason = str(e)
            remaining = sum(1 for a in plan.actions if a.is_pending)
            self.sink.error(
                f"Critical failure, aborting run: {e}. {remaining} action(s) not attempted"
            )

        if (
            self.cleanup
            and not aborted
            and any(a.status == ActionStatus.SUCCEEDED for a in plan.actions)
        ):
            self._post_run_cleanup()

        return RunSummary.from_actions(plan.actions, aborted=aborted, abort_reason=abort_reason)

    # === Single action ===

    def _execute_one(self, action: Action, plan: Plan) -> None:
        spec = action.spec
        action.reason = None

        partner = self._partner(action, plan)
        if action.step == "swap-install" and partner and partner.status == ActionStatus.FAILED:
            action.fail(f"paired {partner.describe()} failed; not attempted")
            self.sink.error(f"Failed {action.describe()}: {action.error_detail}", ref=spec.ref)
            return

        probe = self.probe_layer.refresh(spec)

        reason = gate_reason(action, probe, self.probe_layer)
        if reason:
            action.skip(reason)
            self.sink.warning(f"Skipped {action.describe()}: {reason}", ref=spec.ref)
            return

        if step_satisfied(action, probe):
            action.skip("already satisfied")
            self.sink.info(f"Skipped {action.describe()}: already satisfied", ref=spec.ref)
            return

        handler = self._handlers.get((spec.kind, action.step))
        if handler is None:
            action.fail(f"no handler for step '{action.step}'")
            self.sink.error(f"Failed {action.describe()}: {action.error_detail}", ref=spec.ref)
            return

        self.sink.info(f"Applying {action.describe()}", ref=spec.ref)
        try:
            with timed_section(action.step, ref=spec.ref):
                result = handler(action, probe)
        except HANDLER_FAILURES as e:
            result = CommandResult.failed(str(e) or type(e).__name__)

        if result.success:
            action.succeed()
            self.sink.success(f"Done {action.describe()}", ref=spec.ref)
            return

        detail = result.error or result.output or f"exit code {result.returncode}"
        if probe.error:
            detail = f"{detail} (state was unknown: {probe.error})"
        action.fail(detail)
        self.sink.error(f"Failed {action.describe()}: {detail}", ref=spec.ref)

        if action.step == "swap-install" and partner and partner.status == ActionStatus.SUCCEEDED:
            partner.fail(f"paired {action.describe()} failed")
            self.sink.error(
                f"Marking {partner.describe()} failed: swap incomplete", ref=spec.ref
            )

        if action.critical:
            raise CriticalError(f"{action.describe()} failed: {detail}", identity=spec.identity)

    def _partner(self, action: Action, plan: Plan) -> Optional[Action]:
        if not action.pair:
            return None
        for other in plan.actions:
            if other is not action and other.pair == action.pair:
                return other
        return None

    def _post_run_cleanup(self) -> None:
        """Drop cached packages and unused runtimes, as after a manual install."""
        for label, call in (
            ("package cache cleanup", self.collaborators.packages.clean_cache),
            ("unused app runtime cleanup", self.collaborators.apps.prune_unused),
        ):
            result = call()
            if result.success:
                self.sink.info(f"Cleanup: {label} done")
            else:
                self.sink.warning(f"Cleanup: {label} failed: {result.error}")

    # === Helpers ===

    def _owner_for(self, path: str, owner: Optional[str]) -> Optional[str]:
        """Files under the acting user's home belong to that user by default."""
        if owner:
            return owner
        home = self.context.home.rstrip("/")
        if path == home or path.startswith(home + "/"):
            return "user"
        return None

    def _user_for(self, name: Optional[str]) -> str:
        if not name or name == "user":
            return self.context.user
        return name

    # === Handlers ===

    def _add_repo(self, action: Action, probe: ProbeResult) -> CommandResult:
        spec = action.spec
        return self.collaborators.packages.add_repository(
            spec.param("url"),
            method=spec.param("method", "repofile"),
            gpg_key=spec.param("gpg_key"),
        )

    def _remove_repo(self, action: Action, probe: ProbeResult) -> CommandResult:
        return self.collaborators.packages.remove_repository(action.spec.identity)

    def _upgrade(self, action: Action, probe: ProbeResult) -> CommandResult:
        return self.collaborators.packages.upgrade_all(refresh=action.spec.param("refresh", True))

    def _missing(self, action: Action, probe: ProbeResult) -> list[str]:
        if not probe.ok:
            return list(action.targets)
        installed = set(probe.get("installed", []))
        return [t for t in action.targets if t not in installed]

    def _install_packages(self, action: Action, probe: ProbeResult) -> CommandResult:
        return self.collaborators.packages.install(
            self._missing(action, probe),
            allow_erasing=action.spec.param("allow_erasing", False),
        )

    def _swap_remove(self, action: Action, probe: ProbeResult) -> CommandResult:
        return self.collaborators.packages.remove(action.targets, keep_dependents=True)

    def _swap_install(self, action: Action, probe: ProbeResult) -> CommandResult:
        return self.collaborators.packages.install(action.targets, allow_erasing=True)

    def _add_remote(self, action: Action, probe: ProbeResult) -> CommandResult:
        spec = action.spec
        return self.collaborators.apps.add_remote(spec.identity, spec.param("url"))

    def _install_apps(self, action: Action, probe: ProbeResult) -> CommandResult:
        return self.collaborators.apps.install(
            self._missing(action, probe),
            remote=action.spec.param("remote", "flathub"),
        )

    def _add_to_group(self, action: Action, probe: ProbeResult) -> CommandResult:
        user = probe.get("user") or self._user_for(action.spec.param("user"))
        return self.collaborators.groups.add_user_to_group(user, action.spec.identity)

    def _mount_mkdir(self, action: Action, probe: ProbeResult) -> CommandResult:
        path = action.spec.identity
        self.collaborators.files.make_dir(path)
        return CommandResult.ok(command=f"mkdir -p {path}")

    def _mount(self, action: Action, probe: ProbeResult) -> CommandResult:
        spec = action.spec
        return self.collaborators.mounts.mount(
            spec.param("device"),
            spec.identity,
            spec.param("fstype", ""),
            spec.param("options", ""),
        )

    def _fstab(self, action: Action, probe: ProbeResult) -> CommandResult:
        spec = action.spec
        entry = render_fstab_entry(
            spec.param("device"),
            spec.identity,
            spec.param("fstype", "auto"),
            spec.param("options", "defaults"),
            spec.param("dump", 0),
            spec.param("passno", 0),
        )
        appended = self.collaborators.mounts.append_fstab_entry(entry)
        message = "appended" if appended else "entry already present"
        return CommandResult.ok(message, command=f"fstab: {entry}")

    def _snapshot_label(self, action: Action) -> str:
        spec = action.spec
        if spec.kind == ResourceKind.SNAPSHOT:
            return spec.param("config", spec.identity)
        return spec.identity

    def _create_config(self, action: Action, probe: ProbeResult) -> CommandResult:
        return self.collaborators.snapshots.create_config(
            self._snapshot_label(action), action.spec.param("path", "/")
        )

    def _create_snapshot(self, action: Action, probe: ProbeResult) -> CommandResult:
        spec = action.spec
        description = spec.param("description") or spec.identity
        return self.collaborators.snapshots.create_snapshot(
            self._snapshot_label(action), f"{description} ({self.context.run_id})"
        )

    def _write_dotfile(self, action: Action, probe: ProbeResult) -> CommandResult:
        spec = action.spec
        files = self.collaborators.files
        path = probe.get("path") or self.context.expand_path(spec.identity)
        desired = probe.get("desired")
        if desired is None:
            raise ActionError(f"desired content of {path} unknown")

        if spec.param("backup", False) and probe.get("file_exists"):
            backup_path = files.backup(path)
            self.sink.info(f"Backed up {path} to {backup_path}", ref=spec.ref)

        mode = spec.param("mode")
        owner = self._owner_for(path, spec.param("owner"))
        files.write_text(path, desired, mode=int(str(mode), 8) if mode is not None else None, owner=owner)

        parent = os.path.dirname(path)
        if owner and parent.startswith(self.context.home.rstrip("/") + "/"):
            files.chown(parent, owner)

        notify = spec.param("notify")
        if notify:
            result = self.collaborators.runner.run(list(notify))
            if not result.success:
                return CommandResult.failed(
                    f"wrote {path} but notify command failed: {result.error}",
                    command=result.command,
                    returncode=result.returncode,
                )
        return CommandResult.ok(f"wrote {path}", command=f"write {path}")

    def _make_directory(self, action: Action, probe: ProbeResult) -> CommandResult:
        spec = action.spec
        path = probe.get("path") or self.context.expand_path(spec.identity)
        mode = spec.param("mode")
        self.collaborators.files.make_dir(
            path,
            owner=self._owner_for(path, spec.param("owner")),
            mode=int(str(mode), 8) if mode is not None else None,
        )
        return CommandResult.ok(command=f"mkdir -p {path}")

    def _enable_service(self, action: Action, probe: ProbeResult) -> CommandResult:
        spec = action.spec
        return self.collaborators.services.enable(
            spec.identity,
            now=spec.param("active", True),
            scope=spec.param("scope", "system"),
        )

    def _set_hostname(self, action: Action, probe: ProbeResult) -> CommandResult:
        return self.collaborators.identity.set_hostname(action.spec.identity)

    def _set_shell(self, action: Action, probe: ProbeResult) -> CommandResult:
        spec = action.spec
        shell = spec.param("shell", "")
        resolved = probe.get("resolved")
        if not resolved:
            raise ActionError(f"shell '{shell}' not found")
        user = probe.get("user") or self._user_for(spec.identity)
        return self.collaborators.identity.set_login_shell(user, resolved)

    def _install_font(self, action: Action, probe: ProbeResult) -> CommandResult:
        spec = action.spec
        dest = probe.get("dest") or self.context.expand_path(spec.param("dest", ""))
        data = self.collaborators.downloader.fetch(spec.param("url"))
        count = self.collaborators.files.extract_zip(data, dest, owner=self._owner_for(dest, None))
        logger.debug(f"Extracted {count} files into {dest}")

        runner = self.collaborators.runner
        if runner.which("fc-cache"):
            cache = runner.run(["fc-cache", "-f", dest])
            if not cache.success:
                self.sink.warning(f"fc-cache failed for {dest}: {cache.error}", ref=spec.ref)
        return CommandResult.ok(f"installed {count} files", command=f"unzip {spec.param('url')} -d {dest}")

    def _run_command(self, action: Action, probe: ProbeResult) -> CommandResult:
        spec = action.spec
        argv = spec.param("argv") or ["bash", "-c", spec.param("shell", "")]
        as_user = self.context.user if spec.param("run_as", "root") == "user" else None
        result = self.collaborators.runner.run(
            list(argv),
            as_user=as_user,
            env=spec.param("env"),
            cwd=self.context.home if as_user else None,
        )
        if not result.success:
            return result

        creates = spec.param("creates")
        if creates and not self.collaborators.files.exists(self.context.expand_path(creates)):
            return CommandResult.failed(
                f"command succeeded but {creates} was not created", command=result.command
            )
        return result
