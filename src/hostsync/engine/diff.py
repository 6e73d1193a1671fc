"""Diff engine for calculating the actions between desired and actual state.

Walks the desired state in declaration order, probes each resource and
expands it into one or more Actions. Steps that are already satisfied are
kept in the plan as ``skip`` actions so the run log shows them.
"""
import logging
from typing import TYPE_CHECKING, Optional

from .probe import ProbeLayer
from .schema import (
    Action,
    ActionOperation,
    ActionStatus,
    DesiredState,
    Plan,
    ProbeResult,
    ResourceKind,
    ResourceSpec,
    ResourceState,
)

if TYPE_CHECKING:
    from ..utils.run_log import ReportingSink

logger = logging.getLogger(__name__)

ALREADY_SATISFIED = "already satisfied"

# Steps whose outcome is new on every run
ALWAYS_RUN_STEPS = frozenset({"create-snapshot"})

OPERATION_MARKERS = {
    ActionOperation.CREATE: "+",
    ActionOperation.MODIFY: "~",
    ActionOperation.REMOVE: "-",
    ActionOperation.SKIP: "=",
}


def _is_repo_removal(spec: ResourceSpec) -> bool:
    return spec.kind == ResourceKind.REPOSITORY and spec.state == ResourceState.ABSENT


def _is_repo_addition(spec: ResourceSpec) -> bool:
    return spec.kind == ResourceKind.REPOSITORY and spec.state == ResourceState.PRESENT


def dedupe(resources: list[ResourceSpec]) -> tuple[list[ResourceSpec], list[ResourceSpec]]:
    """Keep the last spec per ``(kind, identity)``.

    Returns:
        (kept specs in declaration order, dropped earlier duplicates)
    """
    last_index = {spec.key: i for i, spec in enumerate(resources)}
    kept, dropped = [], []
    for i, spec in enumerate(resources):
        if last_index[spec.key] == i:
            kept.append(spec)
        else:
            dropped.append(spec)
    return kept, dropped


def order_specs(resources: list[ResourceSpec]) -> list[ResourceSpec]:
    """Move repository removals ahead of the first repository addition.

    Everything else keeps its declared position.
    """
    first_add = next((i for i, s in enumerate(resources) if _is_repo_addition(s)), None)
    if first_add is None:
        return list(resources)

    removals = [s for s in resources if _is_repo_removal(s)]
    head = [s for s in resources[:first_add] if not _is_repo_removal(s)]
    tail = [s for s in resources[first_add:] if not _is_repo_removal(s)]
    return head + removals + tail


def step_satisfied(action: Action, probe: ProbeResult) -> bool:
    """Check whether a probe shows the action's step already done.

    Probes that carry an error never satisfy a step.
    """
    if not probe.ok or action.step in ALWAYS_RUN_STEPS:
        return False

    step = action.step
    installed = set(probe.get("installed", []))

    if step == "add-repo":
        return probe.exists
    if step == "remove-repo":
        return not probe.get("present", False)
    if step in ("install", "install-apps", "swap-install"):
        return all(t in installed for t in action.targets)
    if step == "swap-remove":
        return not any(t in installed for t in action.targets)
    if step == "create-config":
        return bool(probe.get("config_exists"))

    if action.spec.kind == ResourceKind.MOUNT:
        return bool(probe.get({"mkdir": "dir_exists", "mount": "mounted", "fstab": "in_fstab"}[step]))

    # Single-step kinds
    return probe.exists


def gate_reason(action: Action, probe: ProbeResult, probe_layer: ProbeLayer) -> Optional[str]:
    """Return why an action must be skipped, or None when it may run."""
    holds, reason = probe_layer.precondition(action.spec)
    if not holds:
        return reason

    if not probe.ok:
        return None

    spec = action.spec
    if spec.kind == ResourceKind.GROUP_MEMBERSHIP and not probe.get("group_exists"):
        return f"group '{spec.identity}' does not exist"
    if spec.kind == ResourceKind.MOUNT and not probe.get("device_exists"):
        return f"device {spec.param('device')} not found"
    return None


class DiffEngine:
    """Calculate the ordered action plan for a desired state."""

    def __init__(self, probe_layer: ProbeLayer, sink: Optional["ReportingSink"] = None):
        self.probe_layer = probe_layer
        self.sink = sink

    def plan(self, desired: DesiredState) -> Plan:
        """
        Calculate the plan for a desired state.

        Args:
            desired: Parsed and validated desired state

        Returns:
            Plan with actions in execution order
        """
        kept, dropped = dedupe(desired.resources)
        for spec in dropped:
            self._warn(f"Duplicate {spec.ref}: earlier declaration dropped, last one wins", spec)

        plan = Plan(dropped=dropped)
        for spec in order_specs(kept):
            probe = self.probe_layer.probe(spec)
            plan.actions.extend(self._expand(spec, probe))

        logger.info(
            f"Planned {plan.total_changes} change(s), "
            f"{len(plan.actions) - plan.total_changes} already satisfied"
        )
        return plan

    def _warn(self, message: str, spec: ResourceSpec) -> None:
        if self.sink:
            self.sink.warning(message, ref=spec.ref)
        else:
            logger.warning(message)

    def _expand(self, spec: ResourceSpec, probe: ProbeResult) -> list[Action]:
        """Turn one spec into its actions, marking satisfied steps as skips."""
        actions = []
        for action in self._steps(spec, probe):
            if action.operation != ActionOperation.SKIP and step_satisfied(action, probe):
                action.operation = ActionOperation.SKIP
            if action.operation == ActionOperation.SKIP:
                action.status = ActionStatus.SKIPPED
                action.reason = action.reason or ALREADY_SATISFIED
            else:
                action.probe_error = probe.error
                gate = gate_reason(action, probe, self.probe_layer)
                if gate:
                    action.reason = f"will skip: {gate}"
            actions.append(action)
        return actions

    def _steps(self, spec: ResourceSpec, probe: ProbeResult) -> list[Action]:
        kind = spec.kind

        if kind == ResourceKind.REPOSITORY:
            if spec.state == ResourceState.ABSENT:
                return [Action(ActionOperation.REMOVE, spec, "remove-repo")]
            return [Action(ActionOperation.CREATE, spec, "add-repo")]

        if kind == ResourceKind.SYSTEM_UPGRADE:
            return [Action(ActionOperation.MODIFY, spec, "upgrade")]

        if kind == ResourceKind.PACKAGE_SET:
            return self._package_steps(spec, probe)

        if kind == ResourceKind.APP_REMOTE:
            return [Action(ActionOperation.CREATE, spec, "add-remote")]

        if kind == ResourceKind.APP_SET:
            return self._member_steps(spec, probe, list(spec.param("apps", [])), "install-apps")

        if kind == ResourceKind.GROUP_MEMBERSHIP:
            return [Action(ActionOperation.MODIFY, spec, "add-to-group")]

        if kind == ResourceKind.MOUNT:
            return [
                Action(ActionOperation.CREATE, spec, "mkdir"),
                Action(ActionOperation.CREATE, spec, "mount"),
                Action(ActionOperation.CREATE, spec, "fstab"),
            ]

        if kind == ResourceKind.SNAPSHOT_CONFIG:
            return [Action(ActionOperation.CREATE, spec, "create-config")]

        if kind == ResourceKind.SNAPSHOT:
            steps = []
            if spec.param("path"):
                steps.append(Action(ActionOperation.CREATE, spec, "create-config"))
            steps.append(Action(ActionOperation.CREATE, spec, "create-snapshot"))
            return steps

        if kind == ResourceKind.DOTFILE:
            op = ActionOperation.MODIFY if probe.get("file_exists") else ActionOperation.CREATE
            return [Action(op, spec, "write")]

        if kind == ResourceKind.DIRECTORY:
            op = ActionOperation.MODIFY if probe.get("dir_exists") else ActionOperation.CREATE
            return [Action(op, spec, "mkdir")]

        if kind == ResourceKind.SERVICE_STATE:
            return [Action(ActionOperation.MODIFY, spec, "enable")]

        if kind == ResourceKind.HOSTNAME:
            return [Action(ActionOperation.MODIFY, spec, "set-hostname")]

        if kind == ResourceKind.LOGIN_SHELL:
            return [Action(ActionOperation.MODIFY, spec, "set-shell", targets=[spec.param("shell", "")])]

        if kind == ResourceKind.FONT_ARCHIVE:
            return [Action(ActionOperation.CREATE, spec, "install-font")]

        if kind == ResourceKind.COMMAND:
            return [Action(ActionOperation.CREATE, spec, "run")]

        raise ValueError(f"No diff policy for kind {kind.value}")

    def _member_steps(
        self,
        spec: ResourceSpec,
        probe: ProbeResult,
        wanted: list[str],
        step: str,
    ) -> list[Action]:
        """One install action for missing members, one skip per present member."""
        installed = set(probe.get("installed", [])) if probe.ok else set()
        missing = [name for name in wanted if name not in installed]

        actions = []
        if missing:
            actions.append(Action(ActionOperation.CREATE, spec, step, targets=missing))
        for name in wanted:
            if name in installed:
                actions.append(Action(ActionOperation.SKIP, spec, step, targets=[name]))
        return actions

    def _package_steps(self, spec: ResourceSpec, probe: ProbeResult) -> list[Action]:
        """Swaps first, so the set installs against the replacement packages."""
        actions = []
        for swap in spec.param("swaps", []):
            pair = f"{spec.identity}:{swap['from']}->{swap['to']}"
            actions.append(Action(ActionOperation.REMOVE, spec, "swap-remove", targets=[swap["from"]], pair=pair))
            actions.append(Action(ActionOperation.CREATE, spec, "swap-install", targets=[swap["to"]], pair=pair))

        actions += self._member_steps(spec, probe, list(spec.param("packages", [])), "install")
        return actions


def summarize_plan(plan: Plan) -> str:
    """Generate a human-readable plan preview."""
    if plan.no_change:
        lines = ["No changes needed - host already matches the profile"]
    else:
        satisfied = len(plan.actions) - plan.total_changes
        lines = [f"Plan: {plan.total_changes} change(s), {satisfied} already satisfied"]

    for action in plan.actions:
        marker = OPERATION_MARKERS[action.operation]
        line = f"  {marker} {action.describe()}"
        if action.reason and action.operation != ActionOperation.SKIP:
            line += f" ({action.reason})"
        if action.probe_error:
            line += f" [state unknown: {action.probe_error}]"
        lines.append(line)

    for spec in plan.dropped:
        lines.append(f"  ! dropped duplicate {spec.ref}")

    return "\n".join(lines)
