"""Schema definitions for the reconciler.

Defines the desired state format, probe results, actions and run summaries.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional, Union


class ResourceKind(str, Enum):
    """Kind of resource a spec describes."""
    REPOSITORY = "repository"
    SYSTEM_UPGRADE = "system_upgrade"
    PACKAGE_SET = "package_set"
    APP_REMOTE = "app_remote"
    APP_SET = "app_set"
    GROUP_MEMBERSHIP = "group_membership"
    MOUNT = "mount"
    SNAPSHOT_CONFIG = "snapshot_config"
    SNAPSHOT = "snapshot"
    DOTFILE = "dotfile"
    DIRECTORY = "directory"
    SERVICE_STATE = "service_state"
    HOSTNAME = "hostname"
    LOGIN_SHELL = "login_shell"
    FONT_ARCHIVE = "font_archive"
    COMMAND = "command"


# Failure of these invalidates every later probe in the run
CRITICAL_KINDS = frozenset({ResourceKind.REPOSITORY, ResourceKind.SYSTEM_UPGRADE})


class ResourceState(str, Enum):
    """Whether a resource should exist."""
    PRESENT = "present"
    ABSENT = "absent"


class ActionOperation(str, Enum):
    """Type of step in a plan."""
    CREATE = "create"
    MODIFY = "modify"
    REMOVE = "remove"
    SKIP = "skip"


class ActionStatus(str, Enum):
    """Outcome of an action."""
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class ResourceSpec:
    """Desired state for a single resource."""
    kind: ResourceKind
    identity: str
    state: ResourceState = ResourceState.PRESENT
    parameters: dict[str, Any] = field(default_factory=dict)
    precondition: Optional[Union[str, list[str]]] = None

    @property
    def preconditions(self) -> list[str]:
        """Precondition terms; all must hold."""
        if not self.precondition:
            return []
        if isinstance(self.precondition, str):
            return [self.precondition]
        return list(self.precondition)

    @property
    def key(self) -> tuple[str, str]:
        return (self.kind.value, self.identity)

    @property
    def ref(self) -> str:
        """Short human-readable reference, e.g. ``mount:/mnt/games``."""
        return f"{self.kind.value}:{self.identity}"

    @property
    def critical(self) -> bool:
        return self.kind in CRITICAL_KINDS

    def param(self, name: str, default: Any = None) -> Any:
        return self.parameters.get(name, default)


@dataclass
class DesiredState:
    """Complete desired state for a host, in declaration order."""
    host: str = ""
    version: int = 1
    checksum: Optional[str] = None
    os_id: Optional[str] = None
    resources: list[ResourceSpec] = field(default_factory=list)

    def of_kind(self, kind: ResourceKind) -> list[ResourceSpec]:
        return [r for r in self.resources if r.kind == kind]


@dataclass(frozen=True)
class ProbeResult:
    """Point-in-time view of one resource's actual state.

    ``error`` is set when the collaborator could not answer; the resource
    is then treated as not satisfied.
    """
    kind: ResourceKind
    identity: str
    exists: bool = False
    details: dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    captured_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def ok(self) -> bool:
        return self.error is None

    def get(self, name: str, default: Any = None) -> Any:
        return self.details.get(name, default)


@dataclass
class Action:
    """A single imperative step derived from one ResourceSpec."""
    operation: ActionOperation
    spec: ResourceSpec
    step: str
    targets: list[str] = field(default_factory=list)
    status: ActionStatus = ActionStatus.PENDING
    error_detail: Optional[str] = None
    reason: Optional[str] = None
    pair: Optional[str] = None
    probe_error: Optional[str] = None

    @property
    def critical(self) -> bool:
        return self.spec.critical

    @property
    def is_pending(self) -> bool:
        return self.status == ActionStatus.PENDING

    def describe(self) -> str:
        """Human-readable one-liner, e.g. ``install package_set:tools [vim]``."""
        text = f"{self.step} {self.spec.ref}"
        if self.targets:
            text += f" [{', '.join(self.targets)}]"
        return text

    def succeed(self) -> None:
        self.status = ActionStatus.SUCCEEDED
        self.error_detail = None

    def fail(self, detail: str) -> None:
        self.status = ActionStatus.FAILED
        self.error_detail = detail or "unknown error"

    def skip(self, reason: str) -> None:
        self.status = ActionStatus.SKIPPED
        self.reason = reason


# --- Validation Results ---

@dataclass
class ValidationResult:
    """Result of desired state validation."""
    valid: bool
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


# --- Plan ---

@dataclass
class Plan:
    """Ordered actions produced by the diff engine."""
    actions: list[Action] = field(default_factory=list)
    dropped: list[ResourceSpec] = field(default_factory=list)

    @property
    def pending(self) -> list[Action]:
        return [a for a in self.actions if a.operation != ActionOperation.SKIP]

    @property
    def no_change(self) -> bool:
        return len(self.pending) == 0

    @property
    def total_changes(self) -> int:
        return len(self.pending)

    def for_spec(self, spec: ResourceSpec) -> list[Action]:
        return [a for a in self.actions if a.spec is spec]


# --- Run context ---

@dataclass(frozen=True)
class RunContext:
    """Values fixed for the life of one run.

    Built once at startup and handed to every collaborator.
    """
    user: str
    home: str
    hostname: str = ""
    os_release: dict[str, str] = field(default_factory=dict)
    dry_run: bool = False
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def run_id(self) -> str:
        return self.started_at.strftime("%Y-%m-%d-%H-%M-%S")

    @property
    def os_version(self) -> str:
        return self.os_release.get("VERSION_ID", "")

    @property
    def os_id(self) -> str:
        return self.os_release.get("ID", "")

    def expand_path(self, path: str) -> str:
        """Expand a leading ``~`` to the acting user's home, not root's."""
        if path == "~":
            return self.home
        if path.startswith("~/"):
            return self.home.rstrip("/") + path[1:]
        return path


# --- Execution Results ---

@dataclass
class FailureRecord:
    """One failed action, itemized in the summary."""
    ref: str
    step: str
    reason: str


@dataclass
class RunSummary:
    """Result of applying a plan."""
    attempted: int = 0
    succeeded: int = 0
    skipped: int = 0
    failed: int = 0
    not_attempted: int = 0
    aborted: bool = False
    abort_reason: Optional[str] = None
    failures: list[FailureRecord] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.aborted and self.failed == 0

    @property
    def exit_code(self) -> int:
        """0 converged, 1 non-critical failures, 2 critical abort."""
        if self.aborted:
            return 2
        if self.failed:
            return 1
        return 0

    @classmethod
    def from_actions(
        cls,
        actions: list[Action],
        aborted: bool = False,
        abort_reason: Optional[str] = None,
    ) -> "RunSummary":
        summary = cls(aborted=aborted, abort_reason=abort_reason)
        for action in actions:
            if action.status == ActionStatus.SUCCEEDED:
                summary.attempted += 1
                summary.succeeded += 1
            elif action.status == ActionStatus.FAILED:
                summary.attempted += 1
                summary.failed += 1
                summary.failures.append(FailureRecord(
                    ref=action.spec.ref,
                    step=action.step,
                    reason=action.error_detail or "unknown error",
                ))
            elif action.status == ActionStatus.SKIPPED:
                summary.skipped += 1
            else:
                summary.not_attempted += 1
        return summary

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "attempted": self.attempted,
            "succeeded": self.succeeded,
            "skipped": self.skipped,
            "failed": self.failed,
            "not_attempted": self.not_attempted,
            "aborted": self.aborted,
            "abort_reason": self.abort_reason,
            "failures": [
                {"ref": f.ref, "step": f.step, "reason": f.reason}
                for f in self.failures
            ],
        }
