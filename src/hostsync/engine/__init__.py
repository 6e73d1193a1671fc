"""Reconciliation engine: desired state, probes, plans and execution."""
from .schema import (
    Action,
    ActionOperation,
    ActionStatus,
    DesiredState,
    FailureRecord,
    Plan,
    ProbeResult,
    ResourceKind,
    ResourceSpec,
    ResourceState,
    RunContext,
    RunSummary,
    ValidationResult,
)
from .errors import (
    ActionError,
    CollaboratorError,
    CriticalError,
    HostsyncError,
    LockError,
    ParseError,
    PreflightError,
    ProbeError,
    ValidationError,
)
from .parser import DesiredStateParser, compute_checksum, parse_config
from .validator import DesiredStateValidator
from .probe import FactProbe, ProbeLayer
from .diff import DiffEngine, summarize_plan
from .executor import ActionExecutor
from .engine import Reconciler

__all__ = [
    # Schema
    "Action",
    "ActionOperation",
    "ActionStatus",
    "DesiredState",
    "FailureRecord",
    "Plan",
    "ProbeResult",
    "ResourceKind",
    "ResourceSpec",
    "ResourceState",
    "RunContext",
    "RunSummary",
    "ValidationResult",
    # Errors
    "ActionError",
    "CollaboratorError",
    "CriticalError",
    "HostsyncError",
    "LockError",
    "ParseError",
    "PreflightError",
    "ProbeError",
    "ValidationError",
    # Components
    "DesiredStateParser",
    "parse_config",
    "compute_checksum",
    "DesiredStateValidator",
    "FactProbe",
    "ProbeLayer",
    "DiffEngine",
    "summarize_plan",
    "ActionExecutor",
    "Reconciler",
]
