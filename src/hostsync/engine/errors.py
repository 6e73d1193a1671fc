"""Exception taxonomy for the reconciler."""
from typing import Optional


class HostsyncError(Exception):
    """Base class for all hostsync errors."""
    pass


class ParseError(HostsyncError):
    """Error parsing a desired state profile."""
    pass


class ValidationError(HostsyncError):
    """Desired state failed pre-flight validation."""

    def __init__(self, errors: list[str]):
        self.errors = errors
        super().__init__("Validation failed: " + "; ".join(errors))


class CollaboratorError(HostsyncError):
    """An external tool could not answer a read-only query."""

    def __init__(self, message: str, command: str = ""):
        self.command = command
        super().__init__(message)


class ProbeError(HostsyncError):
    """Actual state of a resource could not be determined."""

    def __init__(self, kind: str, identity: str, reason: str):
        self.kind = kind
        self.identity = identity
        self.reason = reason
        super().__init__(f"Probe of {kind}:{identity} failed: {reason}")


class ActionError(HostsyncError):
    """A collaborator call made on behalf of an action failed."""
    pass


class CriticalError(HostsyncError):
    """A critical-path action failed; the rest of the plan is unreliable."""

    def __init__(self, message: str, identity: Optional[str] = None):
        self.identity = identity
        super().__init__(message)


class PreflightError(HostsyncError):
    """The host is not in a state where a run may start."""
    pass


class LockError(HostsyncError):
    """Another run already holds the host lock."""
    pass


class RunLogClosedError(HostsyncError):
    """An entry was appended to a run log after the run ended."""
    pass
