"""Reconciler - orchestrates one run from desired state to summary.

Provides a single entry point for:
1. Validating the desired state
2. Probing the host and calculating the plan
3. Executing the plan in order
4. Reporting the summary
"""
import logging
from typing import TYPE_CHECKING, Optional

from .diff import DiffEngine, summarize_plan
from .errors import ValidationError
from .executor import ActionExecutor
from .probe import ProbeLayer
from .schema import (
    DesiredState,
    Plan,
    RunContext,
    RunSummary,
    ValidationResult,
)
from .validator import DesiredStateValidator

if TYPE_CHECKING:
    from ..collaborators import Collaborators
    from ..utils.run_log import ReportingSink

logger = logging.getLogger(__name__)


class Reconciler:
    """
    Bring a host to its desired state.

    Usage:
        reconciler = Reconciler(collaborators, context, sink)
        print(reconciler.preview(desired))
        summary = reconciler.apply(desired)
    """

    def __init__(
        self,
        collaborators: "Collaborators",
        context: RunContext,
        sink: "ReportingSink",
        cleanup: bool = True,
    ):
        """
        Initialize the Reconciler.

        Args:
            collaborators: Handlers for the external tools
            context: Values fixed for this run
            sink: Reporting sink owning the run log
            cleanup: Run the post-run cache cleanup after apply
        """
        self.context = context
        self.sink = sink
        self.validator = DesiredStateValidator()
        self.probe_layer = ProbeLayer(collaborators, context, sink)
        self.diff_engine = DiffEngine(self.probe_layer, sink)
        self.executor = ActionExecutor(collaborators, self.probe_layer, sink, cleanup=cleanup)

    def validate(self, desired: DesiredState) -> ValidationResult:
        """Validate a DesiredState and log its warnings."""
        validation = self.validator.validate(desired)
        for warning in validation.warnings:
            self.sink.warning(f"Profile: {warning}")
        return validation

    def plan(self, desired: DesiredState) -> Plan:
        """
        Validate, probe and compute the plan.

        Raises:
            ValidationError: The desired state has errors
        """
        validation = self.validate(desired)
        if not validation.valid:
            for error in validation.errors:
                self.sink.error(f"Profile: {error}")
            raise ValidationError(validation.errors)

        self.sink.info(
            f"Planning {len(desired.resources)} resource(s) for "
            f"{desired.host or self.context.hostname}"
        )
        return self.diff_engine.plan(desired)

    def preview(self, desired: DesiredState) -> str:
        """
        Preview changes without applying.

        Returns human-readable plan summary.
        """
        return summarize_plan(self.plan(desired))

    def apply(self, desired: DesiredState, plan: Optional[Plan] = None) -> RunSummary:
        """
        Apply the desired state to the host.

        Args:
            desired: Parsed desired state
            plan: Previously computed plan for ``desired`` (optional)

        Returns:
            RunSummary of the run; nothing is executed for a dry-run context
        """
        if plan is None:
            plan = self.plan(desired)

        if self.context.dry_run:
            self.sink.info(f"Dry run: {plan.total_changes} change(s) not applied")
            return RunSummary.from_actions(plan.actions)

        if plan.no_change:
            self.sink.info("No changes needed - host already matches the profile")
        else:
            self.sink.info(f"Applying {plan.total_changes} change(s)")

        summary = self.executor.execute(plan)
        self.sink.emit_summary(summary)
        return summary
