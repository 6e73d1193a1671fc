"""Tests for the reconciler data model."""
from datetime import datetime, timezone

import pytest

from hostsync.engine.schema import (
    Action,
    ActionOperation,
    ActionStatus,
    Plan,
    ProbeResult,
    ResourceKind,
    ResourceSpec,
    RunContext,
    RunSummary,
)


def _spec(kind=ResourceKind.PACKAGE_SET, identity="tools", **params):
    return ResourceSpec(kind=kind, identity=identity, parameters=params)


class TestResourceSpec:
    """Tests for ResourceSpec."""

    def test_ref_and_key(self):
        spec = _spec(ResourceKind.MOUNT, "/mnt/games")
        assert spec.ref == "mount:/mnt/games"
        assert spec.key == ("mount", "/mnt/games")

    def test_critical_kinds(self):
        """Only repositories and the base upgrade are on the critical path."""
        assert _spec(ResourceKind.REPOSITORY, "a").critical
        assert _spec(ResourceKind.SYSTEM_UPGRADE, "base").critical
        assert not _spec(ResourceKind.PACKAGE_SET, "tools").critical
        assert not _spec(ResourceKind.MOUNT, "/mnt/x").critical

    def test_preconditions_normalized_to_list(self):
        assert _spec().preconditions == []
        spec = ResourceSpec(ResourceKind.DOTFILE, "~/.x", precondition="amd_gpu")
        assert spec.preconditions == ["amd_gpu"]
        spec = ResourceSpec(ResourceKind.DOTFILE, "~/.x", precondition=["amd_gpu", "!intel_cpu"])
        assert spec.preconditions == ["amd_gpu", "!intel_cpu"]

    def test_param_default(self):
        spec = _spec(packages=["vim"])
        assert spec.param("packages") == ["vim"]
        assert spec.param("allow_erasing", False) is False


class TestProbeResult:
    """Tests for ProbeResult."""

    def test_is_immutable(self):
        result = ProbeResult(ResourceKind.HOSTNAME, "box", exists=True)
        with pytest.raises(Exception):
            result.exists = False

    def test_ok_reflects_error(self):
        assert ProbeResult(ResourceKind.HOSTNAME, "box").ok
        assert not ProbeResult(ResourceKind.HOSTNAME, "box", error="no answer").ok

    def test_get_details(self):
        result = ProbeResult(ResourceKind.MOUNT, "/mnt/x", details={"mounted": True})
        assert result.get("mounted") is True
        assert result.get("in_fstab", False) is False


class TestAction:
    """Tests for Action status transitions."""

    def test_describe_with_targets(self):
        action = Action(ActionOperation.CREATE, _spec(), "install", targets=["vim", "git"])
        assert action.describe() == "install package_set:tools [vim, git]"

    def test_fail_records_detail(self):
        action = Action(ActionOperation.CREATE, _spec(), "install")
        action.fail("")
        assert action.status == ActionStatus.FAILED
        assert action.error_detail == "unknown error"

    def test_succeed_clears_detail(self):
        action = Action(ActionOperation.CREATE, _spec(), "install")
        action.fail("boom")
        action.succeed()
        assert action.status == ActionStatus.SUCCEEDED
        assert action.error_detail is None

    def test_skip_sets_reason(self):
        action = Action(ActionOperation.MODIFY, _spec(ResourceKind.GROUP_MEMBERSHIP, "video"), "add-to-group")
        action.skip("group 'video' does not exist")
        assert action.status == ActionStatus.SKIPPED
        assert "video" in action.reason


class TestPlan:
    """Tests for Plan properties."""

    def test_pending_excludes_skips(self):
        spec = _spec()
        plan = Plan(actions=[
            Action(ActionOperation.CREATE, spec, "install", targets=["vim"]),
            Action(ActionOperation.SKIP, spec, "install", targets=["git"], status=ActionStatus.SKIPPED),
        ])
        assert plan.total_changes == 1
        assert not plan.no_change
        assert len(plan.for_spec(spec)) == 2

    def test_empty_plan_is_no_change(self):
        assert Plan().no_change


class TestRunContext:
    """Tests for RunContext."""

    def test_expand_path_uses_acting_user_home(self):
        context = RunContext(user="alice", home="/home/alice")
        assert context.expand_path("~") == "/home/alice"
        assert context.expand_path("~/.zshrc") == "/home/alice/.zshrc"
        assert context.expand_path("/etc/fstab") == "/etc/fstab"

    def test_os_release_fields(self):
        context = RunContext(user="a", home="/h", os_release={"ID": "fedora", "VERSION_ID": "40"})
        assert context.os_id == "fedora"
        assert context.os_version == "40"

    def test_run_id_from_start_time(self):
        started = datetime(2024, 5, 1, 12, 30, 5, tzinfo=timezone.utc)
        context = RunContext(user="a", home="/h", started_at=started)
        assert context.run_id == "2024-05-01-12-30-05"


class TestRunSummary:
    """Tests for RunSummary aggregation."""

    def _actions(self):
        spec = _spec()
        done = Action(ActionOperation.CREATE, spec, "install", status=ActionStatus.SUCCEEDED)
        failed = Action(ActionOperation.CREATE, spec, "install")
        failed.fail("No match for argument: nosuch")
        skipped = Action(ActionOperation.SKIP, spec, "install", status=ActionStatus.SKIPPED)
        pending = Action(ActionOperation.CREATE, spec, "install")
        return [done, failed, skipped, pending]

    def test_counts(self):
        summary = RunSummary.from_actions(self._actions())
        assert summary.attempted == 2
        assert summary.succeeded == 1
        assert summary.failed == 1
        assert summary.skipped == 1
        assert summary.not_attempted == 1
        assert summary.failures[0].ref == "package_set:tools"
        assert "nosuch" in summary.failures[0].reason

    def test_exit_codes(self):
        assert RunSummary().exit_code == 0
        assert RunSummary(failed=1).exit_code == 1
        assert RunSummary(failed=1, aborted=True).exit_code == 2

    def test_to_dict(self):
        data = RunSummary.from_actions(self._actions(), aborted=True, abort_reason="repo").to_dict()
        assert data["aborted"] is True
        assert data["abort_reason"] == "repo"
        assert data["failures"][0]["step"] == "install"
