"""Tests for the probe layer."""
import os

import pytest

from hostsync.collaborators import CommandResult
from hostsync.engine.probe import (
    FactProbe,
    ProbeLayer,
    is_known_precondition,
    parse_precondition,
)
from hostsync.engine.schema import ResourceKind, ResourceSpec, ResourceState


def _spec(kind, identity, precondition=None, state=ResourceState.PRESENT, **params):
    return ResourceSpec(kind, identity, state=state, parameters=params, precondition=precondition)


class TestPreconditionSyntax:
    """Tests for precondition expression parsing."""

    def test_parse_plain(self):
        assert parse_precondition("amd_gpu") == (False, "amd_gpu", None)

    def test_parse_negated_with_argument(self):
        assert parse_precondition("!path:/etc/x") == (True, "path", "/etc/x")

    def test_known(self):
        assert is_known_precondition("intel_cpu")
        assert is_known_precondition("!pipewire_active")
        assert is_known_precondition("package:rocm-opencl")
        assert not is_known_precondition("amd_gpu:yes")
        assert not is_known_precondition("path:")
        assert not is_known_precondition("gpu")


class TestFactProbe:
    """Tests for FactProbe."""

    def test_static_facts_cached(self, collaborators, context):
        """Hardware facts are queried once per run."""
        collaborators.facts.amd_gpu = True
        facts = FactProbe(collaborators, context)

        assert facts.evaluate("amd_gpu")
        assert facts.evaluate("amd_gpu")
        assert not facts.evaluate("!amd_gpu")
        assert collaborators.facts.counts["amd_gpu"] == 1

    def test_dynamic_facts_not_cached(self, collaborators, context):
        facts = FactProbe(collaborators, context)
        assert not facts.evaluate("pipewire_active")

        collaborators.facts.user_units.add("pipewire")
        assert facts.evaluate("pipewire_active")
        assert collaborators.facts.counts["user_unit_active"] == 2

    def test_path_fact_expands_home(self, collaborators, context):
        facts = FactProbe(collaborators, context)
        assert not facts.evaluate("path:~/.cargo")
        os.makedirs(os.path.join(context.home, ".cargo"))
        assert facts.evaluate("path:~/.cargo")

    def test_package_and_command_facts(self, collaborators, context):
        collaborators.packages.available.add("rocm-opencl")
        collaborators.facts.commands.add("gamemoded")
        facts = FactProbe(collaborators, context)
        assert facts.evaluate("package:rocm-opencl")
        assert facts.evaluate("command:gamemoded")
        assert not facts.evaluate("command:steam")

    def test_btrfs_and_separate_home(self, collaborators, context):
        collaborators.facts.mountpoints.add("/home")
        facts = FactProbe(collaborators, context)
        assert facts.evaluate("btrfs_root")
        assert facts.evaluate("separate_home")

    def test_unknown_fact_raises(self, collaborators, context):
        with pytest.raises(ValueError):
            FactProbe(collaborators, context).evaluate("nvidia_gpu")


class TestProbeLayer:
    """Tests for ProbeLayer."""

    @pytest.fixture
    def layer(self, collaborators, context, sink):
        return ProbeLayer(collaborators, context, sink)

    def test_missing_resource_is_not_an_error(self, layer):
        result = layer.probe(_spec(ResourceKind.GROUP_MEMBERSHIP, "video"))
        assert result.ok
        assert not result.exists
        assert result.get("group_exists") is False

    def test_probe_recorded_at_info(self, layer, sink):
        layer.probe(_spec(ResourceKind.HOSTNAME, "munchora"))

        entry = sink.run_log.for_ref("hostname:munchora")[0]
        assert entry.level == "INFO"
        assert entry.message == "Probe hostname:munchora: not satisfied"

    def test_probe_cached_until_refresh(self, layer, collaborators):
        spec = _spec(ResourceKind.HOSTNAME, "munchora")
        first = layer.probe(spec)
        collaborators.identity.hostname = "munchora"

        assert layer.probe(spec) is first
        refreshed = layer.refresh(spec)
        assert refreshed.exists
        assert layer.probe(spec) is refreshed

    def test_collaborator_error_becomes_probe_error(self, layer, collaborators, sink):
        collaborators.packages.query_error = "rpmdb locked"
        spec = _spec(ResourceKind.PACKAGE_SET, "tools", packages=["vim"])

        result = layer.probe(spec)

        assert not result.ok
        assert "rpmdb locked" in result.error
        assert any("state unknown" in e.message for e in sink.run_log.at_level("WARNING"))

    def test_package_set_details(self, layer, collaborators):
        collaborators.packages.installed.update({"git", "ffmpeg-free"})
        spec = _spec(
            ResourceKind.PACKAGE_SET, "tools",
            packages=["vim", "git"],
            swaps=[{"from": "ffmpeg-free", "to": "ffmpeg"}],
        )

        result = layer.probe(spec)

        assert not result.exists
        assert result.get("missing") == ["vim"]
        assert set(result.get("installed")) == {"git", "ffmpeg-free"}

    def test_package_set_satisfied_after_swap(self, layer, collaborators):
        collaborators.packages.installed.update({"git", "ffmpeg"})
        spec = _spec(
            ResourceKind.PACKAGE_SET, "tools",
            packages=["git"],
            swaps=[{"from": "ffmpeg-free", "to": "ffmpeg"}],
        )
        assert layer.probe(spec).exists

    def test_repository_absent_checks_repo_file(self, layer, collaborators):
        collaborators.packages.repo_files.add("google-chrome")
        spec = _spec(ResourceKind.REPOSITORY, "google-chrome", state=ResourceState.ABSENT)
        assert layer.probe(spec).get("present") is True

    def test_upgrade(self, layer, collaborators):
        collaborators.packages.updates = True
        result = layer.probe(_spec(ResourceKind.SYSTEM_UPGRADE, "base"))
        assert not result.exists
        assert result.get("updates_pending") is True

    def test_mount_details(self, layer, collaborators, tmp_path):
        path = str(tmp_path / "games")
        os.makedirs(path)
        collaborators.mounts.devices.add("UUID=abc")
        collaborators.mounts.fstab.append(f"UUID=abc {path} btrfs defaults 0 0")
        spec = _spec(ResourceKind.MOUNT, path, device="UUID=abc", fstype="btrfs")

        result = layer.probe(spec)

        assert result.get("device_exists")
        assert result.get("dir_exists")
        assert not result.get("mounted")
        assert result.get("in_fstab")
        assert not result.exists

    def test_snapshot_never_exists(self, layer, collaborators):
        collaborators.snapshots.configs["root"] = "/"
        result = layer.probe(_spec(ResourceKind.SNAPSHOT, "root-post", config="root"))
        assert not result.exists
        assert result.get("config_exists")

    def test_snapper_missing_is_probe_error(self, layer, collaborators):
        collaborators.snapshots.installed = False
        result = layer.probe(_spec(ResourceKind.SNAPSHOT_CONFIG, "root", path="/"))
        assert not result.ok

    def test_dotfile_content_and_mode(self, layer, context):
        path = os.path.join(context.home, ".config", "x.conf")
        spec = _spec(ResourceKind.DOTFILE, "~/.config/x.conf", content="a=1", mode="0600")

        missing = layer.probe(spec)
        assert not missing.exists
        assert missing.get("file_exists") is False
        assert missing.get("desired") == "a=1\n"

        os.makedirs(os.path.dirname(path))
        with open(path, "w") as f:
            f.write("a=1\n")
        os.chmod(path, 0o644)
        wrong_mode = layer.refresh(spec)
        assert wrong_mode.get("content_matches")
        assert not wrong_mode.get("mode_matches")

        os.chmod(path, 0o600)
        assert layer.refresh(spec).exists

    def test_dotfile_source_url(self, layer, http):
        http.bodies["https://example.com/.zshrc"] = b"plugins=(git)\n"
        spec = _spec(ResourceKind.DOTFILE, "~/.zshrc", source_url="https://example.com/.zshrc")
        assert layer.probe(spec).get("desired") == "plugins=(git)\n"

    def test_dotfile_download_failure_is_probe_error(self, layer):
        spec = _spec(ResourceKind.DOTFILE, "~/.zshrc", source_url="https://example.com/missing")
        result = layer.probe(spec)
        assert not result.ok
        assert "404" in result.error

    def test_login_shell(self, layer, collaborators, context):
        spec = _spec(ResourceKind.LOGIN_SHELL, "user", shell="zsh")
        result = layer.probe(spec)
        assert result.get("user") == context.user
        assert result.get("resolved") == "/usr/bin/zsh"
        assert not result.exists

        collaborators.identity.shells[context.user] = "/usr/bin/zsh"
        assert layer.refresh(spec).exists

    def test_font_archive_needs_nonempty_dir(self, layer, context):
        spec = _spec(ResourceKind.FONT_ARCHIVE, "Hack", url="https://e.com/Hack.zip", dest="~/.local/share/fonts/Hack")
        dest = os.path.join(context.home, ".local", "share", "fonts", "Hack")
        os.makedirs(dest)
        assert not layer.probe(spec).exists

        open(os.path.join(dest, "Hack-Regular.ttf"), "w").close()
        assert layer.refresh(spec).exists

    def test_command_creates(self, layer, context):
        spec = _spec(ResourceKind.COMMAND, "rustup", shell="x", creates="~/.cargo/bin/rustup")
        result = layer.probe(spec)
        assert result.get("creates") == os.path.join(context.home, ".cargo/bin/rustup")
        assert not result.exists

    def test_command_unless(self, layer, runner):
        runner.script(["rpm", "-q", "msttcore-fonts-installer"], CommandResult.failed("not installed"))
        spec = _spec(ResourceKind.COMMAND, "msttcore", argv=["dnf", "install"], unless=["rpm", "-q", "msttcore-fonts-installer"])
        assert not layer.probe(spec).exists

        runner.script(["rpm", "-q", "msttcore-fonts-installer"], CommandResult.ok())
        assert layer.refresh(spec).exists

    def test_command_unless_not_runnable(self, layer, runner):
        runner.script(["nosuch"], CommandResult.failed("command not found: nosuch", returncode=127))
        spec = _spec(ResourceKind.COMMAND, "x", argv=["true"], unless=["nosuch"])

        result = layer.probe(spec)

        assert not result.ok
        assert result.error == "unless check not runnable: command not found: nosuch"

    def test_precondition_all_terms(self, layer, collaborators):
        collaborators.facts.amd_gpu = True
        spec = _spec(ResourceKind.PACKAGE_SET, "rocm", precondition=["amd_gpu", "package:rocm-opencl"], packages=["x"])

        holds, reason = layer.precondition(spec)
        assert not holds
        assert "package:rocm-opencl" in reason

        collaborators.packages.available.add("rocm-opencl")
        assert layer.precondition(spec) == (True, None)

    def test_precondition_unevaluable(self, layer, collaborators):
        collaborators.packages.query_error = "dnf broken"
        spec = _spec(ResourceKind.PACKAGE_SET, "rocm", precondition="package:rocm-opencl", packages=["x"])
        holds, reason = layer.precondition(spec)
        assert not holds
        assert "could not be evaluated" in reason
