"""Tests for pre-flight profile validation."""
from hostsync.engine.parser import parse_config
from hostsync.engine.validator import DesiredStateValidator, is_http_url


def _validate(*resources, host=None):
    config = {"resources": list(resources)}
    if host:
        config["host"] = {"hostname": host}
    return DesiredStateValidator().validate(parse_config(config))


class TestIsHttpUrl:
    """Tests for URL checking."""

    def test_accepts_http_and_https(self):
        assert is_http_url("https://flathub.org/repo/flathub.flatpakrepo")
        assert is_http_url("http://example.com/a.repo")

    def test_rejects_other_values(self):
        assert not is_http_url("ftp://example.com/a")
        assert not is_http_url("not a url")
        assert not is_http_url(None)


class TestDesiredStateValidator:
    """Tests for DesiredStateValidator."""

    def test_valid_profile(self):
        result = _validate(
            {"kind": "repository", "id": "A", "url": "https://example.com/A.repo"},
            {"kind": "package_set", "id": "tools", "packages": ["vim"]},
            {"kind": "group_membership", "id": "video"},
            host="munchora",
        )
        assert result.valid
        assert result.errors == []

    def test_absent_only_for_repositories(self):
        result = _validate({"kind": "package_set", "id": "x", "packages": ["x"], "state": "absent"})
        assert not result.valid
        assert "only supported for repositories" in result.errors[0]

    def test_repository_needs_url(self):
        result = _validate({"kind": "repository", "id": "A"})
        assert not result.valid
        assert any("'url'" in e for e in result.errors)

    def test_absent_repository_needs_no_url(self):
        assert _validate({"kind": "repository", "id": "google-chrome", "state": "absent"}).valid

    def test_invalid_repository_method(self):
        result = _validate({"kind": "repository", "id": "A", "url": "https://e.com/a.repo", "method": "copr"})
        assert any("invalid method" in e for e in result.errors)

    def test_invalid_url(self):
        result = _validate({"kind": "app_remote", "id": "flathub", "url": "flathub.org"})
        assert any("not a valid http(s) URL" in e for e in result.errors)

    def test_local_gpg_key_allowed(self):
        result = _validate({
            "kind": "repository", "id": "A", "url": "https://e.com/A.repo",
            "gpg_key": "/etc/pki/rpm-gpg/KEY",
        })
        assert result.valid

    def test_unknown_precondition(self):
        result = _validate({"kind": "package_set", "id": "x", "packages": ["x"], "precondition": "nvidia_gpu"})
        assert any("unknown precondition 'nvidia_gpu'" in e for e in result.errors)

    def test_known_preconditions(self):
        result = _validate({
            "kind": "package_set", "id": "x", "packages": ["x"],
            "precondition": ["amd_gpu", "!separate_home", "command:gamemoded", "path:~/.x", "package:x"],
        })
        assert result.valid

    def test_parametric_precondition_needs_argument(self):
        result = _validate({"kind": "package_set", "id": "x", "packages": ["x"], "precondition": "command:"})
        assert not result.valid

    def test_mount_requires_device_and_absolute_path(self):
        result = _validate({"kind": "mount", "id": "mnt/games"})
        assert any("'device'" in e for e in result.errors)
        assert any("absolute path" in e for e in result.errors)

    def test_dotfile_needs_content_for_format(self):
        result = _validate({"kind": "dotfile", "id": "/etc/dnf/dnf.conf", "format": "keyvalue"})
        assert any("needs 'settings'" in e for e in result.errors)

    def test_dotfile_unknown_format(self):
        result = _validate({"kind": "dotfile", "id": "~/.x", "format": "toml", "content": "x"})
        assert any("unknown format" in e for e in result.errors)

    def test_dotfile_bad_mode(self):
        result = _validate({"kind": "dotfile", "id": "~/.x", "content": "x", "mode": "rw-r--r--"})
        assert any("invalid mode" in e for e in result.errors)

    def test_dotfile_relative_path(self):
        result = _validate({"kind": "dotfile", "id": ".zshrc", "content": "x"})
        assert any("absolute" in e for e in result.errors)

    def test_command_needs_guard(self):
        """A command without creates/unless would run on every run."""
        result = _validate({"kind": "command", "id": "rustup", "shell": "curl ... | sh"})
        assert any("runs only once" in e for e in result.errors)

    def test_command_needs_argv_or_shell(self):
        result = _validate({"kind": "command", "id": "x", "creates": "/x"})
        assert any("'argv' or 'shell'" in e for e in result.errors)

    def test_invalid_hostname(self):
        result = _validate({"kind": "hostname", "id": "bad_name!"})
        assert not result.valid

    def test_invalid_host_field(self):
        result = _validate(host="-bad-")
        assert any("Invalid host name" in e for e in result.errors)

    def test_service_scope(self):
        result = _validate({"kind": "service_state", "id": "pipewire", "scope": "session"})
        assert any("scope" in e for e in result.errors)

    def test_duplicate_is_warning(self):
        result = _validate(
            {"kind": "package_set", "id": "tools", "packages": ["vim"]},
            {"kind": "package_set", "id": "tools", "packages": ["git"]},
        )
        assert result.valid
        assert any("declared 2 times" in w for w in result.warnings)

    def test_snapshot_not_last_warns(self):
        result = _validate(
            {"kind": "snapshot", "id": "root-post", "config": "root"},
            {"kind": "package_set", "id": "tools", "packages": ["vim"]},
        )
        assert result.valid
        assert any("last resource is not a snapshot" in w for w in result.warnings)
