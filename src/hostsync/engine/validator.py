"""Pre-flight validation for desired state profiles.

Catches logical errors before any probing of the host.
"""
import re
from collections import Counter
from typing import Any

from pydantic import AnyUrl, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from .probe import is_known_precondition
from .render import DOTFILE_FORMATS
from .schema import (
    DesiredState,
    ResourceKind,
    ResourceSpec,
    ResourceState,
    ValidationResult,
)

# Parameters every resource of a kind must carry
REQUIRED_PARAMS = {
    ResourceKind.APP_REMOTE: ("url",),
    ResourceKind.APP_SET: ("apps",),
    ResourceKind.MOUNT: ("device", "fstype"),
    ResourceKind.SNAPSHOT_CONFIG: ("path",),
    ResourceKind.LOGIN_SHELL: ("shell",),
    ResourceKind.FONT_ARCHIVE: ("url", "dest"),
}

# Parameters holding http(s) URLs
URL_PARAMS = {
    ResourceKind.REPOSITORY: ("url", "gpg_key"),
    ResourceKind.APP_REMOTE: ("url",),
    ResourceKind.FONT_ARCHIVE: ("url",),
    ResourceKind.DOTFILE: ("source_url",),
}

# Content parameter per dotfile format
DOTFILE_CONTENT = {
    "text": "content",
    "json": "content",
    "ini": "content",
    "keyvalue": "settings",
    "lines": "lines",
}

REPO_METHODS = ("repofile", "release_rpm")
SCOPES = ("system", "user")
RUN_AS = ("root", "user")

HOSTNAME_PATTERN = re.compile(r"^(?!-)[A-Za-z0-9-]{1,63}(?<!-)(\.(?!-)[A-Za-z0-9-]{1,63}(?<!-))*$")
MODE_PATTERN = re.compile(r"^0?[0-7]{3,4}$")

_url_adapter = TypeAdapter(AnyUrl)


def is_http_url(value: Any) -> bool:
    """Check that a value parses as an http(s) URL."""
    if not isinstance(value, str):
        return False
    try:
        url = _url_adapter.validate_python(value)
    except PydanticValidationError:
        return False
    return url.scheme in ("http", "https") and bool(url.host)


class DesiredStateValidator:
    """Validate desired state for logical errors before execution."""

    def validate(self, desired: DesiredState) -> ValidationResult:
        """
        Validate a desired state.

        Performs pre-flight checks:
        - Required parameters per kind
        - URL syntax
        - Precondition facts
        - Idempotency guards on commands
        - Duplicate identities and snapshot placement (warnings)

        Args:
            desired: The desired state to validate

        Returns:
            ValidationResult with valid flag, errors, and warnings
        """
        errors: list[str] = []
        warnings: list[str] = []

        for spec in desired.resources:
            self._validate_resource(spec, errors)

        self._check_duplicates(desired, warnings)
        self._check_snapshot_order(desired, warnings)

        if desired.host and not HOSTNAME_PATTERN.match(desired.host):
            errors.append(f"Invalid host name: {desired.host}")

        return ValidationResult(
            valid=len(errors) == 0,
            errors=errors,
            warnings=warnings,
        )

    def _validate_resource(self, spec: ResourceSpec, errors: list[str]) -> None:
        ref = spec.ref

        if spec.state == ResourceState.ABSENT and spec.kind != ResourceKind.REPOSITORY:
            errors.append(f"{ref}: state 'absent' is only supported for repositories")

        for name in REQUIRED_PARAMS.get(spec.kind, ()):
            if spec.param(name) in (None, "", []):
                errors.append(f"{ref}: missing required parameter '{name}'")

        for name in URL_PARAMS.get(spec.kind, ()):
            value = spec.param(name)
            if value is None:
                continue
            if name == "gpg_key" and isinstance(value, str) and value.startswith("/"):
                continue
            if not is_http_url(value):
                errors.append(f"{ref}: '{name}' is not a valid http(s) URL: {value}")

        for term in spec.preconditions:
            if not is_known_precondition(term):
                errors.append(f"{ref}: unknown precondition '{term}'")

        check = getattr(self, f"_check_{spec.kind.value}", None)
        if check:
            check(spec, errors)

    # === Per-kind checks ===

    def _check_repository(self, spec: ResourceSpec, errors: list[str]) -> None:
        if spec.state == ResourceState.ABSENT:
            return
        if not spec.param("url"):
            errors.append(f"{spec.ref}: missing required parameter 'url'")
        if spec.param("method", "repofile") not in REPO_METHODS:
            errors.append(
                f"{spec.ref}: invalid method '{spec.param('method')}'. "
                f"Valid: {', '.join(REPO_METHODS)}"
            )

    def _check_package_set(self, spec: ResourceSpec, errors: list[str]) -> None:
        if not spec.param("packages") and not spec.param("swaps"):
            errors.append(f"{spec.ref}: needs 'packages' or 'swaps'")

    def _check_mount(self, spec: ResourceSpec, errors: list[str]) -> None:
        if not spec.identity.startswith("/"):
            errors.append(f"{spec.ref}: mount point must be an absolute path")

    def _check_dotfile(self, spec: ResourceSpec, errors: list[str]) -> None:
        ref = spec.ref
        if not (spec.identity.startswith("/") or spec.identity.startswith("~")):
            errors.append(f"{ref}: path must be absolute or start with '~'")

        fmt = spec.param("format", "text")
        if fmt not in DOTFILE_FORMATS:
            errors.append(f"{ref}: unknown format '{fmt}'. Valid: {', '.join(DOTFILE_FORMATS)}")
        elif not spec.param("source_url") and spec.param(DOTFILE_CONTENT[fmt]) is None:
            errors.append(f"{ref}: format '{fmt}' needs '{DOTFILE_CONTENT[fmt]}' or 'source_url'")

        self._check_mode(spec, errors)

    def _check_directory(self, spec: ResourceSpec, errors: list[str]) -> None:
        if not (spec.identity.startswith("/") or spec.identity.startswith("~")):
            errors.append(f"{spec.ref}: path must be absolute or start with '~'")
        self._check_mode(spec, errors)

    def _check_service_state(self, spec: ResourceSpec, errors: list[str]) -> None:
        if spec.param("scope", "system") not in SCOPES:
            errors.append(f"{spec.ref}: scope must be one of {', '.join(SCOPES)}")

    def _check_hostname(self, spec: ResourceSpec, errors: list[str]) -> None:
        if not HOSTNAME_PATTERN.match(spec.identity):
            errors.append(f"{spec.ref}: invalid host name")

    def _check_command(self, spec: ResourceSpec, errors: list[str]) -> None:
        ref = spec.ref
        if not spec.param("argv") and not spec.param("shell"):
            errors.append(f"{ref}: needs 'argv' or 'shell'")
        if not spec.param("creates") and not spec.param("unless"):
            errors.append(f"{ref}: needs 'creates' or 'unless' so it runs only once")
        if spec.param("run_as", "root") not in RUN_AS:
            errors.append(f"{ref}: run_as must be one of {', '.join(RUN_AS)}")

    def _check_mode(self, spec: ResourceSpec, errors: list[str]) -> None:
        mode = spec.param("mode")
        if mode is not None and not MODE_PATTERN.match(str(mode)):
            errors.append(f"{spec.ref}: invalid mode '{mode}' (use octal, e.g. '0644')")

    # === Whole-profile checks ===

    def _check_duplicates(self, desired: DesiredState, warnings: list[str]) -> None:
        counts = Counter(spec.key for spec in desired.resources)
        for (kind, identity), count in counts.items():
            if count > 1:
                warnings.append(
                    f"{kind}:{identity} declared {count} times; the last declaration wins"
                )

    def _check_snapshot_order(self, desired: DesiredState, warnings: list[str]) -> None:
        snapshots = desired.of_kind(ResourceKind.SNAPSHOT)
        if snapshots and desired.resources[-1].kind != ResourceKind.SNAPSHOT:
            warnings.append(
                "Snapshots are declared but the last resource is not a snapshot; "
                "changes after it will not be captured"
            )
