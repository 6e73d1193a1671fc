"""Parser for desired state profiles.

Converts the dict loaded from a YAML profile to a typed DesiredState.
"""
import hashlib
import json
from typing import Any

from .errors import ParseError
from .schema import (
    DesiredState,
    ResourceKind,
    ResourceSpec,
    ResourceState,
)

# Keys of a resource entry that are not kind parameters
RESERVED_KEYS = {"kind", "id", "state", "precondition"}

# Parameters that must be lists of strings
LIST_PARAMS = {"packages", "apps", "lines", "argv", "unless", "notify"}


class DesiredStateParser:
    """Parse desired state from dict/YAML format."""

    def parse(self, config: dict[str, Any]) -> DesiredState:
        """
        Parse a profile dict into a DesiredState object.

        Args:
            config: Dict with host, defaults and resources

        Returns:
            DesiredState object

        Raises:
            ParseError: If the profile is malformed
        """
        if not isinstance(config, dict):
            raise ParseError("Profile must be a mapping")

        host = config.get("host") or {}
        if not isinstance(host, dict):
            raise ParseError("'host' must be a mapping")

        defaults = config.get("defaults") or {}
        if not isinstance(defaults, dict):
            raise ParseError("'defaults' must be a mapping of kind to parameters")
        for kind in defaults:
            self._kind(kind, f"defaults.{kind}")

        entries = config.get("resources")
        if entries is None:
            raise ParseError("Missing required field: resources")
        if not isinstance(entries, list):
            raise ParseError("'resources' must be a list")

        resources = [
            self._parse_resource(entry, index, defaults)
            for index, entry in enumerate(entries)
        ]

        try:
            version = int(config.get("version", 1))
        except (TypeError, ValueError):
            raise ParseError(f"Invalid version: {config.get('version')}")

        return DesiredState(
            host=str(host.get("hostname", "")),
            version=version,
            checksum=config.get("checksum"),
            os_id=host.get("os_id"),
            resources=resources,
        )

    def _kind(self, value: Any, where: str) -> ResourceKind:
        try:
            return ResourceKind(value)
        except ValueError:
            valid = ", ".join(k.value for k in ResourceKind)
            raise ParseError(f"{where}: unknown kind '{value}'. Valid: {valid}")

    def _parse_resource(
        self,
        entry: Any,
        index: int,
        defaults: dict[str, Any],
    ) -> ResourceSpec:
        where = f"resources[{index}]"
        if not isinstance(entry, dict):
            raise ParseError(f"{where}: must be a mapping")

        if "kind" not in entry:
            raise ParseError(f"{where}: missing 'kind'")
        kind = self._kind(entry["kind"], where)

        identity = entry.get("id")
        if identity is None or str(identity).strip() == "":
            raise ParseError(f"{where}: missing 'id'")
        identity = str(identity).strip()
        where = f"{where} ({kind.value}:{identity})"

        try:
            state = ResourceState(entry.get("state", "present"))
        except ValueError:
            raise ParseError(
                f"{where}: invalid state '{entry.get('state')}'. Must be 'present' or 'absent'"
            )

        precondition = entry.get("precondition")
        if isinstance(precondition, list):
            if not all(isinstance(p, str) for p in precondition):
                raise ParseError(f"{where}: precondition list must hold strings")
        elif precondition is not None and not isinstance(precondition, str):
            raise ParseError(f"{where}: precondition must be a string or list of strings")

        parameters = dict(defaults.get(kind.value) or {})
        parameters.update({k: v for k, v in entry.items() if k not in RESERVED_KEYS})
        self._normalize(parameters, where)

        return ResourceSpec(
            kind=kind,
            identity=identity,
            state=state,
            parameters=parameters,
            precondition=precondition,
        )

    def _normalize(self, parameters: dict[str, Any], where: str) -> None:
        """Coerce list parameters and check swap entries in place."""
        for name in LIST_PARAMS & parameters.keys():
            value = parameters[name]
            if isinstance(value, str):
                parameters[name] = [value]
            elif isinstance(value, list):
                parameters[name] = [str(v) for v in value]
            else:
                raise ParseError(f"{where}: '{name}' must be a list of strings")

        # YAML reads an unquoted 0644 as the integer 420
        mode = parameters.get("mode")
        if isinstance(mode, int) and not isinstance(mode, bool):
            parameters["mode"] = format(mode, "04o")

        swaps = parameters.get("swaps")
        if swaps is None:
            return
        if not isinstance(swaps, list):
            raise ParseError(f"{where}: 'swaps' must be a list")
        for swap in swaps:
            if not isinstance(swap, dict) or not swap.get("from") or not swap.get("to"):
                raise ParseError(f"{where}: each swap needs 'from' and 'to'")


def parse_config(config: dict[str, Any]) -> DesiredState:
    """Convenience function to parse a profile dict."""
    return DesiredStateParser().parse(config)


def compute_checksum(config: dict[str, Any]) -> str:
    """
    Compute SHA256 checksum of a profile dict.

    Logged at run start to identify which profile a run applied.
    """
    config_copy = {k: v for k, v in config.items() if k != "checksum"}
    config_str = json.dumps(config_copy, sort_keys=True, separators=(",", ":"), default=str)
    hash_bytes = hashlib.sha256(config_str.encode()).hexdigest()
    return f"sha256:{hash_bytes[:16]}"
