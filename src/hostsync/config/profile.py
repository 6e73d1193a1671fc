"""Host profile loading from YAML configuration."""
import logging
import os
from pathlib import Path
from string import Template
from typing import Any, Optional

import yaml

from ..engine.errors import ParseError
from ..engine.parser import DesiredStateParser, compute_checksum
from ..engine.schema import DesiredState, RunContext

logger = logging.getLogger(__name__)


def profile_search_paths(home: Optional[str] = None) -> list[Path]:
    """Candidate profile locations, in the order they are tried."""
    base = Path(home) if home else Path.home()
    paths = []
    env_path = os.environ.get("HOSTSYNC_PROFILE")
    if env_path:
        paths.append(Path(env_path))
    paths += [
        Path.cwd() / "configs" / "host.yaml",
        Path.cwd() / "host.yaml",
        base / ".config" / "hostsync" / "host.yaml",
        Path("/etc/hostsync/host.yaml"),
    ]
    return paths


def substitute(value: Any, variables: dict[str, str]) -> Any:
    """Replace ``$user``, ``$home`` and ``$fedora`` in every string of a tree.

    Unknown ``$names`` (shell variables in commands) are left untouched.
    """
    if isinstance(value, str):
        return Template(value).safe_substitute(variables)
    if isinstance(value, list):
        return [substitute(v, variables) for v in value]
    if isinstance(value, dict):
        return {k: substitute(v, variables) for k, v in value.items()}
    return value


class HostProfile:
    """The desired state profile of this host, loaded from YAML.

    ```yaml
    host:
      hostname: workstation
      os_id: fedora
    defaults:
      dotfile:
        owner: user
    resources:
      - kind: package_set
        id: tools
        packages: [git, vim]
    ```
    """

    def __init__(self, config_path: Optional[str] = None, context: Optional[RunContext] = None):
        self.context = context
        self.config_path = config_path or self._find_config()
        self._config: dict = {}
        self._load_config()

    def _find_config(self) -> str:
        """Find the host.yaml profile."""
        home = self.context.home if self.context else None
        for path in profile_search_paths(home):
            if path.exists():
                return str(path)

        raise FileNotFoundError(
            "Could not find host.yaml. Create one in ./configs/host.yaml "
            "or set HOSTSYNC_PROFILE"
        )

    def _load_config(self) -> None:
        """Load the YAML profile and substitute run variables."""
        try:
            with open(self.config_path, encoding="utf-8") as f:
                config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ParseError(f"{self.config_path}: invalid YAML: {e}")

        if not isinstance(config, dict):
            raise ParseError(f"{self.config_path}: profile must be a mapping")

        if self.context:
            config = substitute(config, self.variables)
        self._config = config
        logger.debug(f"Loaded profile {self.config_path}")

    @property
    def variables(self) -> dict[str, str]:
        if not self.context:
            return {}
        return {
            "user": self.context.user,
            "home": self.context.home,
            "fedora": self.context.os_version,
        }

    @property
    def raw(self) -> dict:
        return self._config

    @property
    def checksum(self) -> str:
        return compute_checksum(self._config)

    @property
    def expected_os_id(self) -> str:
        host = self._config.get("host") or {}
        return str(host.get("os_id", "fedora")) if isinstance(host, dict) else "fedora"

    def desired_state(self) -> DesiredState:
        """Parse the profile into a DesiredState.

        Raises:
            ParseError: The profile is malformed
        """
        desired = DesiredStateParser().parse(self._config)
        desired.checksum = desired.checksum or self.checksum
        return desired
