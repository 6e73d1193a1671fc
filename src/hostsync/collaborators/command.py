"""Subprocess execution shared by all collaborators."""
import logging
import os
import shlex
import shutil
import subprocess
from typing import Mapping, Optional, Sequence

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 3600


class CommandResult:
    """Result of running one external command."""

    def __init__(
        self,
        success: bool,
        output: str = "",
        error: str = "",
        command: str = "",
        returncode: int = 0,
    ):
        self.success = success
        self.output = output
        self.error = error
        self.command = command
        self.returncode = returncode

    @classmethod
    def ok(cls, output: str = "", command: str = "") -> "CommandResult":
        return cls(True, output=output, command=command)

    @classmethod
    def failed(cls, error: str, command: str = "", returncode: int = 1) -> "CommandResult":
        return cls(False, error=error, command=command, returncode=returncode)

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "output": self.output,
            "error": self.error,
            "command": self.command,
            "returncode": self.returncode,
        }

    def __repr__(self) -> str:
        status = "OK" if self.success else "FAILED"
        return f"CommandResult({status}, rc={self.returncode}, command={self.command!r})"


def format_argv(argv: Sequence[str]) -> str:
    return " ".join(shlex.quote(a) for a in argv)


class CommandRunner:
    """Runs external commands with consistent logging.

    Every command line is logged at DEBUG together with its output, so the
    run log carries the full trail of what was executed.
    """

    def __init__(self, timeout: int = DEFAULT_TIMEOUT):
        self.timeout = timeout

    def run(
        self,
        argv: Sequence[str],
        *,
        as_user: Optional[str] = None,
        input_text: Optional[str] = None,
        env: Optional[Mapping[str, str]] = None,
        cwd: Optional[str] = None,
    ) -> CommandResult:
        """Run a command and capture its output.

        Args:
            argv: Command and arguments
            as_user: Run through ``sudo -u`` as this user
            input_text: Text fed to stdin
            env: Extra environment variables
            cwd: Working directory

        Returns:
            CommandResult; a non-zero exit is reported, never raised
        """
        argv_list = list(argv)
        if as_user:
            # sudo resets the environment; pass extras explicitly
            extra = [f"{k}={v}" for k, v in (env or {}).items()]
            if extra:
                argv_list = ["env"] + extra + argv_list
            argv_list = ["sudo", "-u", as_user, "-H", "--"] + argv_list
        command = format_argv(argv_list)
        logger.debug(f"Running: {command}")

        try:
            proc = subprocess.run(
                argv_list,
                input=input_text,
                capture_output=True,
                text=True,
                check=False,
                timeout=self.timeout,
                cwd=cwd,
                env=dict(os.environ, **(env or {})),
            )
        except FileNotFoundError:
            logger.debug(f"Command not found: {argv_list[0]}")
            return CommandResult.failed(
                f"command not found: {argv_list[0]}", command=command, returncode=127
            )
        except subprocess.TimeoutExpired:
            logger.debug(f"Command timed out after {self.timeout}s: {command}")
            return CommandResult.failed(
                f"timed out after {self.timeout}s", command=command, returncode=124
            )

        if proc.stdout:
            logger.debug(f"STDOUT {proc.stdout.strip()}")
        if proc.stderr:
            logger.debug(f"STDERR {proc.stderr.strip()}")

        return CommandResult(
            success=proc.returncode == 0,
            output=proc.stdout or "",
            error=(proc.stderr or "").strip(),
            command=command,
            returncode=proc.returncode,
        )

    def which(self, name: str) -> Optional[str]:
        return shutil.which(name)
