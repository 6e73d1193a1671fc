#!/usr/bin/env python3
"""hostsync command line.

Usage:
    hostsync plan     [--profile PATH]
    hostsync apply    [--profile PATH] [--yes]
    hostsync validate [--profile PATH]
    hostsync log      [--level LEVEL] [--limit N]

Exit codes:
    0  host converged (or nothing to do)
    1  one or more actions failed, or preflight failed
    2  critical action failed; run aborted
    3  profile could not be parsed or validated
    4  another run holds the lock
"""
import argparse
import logging
import os
import pwd
import socket
import sys
from pathlib import Path
from typing import Optional

from .collaborators import create_collaborators, detect_acting_user
from .config import HostProfile, Settings
from .engine import (
    ParseError,
    PreflightError,
    Reconciler,
    RunContext,
    ValidationError,
    summarize_plan,
)
from .engine.errors import LockError
from .utils import ReportingSink, host_lock, read_run_log, setup_logging
from .utils.logging_config import SUCCESS, get_log_file

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURES = 1
EXIT_CRITICAL = 2
EXIT_PROFILE = 3
EXIT_LOCKED = 4
EXIT_INTERRUPTED = 130

OS_RELEASE_PATH = "/etc/os-release"


def read_os_release(path: str = OS_RELEASE_PATH) -> dict[str, str]:
    """Parse /etc/os-release into a dict."""
    values: dict[str, str] = {}
    try:
        with open(path, encoding="utf-8") as f:
            for line in f:
                key, sep, value = line.strip().partition("=")
                if sep and key and not key.startswith("#"):
                    values[key] = value.strip().strip('"').strip("'")
    except FileNotFoundError:
        logger.debug(f"{path} not found")
    return values


def build_context(dry_run: bool, os_release_path: str = OS_RELEASE_PATH) -> RunContext:
    """Resolve the acting user and host facts fixed for the run."""
    user = detect_acting_user()
    try:
        home = pwd.getpwnam(user).pw_dir
    except KeyError:
        home = str(Path.home())
    return RunContext(
        user=user,
        home=home,
        hostname=socket.gethostname(),
        os_release=read_os_release(os_release_path),
        dry_run=dry_run,
    )


def preflight(context: RunContext, expected_os_id: str) -> None:
    """Check that an apply may start on this host.

    Raises:
        PreflightError: Not root, or the OS does not match the profile
    """
    if os.geteuid() != 0:
        raise PreflightError("hostsync apply must run as root (use sudo)")

    os_ids = {context.os_id} | set(context.os_release.get("ID_LIKE", "").split())
    if expected_os_id and expected_os_id not in os_ids:
        raise PreflightError(
            f"Profile targets '{expected_os_id}' but this host runs "
            f"'{context.os_id or 'unknown'}'"
        )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="hostsync",
        description="Reconcile this workstation with its declarative profile",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # Show what would change
    hostsync plan

    # Apply without confirmation
    sudo hostsync apply --yes

    # Last 20 warnings and errors
    hostsync log --level warning --limit 20

Environment:
    HOSTSYNC_PROFILE     Profile path (searched first)
    HOSTSYNC_LOG_LEVEL   Run log level (default: INFO)
    HOSTSYNC_LOG_FILE    Run log path
    HOSTSYNC_LOCK_DIR    Lock directory (default: /run/hostsync)
""",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    for name, help_text in (
        ("plan", "Probe the host and print the plan (dry run)"),
        ("apply", "Apply the profile to this host"),
        ("validate", "Parse and validate the profile only"),
    ):
        cmd = sub.add_parser(name, help=help_text)
        cmd.add_argument(
            "--profile",
            type=str,
            help="Profile file (default: search HOSTSYNC_PROFILE, ./configs/host.yaml, ...)",
        )
        if name == "apply":
            cmd.add_argument(
                "-y", "--yes",
                action="store_true",
                help="Do not ask for confirmation",
            )

    log_cmd = sub.add_parser("log", help="Show recent run log entries")
    log_cmd.add_argument(
        "--level",
        type=str.upper,
        choices=["DEBUG", "INFO", "SUCCESS", "WARNING", "ERROR"],
        help="Only entries at or above this level",
    )
    log_cmd.add_argument(
        "--limit",
        type=int,
        default=50,
        help="Maximum number of entries (default: 50)",
    )
    return parser


def _load_profile(args: argparse.Namespace, settings: Settings, context: RunContext) -> HostProfile:
    return HostProfile(args.profile or settings.profile, context=context)


def cmd_validate(
    args: argparse.Namespace, settings: Settings, context: RunContext, sink: ReportingSink
) -> int:
    profile = _load_profile(args, settings, context)
    desired = profile.desired_state()
    reconciler = Reconciler(
        create_collaborators(context, settings.package_manager), context, sink, cleanup=False
    )
    validation = reconciler.validate(desired)

    if not validation.valid:
        for error in validation.errors:
            print(f"error: {error}", file=sys.stderr)
        return EXIT_PROFILE

    print(f"{profile.config_path}: {len(desired.resources)} resource(s), {profile.checksum}")
    return EXIT_OK


def cmd_plan(
    args: argparse.Namespace, settings: Settings, context: RunContext, sink: ReportingSink
) -> int:
    profile = _load_profile(args, settings, context)
    desired = profile.desired_state()
    collaborators = create_collaborators(
        context, settings.package_manager, download_retries=settings.download_retries
    )
    sink.info(f"Plan for {profile.config_path} ({profile.checksum})")
    print(Reconciler(collaborators, context, sink, cleanup=False).preview(desired))
    return EXIT_OK


def _confirm(count: int) -> bool:
    if not sys.stdin.isatty():
        return False
    answer = input(f"Apply {count} change(s)? [y/N] ").strip().lower()
    return answer in ("y", "yes")


def cmd_apply(
    args: argparse.Namespace, settings: Settings, context: RunContext, sink: ReportingSink
) -> int:
    profile = _load_profile(args, settings, context)
    desired = profile.desired_state()
    preflight(context, profile.expected_os_id)

    with host_lock(context.hostname, settings.lock_dir):
        collaborators = create_collaborators(
            context, settings.package_manager, download_retries=settings.download_retries
        )
        reconciler = Reconciler(collaborators, context, sink)
        sink.info(
            f"Run {context.run_id} as {context.user} on {context.hostname}: "
            f"{profile.config_path} ({profile.checksum})"
        )
        plan = reconciler.plan(desired)
        if not plan.no_change and not args.yes:
            print(summarize_plan(plan))
            if not _confirm(plan.total_changes):
                sink.warning("Apply cancelled; nothing was changed")
                return EXIT_OK

        summary = reconciler.apply(desired, plan)
        return summary.exit_code


def cmd_log(
    args: argparse.Namespace, settings: Settings, context: RunContext, sink: ReportingSink
) -> int:
    path = settings.log_file or str(get_log_file(context.home))
    entries = read_run_log(path, level=args.level, limit=args.limit)
    if not entries:
        print(f"No entries in {path}")
        return EXIT_OK
    for entry in reversed(entries):
        print(entry.format())
    return EXIT_OK


COMMANDS = {
    "plan": cmd_plan,
    "apply": cmd_apply,
    "validate": cmd_validate,
    "log": cmd_log,
}


def main(argv: Optional[list[str]] = None) -> int:
    """Main entry point for the hostsync CLI."""
    args = build_parser().parse_args(argv)
    settings = Settings.from_env()
    context = build_context(dry_run=args.command != "apply")

    if args.command != "log":
        level = SUCCESS if settings.log_level == "SUCCESS" else getattr(
            logging, settings.log_level, logging.INFO
        )
        log_file = Path(settings.log_file) if settings.log_file else None
        try:
            setup_logging(level=level, log_file=log_file, home=context.home, owner=context.user)
        except OSError as e:
            print(f"error: cannot open the run log: {e}", file=sys.stderr)
            return EXIT_FAILURES

    sink = ReportingSink()
    try:
        return COMMANDS[args.command](args, settings, context, sink)
    except FileNotFoundError as e:
        sink.error(str(e))
        return EXIT_PROFILE
    except (ParseError, ValidationError) as e:
        sink.error(f"Profile error: {e}")
        return EXIT_PROFILE
    except PreflightError as e:
        sink.error(f"Preflight failed: {e}")
        return EXIT_FAILURES
    except LockError as e:
        sink.error(str(e))
        return EXIT_LOCKED
    except KeyboardInterrupt:
        sink.warning("Interrupted; re-run to continue from the current state")
        return EXIT_INTERRUPTED
    finally:
        sink.close()


if __name__ == "__main__":
    sys.exit(main())
