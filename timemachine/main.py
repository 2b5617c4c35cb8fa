#!/usr/bin/env python3
"""
Router Time Machine - Main Entry Point

Keeps a versioned history of router configuration files, optionally
mirrored to a git remote, with point-in-time restore.

Usage:
    python -m timemachine.main backup                  # Save current settings
    python -m timemachine.main backup --auto           # Scheduled, non-interactive
    python -m timemachine.main history                 # List restore points
    python -m timemachine.main restore 3f2a9c1         # Restore a snapshot
    python -m timemachine.main push                    # Upload to the mirror

Environment Variables:
    TIMEMACHINE_DEVICE_NAME     - Device label (default: hostname)
    TIMEMACHINE_BACKUP_DIR      - Snapshot store (default: /root/time-machine)
    TIMEMACHINE_MIRROR_URL      - Mirror address (git@host:user/repo.git)
    TIMEMACHINE_KEY_PATH        - Private key for the mirror (default: ~/.ssh/id_ed25519)

See config/settings.py for all configuration options.
"""

import argparse
import logging
import sys
from dataclasses import replace
from datetime import timedelta
from pathlib import Path
from typing import Optional

# Add project root to path for imports if running as script
if __name__ == "__main__" and __package__ is None:
    PROJECT_ROOT = Path(__file__).parent.parent
    sys.path.insert(0, str(PROJECT_ROOT))

from config.settings import load_settings, ConfigurationError
from timemachine.profile.models import Category, Schedule
from timemachine.service import OperationResult, Outcome, TimeMachine

logger = logging.getLogger(__name__)

EXIT_CODES = {
    Outcome.SUCCESS: 0,
    Outcome.NO_CHANGE: 0,
    Outcome.LOCK_BUSY: 2,
    Outcome.DIVERGED: 3,
}

FILE_DESCRIPTIONS = {
    "etc/config/network": "Network settings",
    "etc/config/wireless": "WiFi settings",
    "etc/config/firewall": "Firewall rules",
    "etc/config/dhcp": "DHCP settings",
    "etc/config/system": "System settings",
    "etc/config/dropbear": "SSH settings",
    "etc/config/uhttpd": "Web interface settings",
    "package-list.txt": "Installed packages",
}

OUTCOME_MESSAGES = {
    Outcome.NO_CHANGE: "Nothing changed since the last backup",
    Outcome.DIVERGED: "Router and online backup have different histories; run 'resolve'",
    Outcome.REMOTE_AHEAD: "Online backup has newer snapshots; run 'pull' then 'resolve adopt-remote'",
    Outcome.NETWORK_ERROR: "Can't reach the online backup. Check the internet connection",
    Outcome.AUTH_ERROR: "Online backup rejected the security key. Is it registered?",
    Outcome.LOCK_BUSY: "Another backup operation is running. Try again shortly",
    Outcome.PARTIAL_RESTORE_FAILURE: "Restore did not complete",
}


def describe_file(path: str) -> str:
    """Plain-language label for a logical path."""
    return FILE_DESCRIPTIONS.get(path, path)


def format_age(age: timedelta) -> str:
    seconds = int(age.total_seconds())
    if seconds < 60:
        return "just now"
    for unit, size in (("day", 86400), ("hour", 3600), ("minute", 60)):
        if seconds >= size:
            count = seconds // size
            return f"{count} {unit}{'s' if count != 1 else ''} ago"
    return "just now"


def setup_logging(verbose: bool = False, level: Optional[str] = None) -> None:
    """
    Configure logging for the application.

    Args:
        verbose: If True, enable DEBUG level logging
        level: Level name from settings, used when not verbose
    """
    if verbose:
        log_level = logging.DEBUG
    else:
        log_level = getattr(logging, (level or "INFO").upper(), logging.INFO)

    # Configure root logger
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        handlers=[
            logging.StreamHandler(sys.stdout),
        ],
        force=True,
    )

    # Reduce noise from external libraries
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("dulwich").setLevel(logging.WARNING)
    logging.getLogger("requests").setLevel(logging.WARNING)


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        prog="timemachine",
        description="Versioned backups of router configuration",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    timemachine init                              # Create the backup store
    timemachine backup --note "New WiFi channel"  # Save with a note
    timemachine compare 3f2a 9c1e                 # What changed between two backups
    timemachine mirror git@github.com:me/router.git
    timemachine resolve adopt-remote              # Keep the online history

Exit codes: 0 success, 1 error, 2 busy, 3 histories diverged
        """,
    )

    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose/debug logging",
    )

    parser.add_argument(
        "--env",
        type=Path,
        help="Path to config file (default: ~/.timemachine/config)",
    )

    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser("init", help="Create the snapshot store")

    backup = commands.add_parser("backup", help="Save the current settings")
    backup.add_argument("--note", help="What changed (optional)")
    backup.add_argument(
        "--auto",
        action="store_true",
        help="Scheduled run: no prompts, push if a mirror is set up",
    )

    commands.add_parser("status", help="Show unsaved changes")

    history = commands.add_parser("history", help="List restore points")
    history.add_argument("--limit", type=int, default=20)

    compare = commands.add_parser("compare", help="Files changed between two snapshots")
    compare.add_argument("older")
    compare.add_argument("newer")

    preview = commands.add_parser("preview", help="What a restore would change")
    preview.add_argument("snapshot")

    restore = commands.add_parser("restore", help="Restore a snapshot to the live files")
    restore.add_argument("snapshot")

    mirror = commands.add_parser("mirror", help="Set the online backup address")
    mirror.add_argument("address")

    commands.add_parser("verify", help="Test the connection to the online backup")
    commands.add_parser("push", help="Upload new snapshots")
    commands.add_parser("pull", help="Download online snapshots (HEAD is not moved)")

    remote_history = commands.add_parser("remote-history", help="List online snapshots")
    remote_history.add_argument("--limit", type=int, default=20)

    resolve = commands.add_parser("resolve", help="Reconcile diverged histories")
    resolve.add_argument("strategy", choices=["adopt-remote", "replay-local"])

    commands.add_parser("health", help="Run backup health checks")

    export = commands.add_parser("export", help="Export the store (directory, URL or user@host:path)")
    export.add_argument("destination")

    profile = commands.add_parser("profile", help="Show or change what is backed up")
    profile.add_argument(
        "--select",
        nargs="+",
        default=[],
        choices=[c.value for c in Category],
        metavar="CATEGORY",
    )
    profile.add_argument(
        "--deselect",
        nargs="+",
        default=[],
        choices=[c.value for c in Category],
        metavar="CATEGORY",
    )
    profile.add_argument("--schedule", choices=[s.value for s in Schedule])

    commands.add_parser("identity", help="Show the public key, creating it if needed")

    return parser.parse_args(argv)


def report_outcome(result: OperationResult) -> None:
    message = OUTCOME_MESSAGES.get(result.outcome)
    if result.outcome is Outcome.NO_CHANGE:
        logger.info(message)
        return
    logger.error(f"{result.operation}: {message or result.error}")
    if result.outcome is Outcome.PARTIAL_RESTORE_FAILURE:
        error = result.error
        logger.error(f"Not restored:          {', '.join(describe_file(p) for p in error.failed)}")
        logger.error(f"Rolled back:           {len(error.rolled_back)}")
        if error.unrecovered:
            logger.error(f"Could not roll back:   {', '.join(error.unrecovered)}")


def show_changes(changes: list) -> None:
    if not changes:
        logger.info("No changes")
        return
    for change in changes:
        label = change.label or change.path
        logger.info(f"  {change.change_type.value:<9} {label}")


def show_history(entries: list) -> None:
    if not entries:
        logger.info("No backups yet")
        return
    logger.info("=" * 50)
    for entry in entries:
        logger.info(f"{entry.short_id}  {format_age(entry.age):<16} {entry.message}")
    logger.info("=" * 50)


def show_health(report) -> None:
    logger.info("=" * 50)
    logger.info("Backup Health")
    logger.info("=" * 50)
    for check in report.checks:
        value = format_age(check.value) if isinstance(check.value, timedelta) else check.value
        logger.info(f"{check.status.value.upper():<8} {check.check:<22} {value if value is not None else ''}")
    logger.info("=" * 50)
    if report.warnings or report.failures:
        logger.warning(f"Found {len(report.warnings) + len(report.failures)} issue(s)")


def run_command(args: argparse.Namespace, machine: TimeMachine) -> OperationResult:
    command = args.command

    if command == "init":
        result = machine.initialize()
        if result.ok:
            logger.info("Store created" if result.data else "Store already exists")
    elif command == "backup":
        result = machine.backup_now(note=args.note, auto=args.auto)
        if result.outcome is Outcome.SUCCESS:
            logger.info(f"Backup saved: {result.data}")
    elif command == "status":
        result = machine.status(labeler=describe_file)
        if result.ok:
            show_changes(result.data)
    elif command == "history":
        result = machine.view_history(limit=args.limit)
        if result.ok:
            show_history(result.data)
    elif command == "compare":
        result = machine.compare(args.older, args.newer)
        if result.ok:
            show_changes([replace(change, label=describe_file(change.path)) for change in result.data])
    elif command == "preview":
        result = machine.preview(args.snapshot, labeler=describe_file)
        if result.ok:
            show_changes(result.data)
    elif command == "restore":
        result = machine.restore(args.snapshot)
        if result.ok:
            logger.info(str(result.data))
            logger.info("Run 'backup' to record the restored settings")
    elif command == "mirror":
        result = machine.setup_mirror(args.address)
        if result.ok:
            logger.info("Online backup configured. Run 'verify' to test it")
    elif command == "verify":
        result = machine.verify_mirror()
        if result.ok:
            logger.info(f"Online backup reachable ({result.data.state.value})")
    elif command in ("push", "pull"):
        result = machine.sync_push() if command == "push" else machine.sync_pull()
        if result.ok:
            logger.info(str(result.data))
    elif command == "remote-history":
        result = machine.list_remote(limit=args.limit)
        if result.ok:
            show_history(result.data)
    elif command == "resolve":
        result = machine.resolve(args.strategy.replace("-", "_"))
        if result.ok:
            resolved = result.data
            logger.info(f"HEAD now at {resolved.head[:7] if resolved.head else 'empty'}")
            if resolved.kept_ref:
                logger.info(f"Previous history kept as {resolved.kept_ref}")
    elif command == "health":
        result = machine.health_check()
        if result.ok:
            show_health(result.data)
    elif command == "export":
        result = machine.export(args.destination)
        if result.ok:
            logger.info(f"Exported {result.data.archive_name} to {result.data.destination}")
    elif command == "profile":
        result = machine.update_profile(
            select=args.select,
            deselect=args.deselect,
            schedule=args.schedule,
        )
        if result.ok:
            for key, value in result.data.to_dict().items():
                logger.info(f"{key}={value}")
    elif command == "identity":
        result = machine.ensure_identity()
        if result.ok:
            logger.info("Register this public key with your online backup service:")
            logger.info(result.data)
    else:
        raise ValueError(f"Unknown command: {command}")

    if not result.ok or result.outcome is Outcome.NO_CHANGE:
        report_outcome(result)
    return result


def main(argv: Optional[list[str]] = None) -> int:
    """
    Main entry point.

    Returns:
        Exit code (0 success, 1 error, 2 lock busy, 3 diverged, 130 interrupted)
    """
    args = parse_args(argv)
    setup_logging(verbose=args.verbose)

    # Load configuration
    try:
        settings = load_settings(env_file=args.env)
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        logger.error("Please check ~/.timemachine/config or environment variables")
        return 1

    if not args.verbose:
        setup_logging(level=settings.log_level)

    try:
        machine = TimeMachine(settings)
        result = run_command(args, machine)
        return EXIT_CODES.get(result.outcome, 1)

    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 130
    except Exception as e:
        logger.error(f"Unexpected error: {e}", exc_info=True)
        return 1


if __name__ == "__main__":
    sys.exit(main())
