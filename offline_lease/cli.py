"""Command-line interface for offline-lease.

Each sub-command performs exactly one tracker operation and exits. Periodic
heartbeats are left to whatever scheduler invokes ``offline-lease heartbeat``.
"""

from __future__ import annotations

import argparse
import getpass
import logging
import sys
from typing import Sequence

from .config import ConfigurationError, LeaseConfig, load_lease_config
from .model import Credential, HeartbeatResult, LoginResult, UsageStats
from .session import UsageTracker
from .store import SecureStateStore

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_CLOCK_MANIPULATION = 2

LOW_BUDGET_FRACTION = 0.50
CRITICAL_BUDGET_FRACTION = 0.10


class CLIError(RuntimeError):
    """Raised when CLI arguments are invalid."""


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Offline usage lease tracker")
    parser.add_argument("--config", default=None, help="Path to a YAML config file")
    parser.add_argument(
        "--storage-dir",
        default=None,
        help="Directory holding encrypted usage records (overrides config)",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    commands = {
        "online": "record an online login and reset the offline budget",
        "offline": "start an offline session",
        "heartbeat": "accrue offline time since the last check-in",
        "status": "show stored usage without modifying it",
    }
    for name, help_text in commands.items():
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument("--username", required=True, help="Account username (case-insensitive)")
        sub.add_argument(
            "--password",
            default=None,
            help="Account password; prompted for when omitted",
        )
    return parser


def _credential_from_args(args: argparse.Namespace) -> Credential:
    password = args.password
    if password is None:
        password = getpass.getpass("Password: ")
    if not args.username:
        raise CLIError("username must not be empty")
    return Credential(username=args.username, password=password)


def _build_tracker(args: argparse.Namespace) -> tuple[UsageTracker, LeaseConfig]:
    overrides = {"storage_dir": args.storage_dir} if args.storage_dir else None
    config = load_lease_config(config_path=args.config, overrides=overrides)
    store = SecureStateStore(config.storage_dir, kdf_iterations=config.kdf_iterations)
    tracker = UsageTracker(store, max_offline_hours=config.max_offline_hours)
    return tracker, config


def format_stats(stats: UsageStats | None, max_offline_hours: float) -> list[str]:
    if stats is None:
        return ["Unable to retrieve statistics"]

    lines: list[str] = []
    if stats.time_manipulation_detected:
        lines.append("WARNING: Time manipulation detected!")
    if stats.is_currently_online:
        lines.append("Status: Online (no time limit)")
        return lines

    session_hours = stats.current_session_duration.total_seconds() / 3600
    lines.extend(
        [
            "Status: Offline",
            f"  Remaining: {stats.remaining_offline_hours:.4f} hours",
            f"  Used: {stats.total_offline_hours:.4f} hours",
            f"  Session: {session_hours:.4f} hours",
        ]
    )
    critical = max_offline_hours * CRITICAL_BUDGET_FRACTION
    low = max_offline_hours * LOW_BUDGET_FRACTION
    if stats.remaining_offline_hours < critical:
        lines.append(f"  CRITICAL: less than {critical:.1f} hours left!")
    elif stats.remaining_offline_hours < low:
        lines.append(f"  Low: less than {low:.1f} hours remaining")
    return lines


def _report(result: LoginResult | HeartbeatResult, max_offline_hours: float) -> int:
    print(("OK: " if result.success else "ERROR: ") + result.message)
    if result.stats is not None:
        for line in format_stats(result.stats, max_offline_hours):
            print(line)
    if isinstance(result, HeartbeatResult) and result.clock_manipulation_detected:
        return EXIT_CLOCK_MANIPULATION
    return EXIT_OK if result.success else EXIT_FAILURE


def cmd_status(tracker: UsageTracker, credential: Credential, config: LeaseConfig) -> int:
    state = tracker.session_state(credential)
    print(f"State: {state.name.lower()}")
    stats = tracker.usage_stats(credential)
    for line in format_stats(stats, config.max_offline_hours):
        print(line)
    return EXIT_OK if stats is not None else EXIT_FAILURE


def main(argv: Sequence[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        tracker, config = _build_tracker(args)
        credential = _credential_from_args(args)
        if args.command == "online":
            return _report(tracker.process_online_login(credential), config.max_offline_hours)
        if args.command == "offline":
            return _report(tracker.process_offline_login(credential), config.max_offline_hours)
        if args.command == "heartbeat":
            return _report(tracker.update_heartbeat(credential), config.max_offline_hours)
        if args.command == "status":
            return cmd_status(tracker, credential, config)
        raise CLIError(f"Unknown command: {args.command}")  # pragma: no cover - argparse enforces choices
    except KeyboardInterrupt:  # pragma: no cover - interactive use
        logger.info("Interrupted by user")
        return EXIT_FAILURE
    except (CLIError, ConfigurationError, OSError) as exc:
        parser.exit(EXIT_FAILURE, f"error: {exc}\n")


if __name__ == "__main__":
    sys.exit(main(sys.argv[1:]))
