"""Dunning Notifier -- Command Line Entry Point.

Subcommands::

    # One guarded scan + dispatch cycle, summary on stdout:
    python -m dunning_notifier.main run-now

    # Arm the recurring timer and block until Ctrl+C:
    python -m dunning_notifier.main serve

    # Show when the configured schedule fires next:
    python -m dunning_notifier.main next-fire

    # Clear all markers of one obligation (audited):
    python -m dunning_notifier.main reset COB-123 --actor support

Every subcommand accepts ``--config path/to/config.yaml`` and ``--verbose``.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
import time
from datetime import timezone

import yaml

from .automation import NotificationAutomation
from .clock import CalendarClock
from .config import NotifierConfig, get_config
from .exceptions import NotifierError
from .scheduler import compute_next_fire, format_time_remaining

logger = logging.getLogger(__name__)

_LOG_FORMAT = "%(asctime)s | %(levelname)-7s | %(name)s | %(message)s"


def _configure_logging(cfg: NotifierConfig, verbose: bool) -> None:
    level = logging.DEBUG if verbose else getattr(logging, cfg.output.log_level.upper(), logging.INFO)
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    log_file = cfg.output.resolved_log_file()
    if log_file is not None:
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))
    logging.basicConfig(level=level, format=_LOG_FORMAT, datefmt="%H:%M:%S", handlers=handlers)
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)


# ---------------------------------------------------------------------------
# Subcommands
# ---------------------------------------------------------------------------

def cmd_run_now(cfg: NotifierConfig, args: argparse.Namespace) -> int:
    automation = NotificationAutomation.from_config(cfg)
    report = automation.run_now()
    if args.json:
        print(json.dumps(report.to_dict(), indent=2, ensure_ascii=False))
    else:
        print()
        print("=" * 65)
        print("  Dunning Notifier -- Run Summary")
        print("=" * 65)
        print(report.summary())
        print("=" * 65)
    if report.error:
        return 1
    return 0


def cmd_serve(cfg: NotifierConfig, args: argparse.Namespace) -> int:
    if not cfg.schedule.enabled:
        print("Schedule is disabled in config (schedule.enabled: false); nothing to serve.")
        return 0

    automation = NotificationAutomation.from_config(cfg)
    automation.start()
    info = automation.get_next_fire_info()
    print(f"Scheduler armed ({cfg.schedule.describe()}); next fire "
          f"{info.next_fire_time:%Y-%m-%d %H:%M %Z} (in {info.time_remaining}). Ctrl+C to stop.")
    try:
        while True:
            time.sleep(60)
    except KeyboardInterrupt:
        print("\nStopping scheduler...")
    finally:
        automation.shutdown()
    return 0


def cmd_next_fire(cfg: NotifierConfig, args: argparse.Namespace) -> int:
    clock = CalendarClock(cfg.timezone)
    now = clock.now()
    next_fire = compute_next_fire(cfg.schedule, now)
    payload = {
        "schedule": cfg.schedule.describe(),
        "next_fire_time": next_fire.isoformat(),
        "next_fire_time_utc": next_fire.astimezone(timezone.utc).isoformat(),
        "time_remaining": format_time_remaining(next_fire - now),
        "enabled": cfg.schedule.enabled,
    }
    if args.json:
        print(json.dumps(payload, indent=2))
    else:
        print(f"Schedule       : {payload['schedule']}")
        print(f"Next fire      : {next_fire:%Y-%m-%d %H:%M} ({cfg.timezone})")
        print(f"Time remaining : {payload['time_remaining']}")
        if not cfg.schedule.enabled:
            print("NOTE: schedule.enabled is false; `serve` will not arm the timer.")
    return 0


def cmd_reset(cfg: NotifierConfig, args: argparse.Namespace) -> int:
    automation = NotificationAutomation.from_config(cfg)
    if automation.reset_obligation_markers(args.obligation_id, actor=args.actor):
        print(f"Markers cleared for obligation {args.obligation_id}")
        return 0
    print(f"Obligation {args.obligation_id} not found")
    return 1


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="dunning-notifier",
        description="Milestone-based dunning notifications over WhatsApp and e-mail",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=(
            "Examples:\n"
            "  python -m dunning_notifier.main run-now\n"
            "  python -m dunning_notifier.main serve --config config.yaml\n"
            "  python -m dunning_notifier.main next-fire --json\n"
            "  python -m dunning_notifier.main reset COB-123\n"
        ),
    )
    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="Path to config.yaml (default: project root config.yaml)",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable verbose (DEBUG) logging",
    )

    sub = parser.add_subparsers(dest="command", required=True)

    run_now = sub.add_parser("run-now", help="Run one scan + dispatch cycle now")
    run_now.add_argument("--json", action="store_true", help="Print the run report as JSON")
    run_now.set_defaults(func=cmd_run_now)

    serve = sub.add_parser("serve", help="Arm the recurring schedule and block")
    serve.set_defaults(func=cmd_serve)

    next_fire = sub.add_parser("next-fire", help="Show the next scheduled fire time")
    next_fire.add_argument("--json", action="store_true", help="Print as JSON")
    next_fire.set_defaults(func=cmd_next_fire)

    reset = sub.add_parser("reset", help="Clear every milestone marker of one obligation")
    reset.add_argument("obligation_id")
    reset.add_argument("--actor", default="cli", help="Name recorded in the audit log")
    reset.set_defaults(func=cmd_reset)

    return parser


def main(argv: list[str] | None = None) -> int:
    """CLI entry point.

    Returns:
        Exit code (0 = success, 1 = error).
    """
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        cfg = get_config(args.config)
    except (NotifierError, ValueError, yaml.YAMLError) as exc:
        print(f"\nCONFIG ERROR: {exc}")
        return 1

    _configure_logging(cfg, args.verbose)

    try:
        return args.func(cfg, args)
    except NotifierError as exc:
        logger.error("%s", exc)
        print(f"\nERROR: {exc}")
        return 1
    except Exception as exc:
        logger.exception("Unexpected error")
        print(f"\nUNEXPECTED ERROR: {exc}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
