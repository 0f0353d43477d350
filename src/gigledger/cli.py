"""gigledger CLI — command-line interface for the marketplace core.

Usage:
    python -m gigledger.cli status
    python -m gigledger.cli fee-quote --price 800
    python -m gigledger.cli run-script scenario.json --event-log events.jsonl
    python -m gigledger.cli verify-log events.jsonl --since 2026-02-16T00:00:00Z

A script is a JSON list of actions, or an object with an "actions" list.
Each action names a service method, the calling principal and its
parameters, and optionally the expected outcome ("success" by default,
or a failure reason):

    {"actions": [
        {"action": "register_user", "caller": "alice", "is_client": true,
         "is_freelancer": false},
        {"action": "create_job", "caller": "alice", "title": "API",
         "description": "Build it", "price": 1000, "deposit": 1000},
        {"action": "cancel_job", "caller": "mallory", "job_id": 1,
         "expect": "unauthorized"}
    ]}
"""

from __future__ import annotations

import argparse
import dataclasses
import json
import logging
import sys
from pathlib import Path
from typing import Any, Optional

from gigledger.config import MarketplaceConfig
from gigledger.ledger.fees import split_price
from gigledger.persistence.event_log import EventLog
from gigledger.service import MarketplaceService, ServiceResult

WRITE_ACTIONS = (
    "register_user",
    "create_job",
    "edit_job",
    "apply_for_job",
    "assign_job",
    "complete_job",
    "release_payment",
    "cancel_job",
    "raise_dispute",
    "give_rating",
)


def _make_service(args: argparse.Namespace, event_log_path: Optional[Path] = None) -> MarketplaceService:
    """Create a MarketplaceService from the environment and CLI flags."""
    config = MarketplaceConfig.from_env(args.env_file)
    if event_log_path is not None:
        config = dataclasses.replace(config, event_log_path=event_log_path)
    return MarketplaceService(config)


def _outcome(result: ServiceResult) -> str:
    return "success" if result.success else result.reason.value


def cmd_status(args: argparse.Namespace) -> int:
    service = _make_service(args)
    print(json.dumps(service.status(), indent=2))
    return 0


def cmd_fee_quote(args: argparse.Namespace) -> int:
    """Show how a price would be split at release."""
    config = MarketplaceConfig.from_env(args.env_file)
    try:
        split = split_price(args.price, config.platform_fee_percent)
    except ValueError as e:
        print(f"Failed: {e}", file=sys.stderr)
        return 1
    print(json.dumps(dataclasses.asdict(split), indent=2))
    return 0


def cmd_run_script(args: argparse.Namespace) -> int:
    """Run a scripted sequence of actions against a fresh marketplace."""
    try:
        script = json.loads(args.script.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        print(f"Failed to read script: {e}", file=sys.stderr)
        return 1

    actions = script.get("actions") if isinstance(script, dict) else script
    if not isinstance(actions, list):
        print(
            "Failed: script must be a list of actions or an object with an \"actions\" list",
            file=sys.stderr,
        )
        return 1

    service = _make_service(args, args.event_log)
    mismatches = 0
    for step, entry in enumerate(actions, 1):
        if not isinstance(entry, dict):
            print(f"Failed: step {step} is not an object: {entry!r}", file=sys.stderr)
            return 1
        params = dict(entry)
        action = params.pop("action", None)
        expect = params.pop("expect", "success")
        if action not in WRITE_ACTIONS:
            print(f"Step {step}: unknown action {action!r}", file=sys.stderr)
            return 1
        try:
            result = getattr(service, action)(**params)
        except TypeError as e:
            print(f"Step {step}: bad parameters for {action}: {e}", file=sys.stderr)
            return 1

        outcome = _outcome(result)
        line: dict[str, Any] = {"step": step, "action": action, "outcome": outcome}
        if result.data:
            line["data"] = result.data
        if result.errors:
            line["errors"] = result.errors
        if outcome != expect:
            line["expected"] = expect
            mismatches += 1
        print(json.dumps(line, default=str))

    print(json.dumps({"status": service.status()}, indent=2))
    return 1 if mismatches else 0


def cmd_verify_log(args: argparse.Namespace) -> int:
    """Load an event log, checking every record hash."""
    if not args.path.exists():
        print(f"Failed: no such file: {args.path}", file=sys.stderr)
        return 1
    try:
        log = EventLog(storage_path=args.path)
    except (ValueError, KeyError, json.JSONDecodeError) as e:
        print(f"Failed: {e}", file=sys.stderr)
        return 1
    summary: dict[str, Any] = {"events": log.count, "by_kind": log.counts_by_kind()}
    last = log.last_event
    if last is not None:
        summary["last_event"] = {"event_id": last.event_id, "timestamp_utc": last.timestamp_utc}
    if args.since:
        summary["since"] = [e.to_dict() for e in log.events_since(args.since)]
    print(json.dumps(summary, indent=2))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="gigledger",
        description="gigledger — escrow-backed job marketplace core",
    )
    parser.add_argument(
        "--env-file",
        type=Path,
        default=None,
        help="Optional .env file with GIGLEDGER_* settings",
    )
    parser.add_argument(
        "--log-level",
        default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: WARNING)",
    )

    sub = parser.add_subparsers(dest="command")

    # status
    sub.add_parser("status", help="Show marketplace status")

    # fee-quote
    p_fee = sub.add_parser("fee-quote", help="Show the payout split for a price")
    p_fee.add_argument("--price", type=int, required=True, help="Job price (integer units)")

    # run-script
    p_run = sub.add_parser("run-script", help="Run a JSON action script")
    p_run.add_argument("script", type=Path, help="Path to the JSON script")
    p_run.add_argument("--event-log", type=Path, default=None, help="Mirror events to this JSONL file")

    # verify-log
    p_verify = sub.add_parser("verify-log", help="Verify a JSONL event log")
    p_verify.add_argument("path", type=Path, help="Path to the JSONL event log")
    p_verify.add_argument(
        "--since",
        default=None,
        help="Also print events at or after this UTC timestamp (YYYY-MM-DDTHH:MM:SSZ)",
    )

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.command is None:
        parser.print_help()
        return 0

    commands = {
        "status": cmd_status,
        "fee-quote": cmd_fee_quote,
        "run-script": cmd_run_script,
        "verify-log": cmd_verify_log,
    }
    handler = commands.get(args.command)
    if handler is None:
        print(f"Unknown command: {args.command}", file=sys.stderr)
        return 1
    try:
        return handler(args)
    except ValueError as e:
        print(f"Failed: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
