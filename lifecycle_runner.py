#!/usr/bin/env python3
"""Operator CLI for campaign round lifecycles."""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any

from lifecycle.bootstrap import build_components
from lifecycle.config import LifecycleConfig
from lifecycle.errors import LifecycleError
from lifecycle.models import STAGES


def _load_rounds(path: str) -> dict[str, Any]:
    raw = sys.stdin.read() if path == "-" else Path(path).read_text(encoding="utf-8")
    data = json.loads(raw)
    if isinstance(data, list):
        return {"rounds": data}
    if not isinstance(data, dict) or not isinstance(data.get("rounds"), list):
        raise ValueError("rounds file must be a list of rounds or an object with a 'rounds' list")
    return data


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Manage campaign round lifecycles.")
    parser.add_argument("--dry-run", action="store_true", help="Use in-memory store/queue and print chat messages.")
    sub = parser.add_subparsers(dest="command", required=True)

    register = sub.add_parser("register", help="Register a campaign and schedule all of its rounds.")
    register.add_argument("campaign", help="Unique campaign name.")
    register.add_argument("rounds_file", help="JSON file with the rounds, or - for stdin.")
    register.add_argument("--channel", default="", help="Chat channel for this campaign's notifications.")

    status = sub.add_parser("status", help="Show a round's status, jobs and maintenance logs.")
    status.add_argument("round_id")

    jobs = sub.add_parser("jobs", help="Show a round's per-step job state.")
    jobs.add_argument("round_id")

    trigger = sub.add_parser("trigger", help="Fire a step now, subject to the usual status check.")
    trigger.add_argument("round_id")
    trigger.add_argument("stage", choices=STAGES)

    reschedule = sub.add_parser("reschedule", help="Move a scheduled or ready round to a new launch time.")
    reschedule.add_argument("round_id")
    reschedule.add_argument("scheduled_at", help="New launch time, ISO 8601 UTC.")

    cancel = sub.add_parser("cancel", help="Cancel a round and its pending jobs.")
    cancel.add_argument("round_id")

    resume = sub.add_parser("resume", help="Release a blocked round.")
    resume.add_argument("round_id")
    resume.add_argument("--scheduled-at", default=None, help="New launch time when the old one has passed.")
    resume.add_argument(
        "--external-campaign-id",
        default=None,
        help="Provider campaign id, when the send was verified to have happened.",
    )

    clear_halt = sub.add_parser("clear-halt", help="Clear a maintenance halt after manual reconciliation.")
    clear_halt.add_argument("round_id")

    sub.add_parser("resync", help="Re-register jobs for every open round and report lost rounds.")
    return parser


def run_command(args: argparse.Namespace, orchestrator: Any) -> dict[str, Any]:
    if args.command == "register":
        data = _load_rounds(args.rounds_file)
        return orchestrator.register_campaign(args.campaign, data["rounds"], notification_channel=args.channel)
    if args.command == "status":
        return orchestrator.round_status(args.round_id)
    if args.command == "jobs":
        return {"round_id": args.round_id, "jobs": orchestrator.scheduler.job_status(args.round_id)}
    if args.command == "trigger":
        return orchestrator.trigger_stage(args.round_id, args.stage)
    if args.command == "reschedule":
        return orchestrator.reschedule_round(args.round_id, args.scheduled_at)
    if args.command == "cancel":
        return orchestrator.cancel_round(args.round_id)
    if args.command == "resume":
        return orchestrator.resume_blocked(
            args.round_id,
            new_scheduled_at=args.scheduled_at,
            external_campaign_id=args.external_campaign_id,
        )
    if args.command == "clear-halt":
        return orchestrator.clear_maintenance_halt(args.round_id)
    if args.command == "resync":
        return orchestrator.recover()
    raise ValueError(f"unknown command {args.command!r}")


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    components = build_components(LifecycleConfig.from_env(), dry_run=args.dry_run, worker_id="lifecycle-cli")
    try:
        result = run_command(args, components.orchestrator)
    except (LifecycleError, ValueError) as exc:
        print(json.dumps({"error": str(exc), "type": type(exc).__name__}, separators=(",", ":"), sort_keys=True))
        return 1
    finally:
        components.close()
    print(json.dumps(result, indent=2, sort_keys=True, default=str))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
