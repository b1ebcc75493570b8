#!/usr/bin/env python3
"""Lifecycle worker runner for the Postgres stage job queue."""

from __future__ import annotations

import argparse
import json
import os
import socket
import time

from lifecycle.bootstrap import build_components
from lifecycle.config import LifecycleConfig


def main() -> int:
    parser = argparse.ArgumentParser(description="Run the lifecycle worker loop.")
    parser.add_argument("--once", action="store_true", help="Process at most one batch and exit.")
    parser.add_argument("--interval-seconds", type=int, default=10, help="Poll interval for due jobs.")
    parser.add_argument("--dry-run", action="store_true", help="Use in-memory queue/store only.")
    parser.add_argument("--skip-recover", action="store_true", help="Do not resync jobs at start.")
    parser.add_argument(
        "--stale-timeout-seconds",
        type=int,
        default=int(os.environ.get("LEASE_TTL_SECONDS", "900")),
        help="Timeout for stale running jobs before recovery.",
    )
    args = parser.parse_args()

    worker_id = os.environ.get("WORKER_ID", "").strip() or f"lifecycle-{socket.gethostname()}-{os.getpid()}"
    components = build_components(LifecycleConfig.from_env(), dry_run=args.dry_run, worker_id=worker_id)
    worker = components.worker

    try:
        if not args.skip_recover:
            recovery = components.orchestrator.recover()
            print(json.dumps({"lifecycle_recover": recovery}, separators=(",", ":"), sort_keys=True))

        if args.once:
            recovered = worker.recover_stale_once(stale_after_seconds=max(1, args.stale_timeout_seconds))
            results = worker.process_batch()
            print(
                json.dumps(
                    {
                        "recovered_stale_jobs": recovered,
                        "worker": results or [{"status": "empty"}],
                    },
                    indent=2,
                    sort_keys=True,
                )
            )
            return 0

        while True:
            recovered = worker.recover_stale_once(stale_after_seconds=max(1, args.stale_timeout_seconds))
            if recovered:
                print(json.dumps({"lifecycle_reaper_recovered": recovered}, separators=(",", ":"), sort_keys=True))
            results = worker.process_batch()
            for result in results:
                print(json.dumps(result, separators=(",", ":"), sort_keys=True), flush=True)
            if not results:
                time.sleep(max(1, args.interval_seconds))
    finally:
        components.close()


if __name__ == "__main__":
    raise SystemExit(main())
