"""
Command-line entry point for the markdesk job engine.

Run: python main.py status
     python main.py run --job-type cleanup

Read-only commands (status, activity, history, stats) inspect the state
directory without touching the active job. ``run`` boots the full job system,
recovers any interrupted job and drives a job with no-op stage executors.
"""
from __future__ import annotations

import argparse
import json
import sys
from collections.abc import Sequence
from pathlib import Path
from typing import Any

from markdesk.application.container import Container
from markdesk.application.jobs import noop_executors
from markdesk.core.jobs.stages import JOB_PLANS, JOB_TYPE_CLEANUP
from markdesk.core.observability.logging_config import setup_logging


def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, ensure_ascii=False, default=str))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="markdesk", description="Bookmark job engine control")
    parser.add_argument("--state-dir", type=Path, default=None, help="State directory (store, logs)")
    parser.add_argument("--config", type=Path, default=None, help="YAML settings file")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("status", help="Show the active job snapshot")
    activity = sub.add_parser("activity", help="Show recent activity entries")
    activity.add_argument("--limit", type=int, default=50)
    sub.add_parser("history", help="Show archived jobs")
    sub.add_parser("stats", help="Show storage usage")
    cleanup = sub.add_parser("cleanup", help="Prune old activity and history")
    cleanup.add_argument("--max-age-days", type=float, default=30.0)
    run = sub.add_parser("run", help="Run a job with no-op stage executors")
    run.add_argument("--job-type", choices=sorted(JOB_PLANS), default=JOB_TYPE_CLEANUP)
    run.add_argument("--requested-by", default="cli")
    run.add_argument("--timeout", type=float, default=60.0)
    return parser


def _run_job(container: Container, job_type: str, requested_by: str, timeout: float) -> int:
    system = container.job_system
    for stage, executor in noop_executors(units=10).items():
        system.register_stage_executor(stage, executor)
    system.initialize()
    try:
        started = system.start_job(job_type, requested_by=requested_by)
        if not started.success:
            _print_json(started.to_dict())
            return 1
        if not system.wait_idle(timeout):
            print(f"Job {started.job_id} still running after {timeout}s", file=sys.stderr)
            return 1
        status = system.get_job_status()
        _print_json(status.to_dict())
        final = system.store.get_job_from_history(started.job_id or "")
        return 0 if final is not None and final.get("status") == "completed" else 1
    finally:
        container.dispose()


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    container = Container(settings_path=args.config, state_dir=args.state_dir)
    setup_logging(state_dir=container.state_dir)
    store = container.job_store

    if args.command == "status":
        snapshot = store.load_snapshot()
        _print_json(None if snapshot is None else snapshot.to_dict())
    elif args.command == "activity":
        _print_json([entry.to_dict() for entry in store.load_activity(args.limit)])
    elif args.command == "history":
        _print_json(store.get_history())
    elif args.command == "stats":
        _print_json(store.get_storage_stats().to_dict())
    elif args.command == "cleanup":
        removed = store.cleanup(args.max_age_days)
        _print_json({"removed": removed})
    elif args.command == "run":
        return _run_job(container, args.job_type, args.requested_by, args.timeout)
    store.close()
    return 0


if __name__ == "__main__":
    try:
        sys.exit(main())
    except KeyboardInterrupt:
        sys.exit(0)
