from __future__ import annotations

import argparse
import sys

from apscheduler.schedulers.background import BackgroundScheduler

from .config import get_settings
from .db import SessionLocal, init_db
from .gateway import GatewayClient, GatewayError
from .logging_setup import setup_logging
from .sweep import configure_sweep_job, run_recurrence_sweep


def _cmd_sweep(date: str | None) -> int:
    init_db()
    with SessionLocal() as db:
        report = run_recurrence_sweep(db, day=date)
    if report is None:
        print("skipped: another sweep holds the lock")
        return 1
    print(f"{report.day}: examined={report.examined} created={len(report.created)} skipped={len(report.skipped)}")
    return 0


def _cmd_install_trigger() -> int:
    s = get_settings()
    sched = BackgroundScheduler(timezone=s.app.timezone)
    configure_sweep_job(sched, s)
    jobs = sched.get_jobs()
    if not jobs:
        print("sweep disabled")
        return 0
    for job in jobs:
        print(f"{job.id}: {job.trigger}")
    return 0


def _cmd_pull() -> int:
    s = get_settings()
    client = GatewayClient(s.remote.base_url, api_token=s.security.api_token, timeout_seconds=s.remote.request_timeout_seconds)
    try:
        for name, fetch in client.fetchers().items():
            print(f"{name}: {len(fetch())}")
    except GatewayError as e:
        print(f"error: {e}", file=sys.stderr)
        return 1
    return 0


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(prog="taskbridge")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("serve", help="Run the remote store service.")

    p_sweep = sub.add_parser("sweep", help="Create today's recurring task occurrences once.")
    p_sweep.add_argument("--date", default=None, help="Day to sweep (YYYY-MM-DD). Defaults to today.")

    sub.add_parser("install-trigger", help="Show the daily sweep schedule as it would be registered.")
    sub.add_parser("pull", help="Fetch every collection from the remote store and print counts.")

    args = parser.parse_args(argv)

    s = get_settings()
    setup_logging(level=s.logging.level, log_dir=s.logging.dir, file_enabled=s.logging.file_enabled)

    if args.command == "serve":
        from .run import main as run_main

        run_main()
        return
    if args.command == "sweep":
        sys.exit(_cmd_sweep(args.date))
    if args.command == "install-trigger":
        sys.exit(_cmd_install_trigger())
    if args.command == "pull":
        sys.exit(_cmd_pull())

    parser.print_help()
    sys.exit(2)


if __name__ == "__main__":
    main()
