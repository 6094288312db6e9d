from __future__ import annotations

import argparse
import datetime
import json
import sys
from typing import List, Optional

from .. import config
from ..archival import archive_week
from ..cron import STATUS_FAILED, run_weekly_generation
from ..database import SessionLocal, init_database
from ..errors import ShiftLedgerError
from ..generator.api import RecordingGenerator, load_solver
from ..notifications import SqlResendFanout


def _parse_day(value: str) -> datetime.date:
    try:
        return datetime.date.fromisoformat(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"{value!r} is not a YYYY-MM-DD date") from None


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="shiftledger-jobs",
        description="Scheduled jobs: weekly archival and next-week schedule generation.",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    archive = sub.add_parser("archive-week", help="Archive the published shifts of a week and update balances.")
    archive.add_argument(
        "--as-of",
        type=_parse_day,
        help="Any date inside the week to archive. Defaults to today (UTC).",
    )

    generate = sub.add_parser("weekly-generation", help="Generate draft shifts for next week in every enabled store.")
    generate.add_argument(
        "--today",
        type=_parse_day,
        help="Reference date; the target week is the Monday strictly after it.",
    )
    generate.add_argument(
        "--solver",
        default=config.SOLVER_PATH,
        help="Solver as package.module:function. Defaults to $SHIFTLEDGER_SOLVER.",
    )
    generate.add_argument("--actor", default="cron", help="Recorded as the creator of each generation run.")
    return parser.parse_args(argv)


def _print(payload) -> None:
    print(json.dumps(payload, indent=2, default=str))


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    init_database()
    try:
        if args.command == "archive-week":
            with SessionLocal() as session:
                result = archive_week(session, args.as_of)
            _print(result.to_dict())
            return 1 if result.failed_groups else 0

        generator = RecordingGenerator(SessionLocal, load_solver(args.solver), actor=args.actor)
        summary = run_weekly_generation(
            SessionLocal,
            generator,
            today=args.today,
            fanout=SqlResendFanout(SessionLocal),
        )
        _print(summary.to_dict())
        return 1 if summary.count(STATUS_FAILED) else 0
    except ShiftLedgerError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    sys.exit(main())
