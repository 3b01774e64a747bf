import argparse
import json
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from bookingcore.db import SessionLocal, init_db  # noqa: E402
from bookingcore.logging_config import setup_logging  # noqa: E402
from bookingcore.maintenance import (  # noqa: E402
    assign_orphan_rows,
    backfill_weekday_metadata,
    seed_default_schedules,
    seed_default_services,
    validate_stored_schedules,
)


def main() -> int:
    parser = argparse.ArgumentParser(description="Idempotent data repair passes")
    parser.add_argument(
        "--assign-orphans-to",
        type=int,
        default=None,
        metavar="ACCOUNT_ID",
        help="Attach rows without an account to this account",
    )
    parser.add_argument("--backfill-weekdays", action="store_true")
    parser.add_argument("--seed-services", action="store_true")
    parser.add_argument("--seed-schedules", action="store_true")
    parser.add_argument("--check-schedules", action="store_true")
    parser.add_argument("--all", action="store_true", help="Run every pass except orphan assignment")
    parser.add_argument("--create-tables", action="store_true")
    args = parser.parse_args()
    setup_logging()

    if args.create_tables:
        init_db()

    report: dict = {}
    with SessionLocal() as db:
        if args.assign_orphans_to is not None:
            report["orphans"] = assign_orphan_rows(db, args.assign_orphans_to)
        if args.backfill_weekdays or args.all:
            report["weekdays"] = backfill_weekday_metadata(db)
        if args.seed_schedules or args.all:
            report["schedules"] = seed_default_schedules(db)
        if args.seed_services or args.all:
            report["services"] = seed_default_services(db)
        if args.check_schedules or args.all:
            report["schedule_problems"] = validate_stored_schedules(db)

    if not report:
        parser.print_help()
        return 2
    print(json.dumps(report, indent=2, default=str))
    problems = report.get("schedule_problems") or []
    mismatches = (report.get("weekdays") or {}).get("mismatches") or []
    return 1 if problems or mismatches else 0


if __name__ == "__main__":
    raise SystemExit(main())
