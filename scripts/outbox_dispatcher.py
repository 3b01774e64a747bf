import argparse
import sys
import time
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from bookingcore.db import SessionLocal  # noqa: E402
from bookingcore.logging_config import setup_logging  # noqa: E402
from bookingcore.outbox import cleanup_outbox_events, dispatch_outbox_events  # noqa: E402


def process_once(batch_size: int, account_id: int | None = None) -> dict:
    with SessionLocal() as db:
        return dispatch_outbox_events(
            db,
            account_id=account_id,
            batch_size=max(1, min(int(batch_size), 500)),
        )


def main() -> int:
    parser = argparse.ArgumentParser(
        description="Publish appointment notifications from the outbox to the Redis stream"
    )
    parser.add_argument("--batch-size", type=int, default=100)
    parser.add_argument("--poll-seconds", type=float, default=2.0)
    parser.add_argument("--account-id", type=int, default=None)
    parser.add_argument("--once", action="store_true")
    parser.add_argument(
        "--cleanup-hours",
        type=int,
        default=None,
        help="Delete published/dead-lettered rows older than this many hours, then exit",
    )
    args = parser.parse_args()
    setup_logging()

    if args.cleanup_hours is not None:
        with SessionLocal() as db:
            print(cleanup_outbox_events(db, account_id=args.account_id, older_than_hours=args.cleanup_hours))
        return 0

    while True:
        result = process_once(args.batch_size, args.account_id)
        print(result)
        if args.once:
            return 0
        if int(result.get("processed", 0)) == 0:
            time.sleep(max(0.2, float(args.poll_seconds)))


if __name__ == "__main__":
    raise SystemExit(main())
