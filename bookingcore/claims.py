"""Storage-level exclusion for booked time.

An occupying appointment owns one ``SlotClaim`` row per granule of its
interval. Granules sit on a fixed grid, so a legacy row that starts off the
grid still claims every granule it touches. ``(account_id, slot_start)`` is
unique, so two writers whose intervals share a granule cannot both commit: the
second one fails with an ``IntegrityError`` inside its own transaction.
Aligned writers whose intervals are disjoint touch disjoint rows.
"""

from datetime import datetime, timedelta

from sqlalchemy import delete
from sqlalchemy.orm import Session

from .config import settings
from .models import SlotClaim
from .timeutils import floor_to_granule


def granularity_minutes() -> int:
    return max(1, int(settings.SLOT_GRANULARITY_MINUTES))


def granule_starts(start_at: datetime, duration_minutes: int) -> list[datetime]:
    """Every grid granule the interval touches, including partly covered ones."""
    step = timedelta(minutes=granularity_minutes())
    end_at = start_at + timedelta(minutes=int(duration_minutes))
    out: list[datetime] = []
    cursor = floor_to_granule(start_at, granularity_minutes())
    while cursor < end_at:
        out.append(cursor)
        cursor += step
    return out


def add_slot_claims(
    db: Session,
    account_id: int,
    appointment_id: int,
    start_at: datetime,
    duration_minutes: int,
) -> int:
    starts = granule_starts(start_at, duration_minutes)
    db.add_all(
        [
            SlotClaim(account_id=account_id, slot_start=slot_start, appointment_id=appointment_id)
            for slot_start in starts
        ]
    )
    db.flush()
    return len(starts)


def release_slot_claims(db: Session, account_id: int, appointment_id: int) -> int:
    result = db.execute(
        delete(SlotClaim).where(
            SlotClaim.account_id == account_id,
            SlotClaim.appointment_id == appointment_id,
        )
    )
    return int(result.rowcount or 0)
