"""Free-slot computation.

A day contributes open time only if its weekday is available and it is not a
blackout date. Open windows are converted from the account's wall-clock to UTC,
then every occupying appointment (pending, booked, confirmed) is subtracted.
Whatever is left and is at least ``duration_minutes`` wide is bookable.
"""

from dataclasses import dataclass
from datetime import date, datetime, timedelta
from zoneinfo import ZoneInfo

from sqlalchemy import select
from sqlalchemy.orm import Session

from .claims import granularity_minutes
from .config import settings
from .errors import ValidationError
from .models import Appointment
from .schedule import WeeklySchedule, get_weekly_schedule, is_blackout, list_blackout_dates
from .statuses import OCCUPYING_STATUSES
from .timeutils import ceil_to_granule, iter_days, local_day_bounds, wall_minutes_to_utc_naive


@dataclass(frozen=True)
class Interval:
    start: datetime
    end: datetime

    @property
    def minutes(self) -> int:
        return int((self.end - self.start).total_seconds() // 60)

    def overlaps(self, other: "Interval") -> bool:
        return self.start < other.end and other.start < self.end

    def contains(self, other: "Interval") -> bool:
        return self.start <= other.start and other.end <= self.end


def validate_duration(duration_minutes: int) -> int:
    try:
        value = int(duration_minutes)
    except (TypeError, ValueError) as exc:
        raise ValidationError("duration_minutes must be an integer") from exc
    if value <= 0:
        raise ValidationError("duration_minutes must be > 0")
    return value


def validate_range(start_day: date, end_day: date) -> None:
    if end_day < start_day:
        raise ValidationError("end date must not be before start date")
    max_days = max(1, int(settings.MAX_AVAILABILITY_RANGE_DAYS))
    if (end_day - start_day).days + 1 > max_days:
        raise ValidationError(f"date range must not exceed {max_days} days")


def merge_overlapping(intervals: list[Interval]) -> list[Interval]:
    out: list[Interval] = []
    for item in sorted(intervals, key=lambda i: (i.start, i.end)):
        if out and item.start < out[-1].end:
            last = out[-1]
            out[-1] = Interval(last.start, max(last.end, item.end))
            continue
        out.append(item)
    return out


def subtract_intervals(windows: list[Interval], busy: list[Interval]) -> list[Interval]:
    busy_sorted = sorted(busy, key=lambda i: i.start)
    out: list[Interval] = []
    for window in windows:
        pieces = [window]
        for block in busy_sorted:
            if block.start >= window.end:
                break
            if not block.overlaps(window):
                continue
            next_pieces: list[Interval] = []
            for piece in pieces:
                if not block.overlaps(piece):
                    next_pieces.append(piece)
                    continue
                if block.start > piece.start:
                    next_pieces.append(Interval(piece.start, block.start))
                if block.end < piece.end:
                    next_pieces.append(Interval(block.end, piece.end))
            pieces = next_pieces
        out.extend(pieces)
    return out


def open_windows(
    schedule: WeeklySchedule,
    blackouts,
    tz: ZoneInfo,
    start_day: date,
    end_day: date,
) -> list[Interval]:
    windows: list[Interval] = []
    for day in iter_days(start_day, end_day):
        hours = schedule.for_date(day)
        if not hours.is_available:
            continue
        if is_blackout(day, blackouts):
            continue
        for slot in hours.time_slots:
            start = wall_minutes_to_utc_naive(day, slot.start_minute, tz)
            end = wall_minutes_to_utc_naive(day, slot.end_minute, tz)
            # A slot swallowed by a DST gap collapses to nothing.
            if end <= start:
                continue
            windows.append(Interval(start, end))
    return merge_overlapping(windows)


def compute_free_slots(
    schedule: WeeklySchedule,
    blackouts,
    busy: list[Interval],
    tz: ZoneInfo,
    start_day: date,
    end_day: date,
    duration_minutes: int,
) -> list[Interval]:
    duration = validate_duration(duration_minutes)
    validate_range(start_day, end_day)
    windows = open_windows(schedule, blackouts, tz, start_day, end_day)
    remaining = subtract_intervals(windows, busy)
    needed = timedelta(minutes=duration)
    return [i for i in remaining if (i.end - i.start) >= needed]


def list_occupied_intervals(
    db: Session,
    account_id: int,
    range_start: datetime,
    range_end: datetime,
    exclude_appointment_id: int | None = None,
) -> list[Interval]:
    # Durations are capped at one day, so a one-day lookback catches every overlap.
    stmt = select(Appointment).where(
        Appointment.account_id == account_id,
        Appointment.status.in_([s.value for s in OCCUPYING_STATUSES]),
        Appointment.start_at < range_end,
        Appointment.start_at >= range_start - timedelta(days=1),
    )
    out: list[Interval] = []
    window = Interval(range_start, range_end)
    for row in db.execute(stmt).scalars().all():
        if exclude_appointment_id is not None and row.id == exclude_appointment_id:
            continue
        interval = Interval(row.start_at, row.start_at + timedelta(minutes=int(row.duration_minutes)))
        if interval.overlaps(window):
            out.append(interval)
    return out


def free_slots(
    db: Session,
    ctx,
    start_day: date,
    end_day: date,
    duration_minutes: int,
) -> list[Interval]:
    validate_duration(duration_minutes)
    validate_range(start_day, end_day)
    schedule = get_weekly_schedule(db, ctx.account_id)
    blackouts = list_blackout_dates(db, ctx.account_id, start_day, end_day)
    range_start, _ = local_day_bounds(start_day, ctx.tz)
    _, range_end = local_day_bounds(end_day, ctx.tz)
    busy = list_occupied_intervals(db, ctx.account_id, range_start, range_end)
    return compute_free_slots(
        schedule, blackouts, busy, ctx.tz, start_day, end_day, duration_minutes
    )


def list_bookable_starts(
    intervals: list[Interval],
    duration_minutes: int,
    step_minutes: int | None = None,
) -> list[Interval]:
    """Concrete starts on the step grid, each snapped up to a claim granule."""
    duration = timedelta(minutes=validate_duration(duration_minutes))
    step = timedelta(minutes=max(1, int(step_minutes or settings.BOOKABLE_STEP_MINUTES)))
    granularity = granularity_minutes()
    out: list[Interval] = []
    for interval in intervals:
        cursor = ceil_to_granule(interval.start, granularity)
        while cursor + duration <= interval.end:
            out.append(Interval(cursor, cursor + duration))
            cursor = ceil_to_granule(cursor + step, granularity)
    return out


def find_containing(intervals: list[Interval], candidate: Interval) -> Interval | None:
    for interval in intervals:
        if interval.contains(candidate):
            return interval
    return None
