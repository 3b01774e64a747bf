"""Wall-clock <-> UTC conversion for account timezones.

Instants are stored and compared as naive UTC datetimes. Wall-clock values are
interpreted in the account's IANA zone, with DST handled explicitly:

* a wall-clock time that falls in a spring-forward gap does not exist; it is
  moved forward to the first instant after the gap;
* a wall-clock time that occurs twice in a fall-back overlap resolves to its
  first occurrence (``fold=0``).

The gap rule applies to schedule boundaries only; ``to_utc_naive`` rejects a
requested instant that does not exist.
"""

from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .errors import ValidationError

MINUTES_PER_DAY = 24 * 60


def get_zone(name: str | None) -> ZoneInfo:
    raw = (name or "").strip()
    if not raw:
        raise ValidationError("timezone is required")
    try:
        return ZoneInfo(raw)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValidationError(f"Unknown timezone: {raw}") from exc


def _as_utc_naive(value: datetime) -> datetime:
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _first_instant_after_gap(local_naive: datetime, tz: ZoneInfo) -> datetime:
    before = _as_utc_naive(local_naive.replace(tzinfo=tz, fold=0))
    after = _as_utc_naive(local_naive.replace(tzinfo=tz, fold=1))
    lo, hi = min(before, after), max(before, after)
    post_offset = hi.replace(tzinfo=timezone.utc).astimezone(tz).utcoffset()
    # Transition instant lies in (lo, hi]; second resolution is enough for tzdata.
    while (hi - lo) > timedelta(seconds=1):
        mid = lo + (hi - lo) / 2
        mid = mid.replace(microsecond=0)
        if mid.replace(tzinfo=timezone.utc).astimezone(tz).utcoffset() == post_offset:
            hi = mid
        else:
            lo = mid
    return hi


def _exists(local_naive: datetime, tz: ZoneInfo) -> bool:
    utc_value = _as_utc_naive(local_naive.replace(tzinfo=tz, fold=0))
    return utc_value.replace(tzinfo=timezone.utc).astimezone(tz).replace(tzinfo=None) == local_naive


def local_to_utc_naive(local_naive: datetime, tz: ZoneInfo) -> datetime:
    if not _exists(local_naive, tz):
        return _first_instant_after_gap(local_naive, tz)
    return _as_utc_naive(local_naive.replace(tzinfo=tz, fold=0))


def wall_minutes_to_utc_naive(day: date, minutes: int, tz: ZoneInfo) -> datetime:
    local_naive = datetime.combine(day, time.min) + timedelta(minutes=int(minutes))
    return local_to_utc_naive(local_naive, tz)


def utc_naive_to_local(value: datetime, tz: ZoneInfo) -> datetime:
    return value.replace(tzinfo=timezone.utc).astimezone(tz)


def to_utc_naive(value: datetime, tz: ZoneInfo) -> datetime:
    """Aware datetimes are converted; naive ones are account wall-clock.

    Unlike schedule windows, a requested instant is never moved: a wall-clock
    time skipped by a DST change is rejected.
    """
    if value.tzinfo is not None:
        return _as_utc_naive(value)
    if not _exists(value, tz):
        raise ValidationError(f"{value.isoformat()} does not exist in {tz.key}")
    return _as_utc_naive(value.replace(tzinfo=tz, fold=0))


def local_day_bounds(day: date, tz: ZoneInfo) -> tuple[datetime, datetime]:
    start = wall_minutes_to_utc_naive(day, 0, tz)
    end = wall_minutes_to_utc_naive(day + timedelta(days=1), 0, tz)
    return start, end


def local_date_of(value: datetime, tz: ZoneInfo) -> date:
    return utc_naive_to_local(value, tz).date()


def iter_days(start: date, end: date):
    cursor = start
    while cursor <= end:
        yield cursor
        cursor += timedelta(days=1)


def is_aligned(value: datetime, granularity_minutes: int) -> bool:
    if value.second or value.microsecond:
        return False
    return (value.hour * 60 + value.minute) % max(1, int(granularity_minutes)) == 0


def floor_to_granule(value: datetime, granularity_minutes: int) -> datetime:
    step = max(1, int(granularity_minutes))
    midnight = value.replace(hour=0, minute=0, second=0, microsecond=0)
    return midnight + timedelta(minutes=(value.hour * 60 + value.minute) // step * step)


def ceil_to_granule(value: datetime, granularity_minutes: int) -> datetime:
    floored = floor_to_granule(value, granularity_minutes)
    if floored == value:
        return value
    return floored + timedelta(minutes=max(1, int(granularity_minutes)))
