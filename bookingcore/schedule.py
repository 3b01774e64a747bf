import json
import re
from dataclasses import dataclass, field
from datetime import date

import structlog
from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .claims import granularity_minutes
from .errors import NotFoundError, ValidationError
from .models import AvailabilityConfig, BlackoutDate, utc_now_naive

log = structlog.get_logger("bookingcore.schedule")

# Numeric weekday convention is 0=Sunday..6=Saturday.
WEEKDAY_NAMES = {
    "sunday": 0,
    "monday": 1,
    "tuesday": 2,
    "wednesday": 3,
    "thursday": 4,
    "friday": 5,
    "saturday": 6,
}
WEEKDAY_BY_NUMBER = {v: k for k, v in WEEKDAY_NAMES.items()}

_HHMM_RE = re.compile(r"^(\d{2}):(\d{2})$")


def weekday_of(day: date) -> int:
    return (day.weekday() + 1) % 7


def parse_wall_time(value: str, *, allow_end_of_day: bool = False) -> int:
    match = _HHMM_RE.match(str(value or "").strip())
    if not match:
        raise ValidationError(f"Invalid time {value!r}, expected HH:MM")
    hours, minutes = int(match.group(1)), int(match.group(2))
    if allow_end_of_day and hours == 24 and minutes == 0:
        return 24 * 60
    if hours > 23 or minutes > 59:
        raise ValidationError(f"Invalid time {value!r}, expected HH:MM")
    return hours * 60 + minutes


def format_wall_time(minutes: int) -> str:
    return f"{minutes // 60:02d}:{minutes % 60:02d}"


@dataclass(frozen=True)
class TimeSlot:
    start_minute: int
    end_minute: int

    @property
    def start(self) -> str:
        return format_wall_time(self.start_minute)

    @property
    def end(self) -> str:
        return format_wall_time(self.end_minute)


@dataclass(frozen=True)
class DayAvailability:
    day_of_week: int
    is_available: bool
    time_slots: tuple[TimeSlot, ...] = ()


@dataclass(frozen=True)
class WeeklySchedule:
    days: dict[int, DayAvailability] = field(default_factory=dict)

    def for_weekday(self, weekday: int) -> DayAvailability:
        return self.days.get(weekday) or DayAvailability(weekday, False, ())

    def for_date(self, day: date) -> DayAvailability:
        return self.for_weekday(weekday_of(day))


@dataclass(frozen=True)
class Blackout:
    day: date
    is_recurring: bool = False
    reason: str | None = None


def _pick(entry: dict, *names: str):
    for name in names:
        if name in entry:
            return entry[name]
    return None


def _parse_day(name: str, entry) -> DayAvailability:
    if not isinstance(entry, dict):
        raise ValidationError(f"{name}: day entry must be an object")

    raw_weekday = _pick(entry, "dayOfWeek", "day_of_week")
    if raw_weekday is None:
        raise ValidationError(f"{name}: dayOfWeek is missing")
    try:
        weekday = int(raw_weekday)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"{name}: dayOfWeek must be an integer") from exc
    if weekday != WEEKDAY_NAMES[name]:
        raise ValidationError(
            f"{name}: dayOfWeek={weekday} does not match weekday {WEEKDAY_NAMES[name]}"
        )

    is_available = bool(_pick(entry, "isAvailable", "is_available"))
    raw_slots = _pick(entry, "timeSlots", "time_slots") or []
    if not isinstance(raw_slots, list):
        raise ValidationError(f"{name}: timeSlots must be a list")

    slots: list[TimeSlot] = []
    for raw in raw_slots:
        if not isinstance(raw, dict):
            raise ValidationError(f"{name}: time slot must be an object")
        start = parse_wall_time(raw.get("start"))
        end = parse_wall_time(raw.get("end"), allow_end_of_day=True)
        step = granularity_minutes()
        if start % step or end % step:
            raise ValidationError(
                f"{name}: slot {raw.get('start')}-{raw.get('end')} is not on the {step} minute grid"
            )
        if end <= start:
            raise ValidationError(f"{name}: slot {raw.get('start')}-{raw.get('end')} ends before it starts")
        slots.append(TimeSlot(start, end))

    slots.sort(key=lambda s: s.start_minute)
    for prev, nxt in zip(slots, slots[1:]):
        if nxt.start_minute < prev.end_minute:
            raise ValidationError(f"{name}: time slots overlap ({prev.start}-{prev.end}, {nxt.start}-{nxt.end})")

    return DayAvailability(weekday, is_available, tuple(slots))


def parse_weekly_schedule(raw) -> WeeklySchedule:
    if isinstance(raw, str):
        try:
            raw = json.loads(raw or "{}")
        except json.JSONDecodeError as exc:
            raise ValidationError("weekly schedule is not valid JSON") from exc
    if not isinstance(raw, dict):
        raise ValidationError("weekly schedule must be a mapping keyed by weekday name")

    days: dict[int, DayAvailability] = {}
    for key, entry in raw.items():
        name = str(key).strip().lower()
        if name not in WEEKDAY_NAMES:
            raise ValidationError(f"Unknown weekday {key!r}")
        day = _parse_day(name, entry)
        days[day.day_of_week] = day
    return WeeklySchedule(days=days)


def serialize_weekly_schedule(schedule: WeeklySchedule) -> dict:
    out: dict[str, dict] = {}
    for weekday in range(7):
        day = schedule.for_weekday(weekday)
        out[WEEKDAY_BY_NUMBER[weekday]] = {
            "dayOfWeek": weekday,
            "isAvailable": bool(day.is_available),
            "timeSlots": [{"start": s.start, "end": s.end} for s in day.time_slots],
        }
    return out


def default_weekly_schedule() -> WeeklySchedule:
    workday = (TimeSlot(9 * 60, 12 * 60), TimeSlot(13 * 60, 17 * 60))
    days = {
        weekday: DayAvailability(weekday, 1 <= weekday <= 5, workday if 1 <= weekday <= 5 else ())
        for weekday in range(7)
    }
    return WeeklySchedule(days=days)


def is_blackout(day: date, blackouts) -> bool:
    for item in blackouts:
        if item.is_recurring:
            if (item.day.month, item.day.day) == (day.month, day.day):
                return True
        elif item.day == day:
            return True
    return False


def _get_config_row(db: Session, account_id: int) -> AvailabilityConfig | None:
    return db.execute(
        select(AvailabilityConfig).where(AvailabilityConfig.account_id == account_id)
    ).scalar_one_or_none()


def get_weekly_schedule(db: Session, account_id: int) -> WeeklySchedule:
    row = _get_config_row(db, account_id)
    if row is None:
        return WeeklySchedule()
    return parse_weekly_schedule(row.weekly_schedule_json or "{}")


def set_weekly_schedule(db: Session, account_id: int, raw) -> WeeklySchedule:
    schedule = parse_weekly_schedule(raw)
    row = _get_config_row(db, account_id)
    if row is None:
        row = AvailabilityConfig(account_id=account_id)
        db.add(row)
    row.weekly_schedule_json = json.dumps(serialize_weekly_schedule(schedule), sort_keys=True)
    row.updated_at = utc_now_naive()
    db.commit()
    log.info("weekly_schedule_updated", account_id=account_id)
    return schedule


def list_blackout_dates(
    db: Session,
    account_id: int,
    start: date | None = None,
    end: date | None = None,
) -> list[BlackoutDate]:
    stmt = select(BlackoutDate).where(BlackoutDate.account_id == account_id)
    rows = db.execute(stmt.order_by(BlackoutDate.day.asc())).scalars().all()
    if start is None and end is None:
        return list(rows)
    # Recurring rows are kept regardless of year; only absolute dates are range-filtered.
    out = []
    for row in rows:
        if row.is_recurring:
            out.append(row)
            continue
        if start is not None and row.day < start:
            continue
        if end is not None and row.day > end:
            continue
        out.append(row)
    return out


def add_blackout_date(
    db: Session,
    account_id: int,
    day: date,
    reason: str | None = None,
    is_recurring: bool = False,
) -> BlackoutDate:
    existing = db.execute(
        select(BlackoutDate).where(
            BlackoutDate.account_id == account_id,
            BlackoutDate.day == day,
        )
    ).scalar_one_or_none()
    if existing is not None:
        raise ValidationError(f"Blackout date {day.isoformat()} already exists")

    row = BlackoutDate(
        account_id=account_id,
        day=day,
        reason=(reason or "").strip() or None,
        is_recurring=bool(is_recurring),
        created_at=utc_now_naive(),
    )
    db.add(row)
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise ValidationError(f"Blackout date {day.isoformat()} already exists") from exc
    db.refresh(row)
    return row


def remove_blackout_date(db: Session, account_id: int, blackout_id: int) -> None:
    row = db.execute(
        select(BlackoutDate).where(
            BlackoutDate.id == blackout_id,
            BlackoutDate.account_id == account_id,
        )
    ).scalar_one_or_none()
    if row is None:
        raise NotFoundError("Blackout date not found")
    db.delete(row)
    db.commit()


def replace_blackout_dates(db: Session, account_id: int, items: list[dict]) -> list[BlackoutDate]:
    seen: set[date] = set()
    for item in items:
        day = item["day"]
        if day in seen:
            raise ValidationError(f"Duplicate blackout date {day.isoformat()}")
        seen.add(day)

    db.execute(delete(BlackoutDate).where(BlackoutDate.account_id == account_id))
    now = utc_now_naive()
    for item in items:
        db.add(
            BlackoutDate(
                account_id=account_id,
                day=item["day"],
                reason=(item.get("reason") or "").strip() or None,
                is_recurring=bool(item.get("is_recurring")),
                created_at=now,
            )
        )
    db.commit()
    log.info("blackout_dates_replaced", account_id=account_id, count=len(items))
    return list_blackout_dates(db, account_id)
