"""Background repair passes.

Every pass is idempotent and updates one row per transaction, so an interrupted
run can simply be started again.
"""

import json

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .catalog import ensure_default_services
from .claims import add_slot_claims
from .models import Account, Appointment, AvailabilityConfig, BlackoutDate, Service, utc_now_naive
from .schedule import (
    WEEKDAY_NAMES,
    default_weekly_schedule,
    parse_weekly_schedule,
    serialize_weekly_schedule,
)
from .statuses import OCCUPYING_STATUSES
from .tenancy import get_account

log = structlog.get_logger("bookingcore.maintenance")


def _assign_row(db: Session, model, row_id: int, account_id: int) -> bool:
    result = db.execute(
        update(model)
        .where(model.id == row_id, model.account_id.is_(None))
        .values(account_id=account_id)
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0) == 1


def assign_orphan_rows(db: Session, account_id: int) -> dict:
    """Attach rows that predate multi-tenancy to ``account_id``.

    A row that would collide with data the account already owns (a service
    with the same name, a blackout on the same day, an active appointment on
    already-claimed time) stays orphaned and is counted as skipped.
    """
    get_account(db, account_id)
    counts = {"appointments": 0, "services": 0, "blackout_dates": 0, "skipped": 0}

    for model, label in ((Service, "services"), (BlackoutDate, "blackout_dates")):
        ids = db.execute(select(model.id).where(model.account_id.is_(None))).scalars().all()
        for row_id in ids:
            try:
                if _assign_row(db, model, row_id, account_id):
                    counts[label] += 1
                db.commit()
            except IntegrityError:
                db.rollback()
                counts["skipped"] += 1

    orphans = db.execute(
        select(Appointment.id, Appointment.status, Appointment.start_at, Appointment.duration_minutes)
        .where(Appointment.account_id.is_(None))
        .order_by(Appointment.id.asc())
    ).all()
    occupying = {s.value for s in OCCUPYING_STATUSES}
    for row_id, status, start_at, duration_minutes in orphans:
        try:
            if not _assign_row(db, Appointment, row_id, account_id):
                db.rollback()
                continue
            if status in occupying:
                add_slot_claims(db, account_id, row_id, start_at, duration_minutes)
            db.commit()
            counts["appointments"] += 1
        except IntegrityError:
            db.rollback()
            counts["skipped"] += 1
            log.warning("orphan_appointment_conflict", appointment_id=row_id, account_id=account_id)

    log.info("orphan_rows_assigned", account_id=account_id, **counts)
    return counts


def backfill_weekday_metadata(db: Session) -> dict:
    """Add the numeric weekday to stored schedule entries that lack it.

    The number is derived from the weekday key. Entries whose number disagrees
    with their key are reported and left alone.
    """
    result = {"configs_updated": 0, "entries_backfilled": 0, "mismatches": [], "invalid": []}
    rows = db.execute(select(AvailabilityConfig.id, AvailabilityConfig.weekly_schedule_json)).all()
    for config_id, original_json in rows:
        try:
            raw = json.loads(original_json or "{}")
        except json.JSONDecodeError:
            result["invalid"].append({"config_id": config_id, "reason": "not valid JSON"})
            continue
        if not isinstance(raw, dict):
            result["invalid"].append({"config_id": config_id, "reason": "not a mapping"})
            continue

        backfilled = 0
        for key, entry in raw.items():
            name = str(key).strip().lower()
            if name not in WEEKDAY_NAMES or not isinstance(entry, dict):
                result["invalid"].append({"config_id": config_id, "reason": f"bad entry {key!r}"})
                continue
            current = entry.get("dayOfWeek", entry.get("day_of_week"))
            if current is None:
                entry["dayOfWeek"] = WEEKDAY_NAMES[name]
                backfilled += 1
                continue
            try:
                matches = int(current) == WEEKDAY_NAMES[name]
            except (TypeError, ValueError):
                matches = False
            if not matches:
                result["mismatches"].append(
                    {"config_id": config_id, "weekday": name, "day_of_week": current}
                )

        if not backfilled:
            continue
        # Only write if nobody changed the row since it was read.
        updated = db.execute(
            update(AvailabilityConfig)
            .where(
                AvailabilityConfig.id == config_id,
                AvailabilityConfig.weekly_schedule_json == original_json,
            )
            .values(
                weekly_schedule_json=json.dumps(raw, sort_keys=True),
                updated_at=utc_now_naive(),
            )
            .execution_options(synchronize_session=False)
        )
        db.commit()
        if int(updated.rowcount or 0) == 1:
            result["configs_updated"] += 1
            result["entries_backfilled"] += backfilled

    log.info(
        "weekday_metadata_backfilled",
        configs_updated=result["configs_updated"],
        entries_backfilled=result["entries_backfilled"],
        mismatches=len(result["mismatches"]),
        invalid=len(result["invalid"]),
    )
    return result


def seed_default_services(db: Session) -> dict:
    account_ids = db.execute(select(Account.id).order_by(Account.id.asc())).scalars().all()
    seeded_accounts = 0
    created = 0
    for account_id in account_ids:
        rows = ensure_default_services(db, account_id)
        if rows:
            seeded_accounts += 1
            created += len(rows)
    return {"accounts_seeded": seeded_accounts, "services_created": created}


def seed_default_schedules(db: Session) -> dict:
    """Give accounts without any stored schedule the default working week."""
    configured = select(AvailabilityConfig.account_id)
    account_ids = (
        db.execute(select(Account.id).where(Account.id.not_in(configured)).order_by(Account.id.asc()))
        .scalars()
        .all()
    )
    payload = json.dumps(serialize_weekly_schedule(default_weekly_schedule()), sort_keys=True)
    seeded = 0
    for account_id in account_ids:
        db.add(
            AvailabilityConfig(
                account_id=account_id,
                weekly_schedule_json=payload,
                updated_at=utc_now_naive(),
            )
        )
        try:
            db.commit()
            seeded += 1
        except IntegrityError:
            db.rollback()
    log.info("default_schedules_seeded", accounts_seeded=seeded)
    return {"accounts_seeded": seeded}


def validate_stored_schedules(db: Session) -> list[dict]:
    """Report stored schedules that would be rejected on read."""
    problems: list[dict] = []
    rows = db.execute(
        select(AvailabilityConfig.id, AvailabilityConfig.account_id, AvailabilityConfig.weekly_schedule_json)
    ).all()
    for config_id, account_id, raw in rows:
        try:
            parse_weekly_schedule(raw or "{}")
        except ValueError as exc:
            problems.append({"config_id": config_id, "account_id": account_id, "error": str(exc)})
    return problems
