"""Booking coordinator.

A request is checked against the account's schedule and the currently occupied
time, gets its initial status from the review policy, and is persisted with its
slot claims in a single transaction. The read-side check gives callers a
precise error; the unique slot claims are what actually keeps two concurrent
writers from taking overlapping time.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta

import structlog
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .availability import (
    Interval,
    find_containing,
    list_occupied_intervals,
    open_windows,
    subtract_intervals,
    validate_duration,
)
from .catalog import get_service
from .claims import add_slot_claims, granularity_minutes, release_slot_claims
from .errors import ConflictError, NotFoundError, ValidationError
from .lifecycle import add_status_event, create_appointment, get_appointment
from .models import Appointment, utc_now_naive
from .review_policy import decide_initial_status
from .schedule import get_weekly_schedule, list_blackout_dates
from .statuses import OCCUPYING_STATUSES, AppointmentStatus, BookingSource
from .tenancy import AccountContext
from .timeutils import MINUTES_PER_DAY, is_aligned, local_date_of, to_utc_naive

log = structlog.get_logger("bookingcore.booking")


@dataclass
class BookingRequest:
    customer_name: str
    customer_phone: str
    start: datetime
    duration_minutes: int | None = None
    service_id: int | None = None
    customer_email: str | None = None
    source: BookingSource = BookingSource.BOT
    is_flagged: bool = False
    notes: str | None = None
    actor: str | None = None


def _resolve_duration(db: Session, ctx: AccountContext, request: BookingRequest) -> int:
    service_duration = None
    if request.service_id is not None:
        try:
            service = get_service(db, ctx.account_id, request.service_id)
        except NotFoundError as exc:
            raise ValidationError("Unknown service") from exc
        if not service.is_active:
            raise ValidationError("Service is not bookable")
        service_duration = int(service.duration_minutes)

    raw = request.duration_minutes if request.duration_minutes is not None else service_duration
    if raw is None:
        raise ValidationError("duration_minutes or service_id is required")
    return _checked_duration(raw)


def _checked_duration(raw) -> int:
    duration = validate_duration(raw)
    if duration > MINUTES_PER_DAY:
        raise ValidationError("duration_minutes must not exceed one day")
    granularity = granularity_minutes()
    if duration % granularity:
        raise ValidationError(f"duration_minutes must be a multiple of {granularity}")
    return duration


def _validate_customer(request: BookingRequest) -> None:
    if len((request.customer_name or "").strip()) < 2:
        raise ValidationError("customer_name must be at least 2 characters")
    if len((request.customer_phone or "").strip()) < 3:
        raise ValidationError("customer_phone is required")


def _check_interval(
    db: Session,
    ctx: AccountContext,
    candidate: Interval,
    exclude_appointment_id: int | None = None,
) -> None:
    day = local_date_of(candidate.start, ctx.tz)
    schedule = get_weekly_schedule(db, ctx.account_id)
    blackouts = list_blackout_dates(db, ctx.account_id, day, day)
    window = find_containing(open_windows(schedule, blackouts, ctx.tz, day, day), candidate)
    if window is None:
        raise ValidationError("Requested time is outside the account's opening hours")

    busy = list_occupied_intervals(
        db, ctx.account_id, window.start, window.end, exclude_appointment_id=exclude_appointment_id
    )
    if find_containing(subtract_intervals([window], busy), candidate) is None:
        raise ConflictError("Requested time is no longer available")


def _checked_start(value: datetime, ctx: AccountContext) -> datetime:
    start_at = to_utc_naive(value, ctx.tz)
    if not is_aligned(start_at, granularity_minutes()):
        raise ValidationError(
            f"start must be aligned to {granularity_minutes()} minute boundaries"
        )
    if start_at < utc_now_naive():
        raise ValidationError("Cannot book an appointment in the past")
    return start_at


def book(db: Session, ctx: AccountContext, request: BookingRequest) -> Appointment:
    _validate_customer(request)
    duration = _resolve_duration(db, ctx, request)

    start_at = _checked_start(request.start, ctx)
    candidate = Interval(start_at, start_at + timedelta(minutes=duration))
    _check_interval(db, ctx, candidate)

    source = BookingSource(request.source)
    accepted = AppointmentStatus.CONFIRMED if source is BookingSource.STAFF else AppointmentStatus.BOOKED
    status = decide_initial_status(
        ctx.review_policy.appointment_review_mode, request.is_flagged, accepted=accepted
    )

    try:
        appointment = create_appointment(
            db,
            ctx.account_id,
            customer_name=request.customer_name,
            customer_phone=request.customer_phone,
            customer_email=request.customer_email,
            start_at=start_at,
            duration_minutes=duration,
            service_id=request.service_id,
            status=status,
            source=source,
            is_flagged=request.is_flagged,
            notes=request.notes,
            actor=request.actor,
        )
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        log.warning(
            "booking_conflict",
            account_id=ctx.account_id,
            start_at=start_at.isoformat(),
            duration_minutes=duration,
        )
        raise ConflictError("Requested time is no longer available") from exc

    db.refresh(appointment)
    log.info(
        "appointment_booked",
        account_id=ctx.account_id,
        appointment_id=appointment.id,
        status=appointment.status,
        source=appointment.source,
        is_flagged=appointment.is_flagged,
    )
    return appointment


def update_appointment(
    db: Session,
    ctx: AccountContext,
    appointment_id: int,
    *,
    customer_name: str | None = None,
    customer_phone: str | None = None,
    customer_email: str | None = None,
    notes: str | None = None,
    start: datetime | None = None,
    duration_minutes: int | None = None,
    actor: str | None = None,
) -> Appointment:
    """Edit customer details, notes or the time of an appointment.

    A new start or duration goes through the same opening-hours and free-time
    checks as a booking, ignoring the appointment's own interval. Its claims
    are swapped in the same transaction, so losing the new time to a
    concurrent booking raises ``ConflictError`` and leaves the row untouched.
    """
    appointment = get_appointment(db, ctx.account_id, appointment_id)
    current = AppointmentStatus(appointment.status)

    values = {}
    if customer_name is not None:
        if len(customer_name.strip()) < 2:
            raise ValidationError("customer_name must be at least 2 characters")
        values["customer_name"] = customer_name.strip()
    if customer_phone is not None:
        if len(customer_phone.strip()) < 3:
            raise ValidationError("customer_phone is required")
        values["customer_phone"] = customer_phone.strip()
    if customer_email is not None:
        values["customer_email"] = customer_email.strip() or None
    if notes is not None:
        values["notes"] = notes.strip() or None

    rescheduled = start is not None or duration_minutes is not None
    if rescheduled:
        if current not in OCCUPYING_STATUSES:
            raise ValidationError(f"A {current.value} appointment cannot be rescheduled")
        duration = _checked_duration(
            duration_minutes if duration_minutes is not None else appointment.duration_minutes
        )
        start_at = _checked_start(start, ctx) if start is not None else appointment.start_at
        candidate = Interval(start_at, start_at + timedelta(minutes=duration))
        _check_interval(db, ctx, candidate, exclude_appointment_id=appointment.id)
        values["start_at"] = start_at
        values["duration_minutes"] = duration

    if not values:
        return appointment

    previous_start = appointment.start_at
    values["updated_at"] = utc_now_naive()
    try:
        result = db.execute(
            update(Appointment)
            .where(
                Appointment.id == appointment.id,
                Appointment.account_id == ctx.account_id,
                Appointment.status == current.value,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if int(result.rowcount or 0) == 0:
            db.rollback()
            raise ConflictError("Appointment was modified concurrently; retry")
        if rescheduled:
            release_slot_claims(db, ctx.account_id, appointment.id)
            add_slot_claims(db, ctx.account_id, appointment.id, start_at, duration)
            add_status_event(
                db,
                account_id=ctx.account_id,
                appointment_id=appointment.id,
                from_status=current.value,
                to_status=current.value,
                actor=actor,
                note=f"rescheduled from {previous_start.isoformat()}Z",
            )
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        log.warning(
            "reschedule_conflict",
            account_id=ctx.account_id,
            appointment_id=appointment_id,
            start_at=values.get("start_at", previous_start).isoformat(),
        )
        raise ConflictError("Requested time is no longer available") from exc

    db.refresh(appointment)
    log.info(
        "appointment_updated",
        account_id=ctx.account_id,
        appointment_id=appointment.id,
        fields=sorted(k for k in values if k != "updated_at"),
        rescheduled=rescheduled,
    )
    return appointment
