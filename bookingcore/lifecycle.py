from datetime import datetime

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from .claims import add_slot_claims, release_slot_claims
from .errors import ConflictError, InvalidTransition, NotFoundError, ValidationError
from .models import Appointment, AppointmentStatusEvent, utc_now_naive
from .outbox import APPOINTMENT_ACCEPTED_TOPIC, enqueue_outbox_event
from .statuses import (
    ACCEPTED_STATUSES,
    OCCUPYING_STATUSES,
    TERMINAL_STATUSES,
    AppointmentStatus,
    BookingSource,
)

log = structlog.get_logger("bookingcore.lifecycle")

S = AppointmentStatus

ALLOWED_TRANSITIONS: dict[AppointmentStatus, frozenset[AppointmentStatus]] = {
    S.PENDING: frozenset({S.BOOKED, S.CONFIRMED, S.CANCELLED}),
    S.BOOKED: frozenset({S.CONFIRMED, S.CANCELLED}),
    S.CONFIRMED: frozenset({S.CANCELLED, S.COMPLETED, S.NOSHOW}),
    S.CANCELLED: frozenset(),
    S.COMPLETED: frozenset(),
    S.NOSHOW: frozenset(),
}

_MAX_TRANSITION_ATTEMPTS = 3


def parse_status(value) -> AppointmentStatus:
    if isinstance(value, AppointmentStatus):
        return value
    raw = str(value or "").strip().lower()
    try:
        return AppointmentStatus(raw)
    except ValueError as exc:
        raise ValidationError(f"Invalid appointment status {value!r}") from exc


def can_transition(current: AppointmentStatus, target: AppointmentStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


def validate_transition(current: AppointmentStatus, target: AppointmentStatus) -> None:
    if not can_transition(current, target):
        raise InvalidTransition(current.value, target.value)


def add_status_event(
    db: Session,
    account_id: int,
    appointment_id: int,
    from_status: str | None,
    to_status: str,
    actor: str | None = None,
    note: str | None = None,
) -> AppointmentStatusEvent:
    event = AppointmentStatusEvent(
        account_id=account_id,
        appointment_id=appointment_id,
        from_status=from_status,
        to_status=to_status,
        actor=(actor or "").strip() or None,
        note=(note or "").strip()[:300] or None,
        created_at=utc_now_naive(),
    )
    db.add(event)
    db.flush()
    return event


def _accepted_payload(appointment: Appointment) -> dict:
    return {
        "appointment_id": appointment.id,
        "account_id": appointment.account_id,
        "status": appointment.status,
        "start_at": appointment.start_at.isoformat() + "Z",
        "duration_minutes": int(appointment.duration_minutes),
        "customer_name": appointment.customer_name,
        "customer_phone": appointment.customer_phone,
        "customer_email": appointment.customer_email,
        "service_id": appointment.service_id,
    }


def _notify_accepted(db: Session, appointment: Appointment) -> None:
    enqueue_outbox_event(
        db,
        account_id=appointment.account_id,
        topic=APPOINTMENT_ACCEPTED_TOPIC,
        key=f"appointment_{appointment.id}_{appointment.status}",
        payload=_accepted_payload(appointment),
    )


def create_appointment(
    db: Session,
    account_id: int,
    *,
    customer_name: str,
    customer_phone: str,
    customer_email: str | None,
    start_at: datetime,
    duration_minutes: int,
    service_id: int | None,
    status: AppointmentStatus,
    source: BookingSource = BookingSource.BOT,
    is_flagged: bool = False,
    notes: str | None = None,
    actor: str | None = None,
) -> Appointment:
    """Stage a new appointment with its slot claims in the caller's transaction.

    Claims are flushed here, so a collision raises ``IntegrityError`` before the
    caller commits; rolling back drops the appointment row with its claims.
    """
    status = parse_status(status)
    if status not in OCCUPYING_STATUSES:
        raise ValidationError(f"Appointments cannot be created as {status.value}")

    now = utc_now_naive()
    appointment = Appointment(
        account_id=account_id,
        customer_name=customer_name.strip(),
        customer_phone=customer_phone.strip(),
        customer_email=(customer_email or "").strip() or None,
        start_at=start_at,
        duration_minutes=int(duration_minutes),
        service_id=service_id,
        status=status.value,
        source=source.value,
        is_flagged=bool(is_flagged),
        notes=(notes or "").strip() or None,
        created_at=now,
        updated_at=now,
    )
    db.add(appointment)
    db.flush()
    add_slot_claims(db, account_id, appointment.id, start_at, duration_minutes)
    add_status_event(
        db,
        account_id=account_id,
        appointment_id=appointment.id,
        from_status=None,
        to_status=status.value,
        actor=actor,
        note="created",
    )
    if status in ACCEPTED_STATUSES:
        _notify_accepted(db, appointment)
    return appointment


def get_appointment(db: Session, account_id: int, appointment_id: int) -> Appointment:
    appointment = db.execute(
        select(Appointment).where(
            Appointment.id == appointment_id,
            Appointment.account_id == account_id,
        )
    ).scalar_one_or_none()
    if appointment is None:
        raise NotFoundError("Appointment not found")
    return appointment


def transition_appointment(
    db: Session,
    account_id: int,
    appointment_id: int,
    target,
    actor: str | None = None,
    note: str | None = None,
    append_note: str | None = None,
) -> Appointment:
    target_status = parse_status(target)

    for _ in range(_MAX_TRANSITION_ATTEMPTS):
        appointment = get_appointment(db, account_id, appointment_id)
        current = parse_status(appointment.status)
        if current == target_status:
            return appointment
        validate_transition(current, target_status)

        now = utc_now_naive()
        values = {"status": target_status.value, "updated_at": now}
        if append_note:
            values["notes"] = f"{appointment.notes or ''}\n{append_note}".strip()

        # Compare-and-set on the current status keeps concurrent reviewers from
        # both applying a transition.
        result = db.execute(
            update(Appointment)
            .where(
                Appointment.id == appointment.id,
                Appointment.account_id == account_id,
                Appointment.status == current.value,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if int(result.rowcount or 0) == 0:
            db.rollback()
            continue

        db.refresh(appointment)
        if target_status in TERMINAL_STATUSES:
            release_slot_claims(db, account_id, appointment.id)
        add_status_event(
            db,
            account_id=account_id,
            appointment_id=appointment.id,
            from_status=current.value,
            to_status=target_status.value,
            actor=actor,
            note=note,
        )
        if target_status in ACCEPTED_STATUSES:
            _notify_accepted(db, appointment)
        db.commit()
        db.refresh(appointment)
        log.info(
            "appointment_transitioned",
            account_id=account_id,
            appointment_id=appointment.id,
            from_status=current.value,
            to_status=target_status.value,
            actor=actor,
        )
        return appointment

    raise ConflictError("Appointment was modified concurrently; retry")


def approve_appointment(
    db: Session, account_id: int, appointment_id: int, actor: str | None = None
) -> Appointment:
    return transition_appointment(
        db, account_id, appointment_id, AppointmentStatus.CONFIRMED, actor=actor, note="approved"
    )


def reject_appointment(
    db: Session,
    account_id: int,
    appointment_id: int,
    actor: str | None = None,
    reason: str | None = None,
) -> Appointment:
    reason = (reason or "").strip()
    marker = f"[REJECTED: {reason}]" if reason else "[REJECTED]"
    return transition_appointment(
        db,
        account_id,
        appointment_id,
        AppointmentStatus.CANCELLED,
        actor=actor,
        note=reason or "rejected",
        append_note=marker,
    )


def cancel_appointment(
    db: Session, account_id: int, appointment_id: int, actor: str | None = None
) -> Appointment:
    return transition_appointment(
        db, account_id, appointment_id, AppointmentStatus.CANCELLED, actor=actor, note="cancelled"
    )


def list_appointments(
    db: Session,
    account_id: int,
    start: datetime | None = None,
    end: datetime | None = None,
    status=None,
) -> list[Appointment]:
    stmt = select(Appointment).where(Appointment.account_id == account_id)
    if start is not None:
        stmt = stmt.where(Appointment.start_at >= start)
    if end is not None:
        stmt = stmt.where(Appointment.start_at < end)
    if status is not None:
        stmt = stmt.where(Appointment.status == parse_status(status).value)
    return list(db.execute(stmt.order_by(Appointment.start_at.asc(), Appointment.id.asc())).scalars().all())


def list_pending_appointments(db: Session, account_id: int) -> list[Appointment]:
    return list_appointments(db, account_id, status=AppointmentStatus.PENDING)


def pending_count(db: Session, account_id: int) -> int:
    total = db.execute(
        select(func.count(Appointment.id)).where(
            Appointment.account_id == account_id,
            Appointment.status == AppointmentStatus.PENDING.value,
        )
    ).scalar_one()
    return int(total or 0)


def list_status_events(
    db: Session, account_id: int, appointment_id: int
) -> list[AppointmentStatusEvent]:
    get_appointment(db, account_id, appointment_id)
    stmt = (
        select(AppointmentStatusEvent)
        .where(
            AppointmentStatusEvent.account_id == account_id,
            AppointmentStatusEvent.appointment_id == appointment_id,
        )
        .order_by(AppointmentStatusEvent.created_at.asc(), AppointmentStatusEvent.id.asc())
    )
    return list(db.execute(stmt).scalars().all())
