from dataclasses import dataclass

import structlog
from sqlalchemy import select
from sqlalchemy.orm import Session

from .errors import ValidationError
from .models import BotConfig, utc_now_naive
from .statuses import AppointmentStatus, MessageStatus, ReviewMode

log = structlog.get_logger("bookingcore.review_policy")


@dataclass(frozen=True)
class ReviewPolicy:
    appointment_review_mode: ReviewMode = ReviewMode.NEVER
    message_review_mode: ReviewMode = ReviewMode.NEVER


def parse_review_mode(value) -> ReviewMode:
    if isinstance(value, ReviewMode):
        return value
    raw = str(value or "").strip().lower()
    try:
        return ReviewMode(raw)
    except ValueError as exc:
        allowed = ", ".join(m.value for m in ReviewMode)
        raise ValidationError(f"Invalid review mode {value!r}, expected one of: {allowed}") from exc


def requires_review(mode: ReviewMode, is_flagged: bool) -> bool:
    if mode is ReviewMode.ALWAYS:
        return True
    if mode is ReviewMode.NEVER:
        return False
    if mode is ReviewMode.ON_REDFLAG:
        return bool(is_flagged)
    raise ValidationError(f"Unhandled review mode {mode!r}")


def decide_initial_status(
    mode: ReviewMode,
    is_flagged: bool,
    accepted: AppointmentStatus = AppointmentStatus.BOOKED,
) -> AppointmentStatus:
    """Initial status of a new appointment.

    ``accepted`` is the auto-accept state: ``booked`` for bot bookings and
    ``confirmed`` for bookings entered by staff.
    """
    if accepted not in (AppointmentStatus.BOOKED, AppointmentStatus.CONFIRMED):
        raise ValidationError("accepted status must be booked or confirmed")
    if requires_review(parse_review_mode(mode), is_flagged):
        return AppointmentStatus.PENDING
    return accepted


def decide_message_status(
    mode: ReviewMode,
    is_flagged: bool,
    deliverable: bool = False,
) -> MessageStatus:
    """Status of a new bot-authored reply.

    Held replies are ``draft`` whatever held them; ``is_flagged`` on the row
    records whether the classifier did. Accepted replies are ``sent`` when a
    transport is attached, otherwise ``approved``.
    """
    mode = parse_review_mode(mode)
    if requires_review(mode, is_flagged):
        return MessageStatus.DRAFT
    return MessageStatus.SENT if deliverable else MessageStatus.APPROVED


def _get_row(db: Session, account_id: int) -> BotConfig | None:
    return db.execute(
        select(BotConfig).where(BotConfig.account_id == account_id)
    ).scalar_one_or_none()


def _to_policy(row: BotConfig | None) -> ReviewPolicy:
    if row is None:
        return ReviewPolicy()
    return ReviewPolicy(
        appointment_review_mode=parse_review_mode(row.appointment_review_mode or "never"),
        message_review_mode=parse_review_mode(row.message_review_mode or "never"),
    )


def get_review_policy(db: Session, account_id: int) -> ReviewPolicy:
    return _to_policy(_get_row(db, account_id))


def update_review_policy(
    db: Session,
    account_id: int,
    appointment_review_mode=None,
    message_review_mode=None,
) -> ReviewPolicy:
    # Parse both before touching the row so a bad value changes nothing.
    appointment_mode = (
        parse_review_mode(appointment_review_mode) if appointment_review_mode is not None else None
    )
    message_mode = parse_review_mode(message_review_mode) if message_review_mode is not None else None

    row = _get_row(db, account_id)
    if row is None:
        row = BotConfig(account_id=account_id)
        db.add(row)
    if appointment_mode is not None:
        row.appointment_review_mode = appointment_mode.value
    if message_mode is not None:
        row.message_review_mode = message_mode.value
    row.updated_at = utc_now_naive()
    db.commit()
    db.refresh(row)
    policy = _to_policy(row)
    log.info(
        "review_policy_updated",
        account_id=account_id,
        appointment_review_mode=policy.appointment_review_mode.value,
        message_review_mode=policy.message_review_mode.value,
    )
    return policy
