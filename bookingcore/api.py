from datetime import date, timezone
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Body, Depends, Header, HTTPException, Query, Response, status
from sqlalchemy.orm import Session

from .availability import free_slots, list_bookable_starts
from .booking import BookingRequest, book, update_appointment
from .catalog import create_service, deactivate_service, list_services, update_service
from .db import get_db
from .errors import BookingCoreError, ConflictError, InvalidTransition, NotFoundError, ValidationError
from .lifecycle import (
    approve_appointment,
    cancel_appointment,
    get_appointment,
    list_appointments,
    list_pending_appointments,
    list_status_events,
    pending_count,
    reject_appointment,
    transition_appointment,
)
from .messages import (
    approve_message,
    list_review_queue,
    mark_message_sent,
    send_custom_reply,
    submit_bot_reply,
)
from .review_policy import ReviewPolicy, get_review_policy, update_review_policy
from .schedule import (
    add_blackout_date,
    get_weekly_schedule,
    list_blackout_dates,
    remove_blackout_date,
    replace_blackout_dates,
    serialize_weekly_schedule,
    set_weekly_schedule,
)
from .schemas import (
    AccountCreate,
    AccountOut,
    AccountUpdate,
    AppointmentOut,
    AppointmentRejection,
    AppointmentStatusEventOut,
    AppointmentTransition,
    AppointmentUpdate,
    BlackoutIn,
    BlackoutOut,
    BookingCreate,
    BotReplyCreate,
    CustomReply,
    FreeSlotsOut,
    IntervalOut,
    MessageOut,
    ReviewPolicyIn,
    ReviewPolicyOut,
    ReviewStatsOut,
    ServiceCreate,
    ServiceOut,
    ServiceUpdate,
)
from .statuses import BookingSource
from .tenancy import AccountContext, create_account, get_account, load_account_context, update_account_timezone
from .timeutils import local_day_bounds

router = APIRouter(prefix="/api")


def _http_error(exc: BookingCoreError) -> HTTPException:
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    if isinstance(exc, (InvalidTransition, ConflictError)):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    if isinstance(exc, ValidationError):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Internal Server Error")


def get_account_context(
    db: Session = Depends(get_db),
    x_account_id: Optional[str] = Header(default=None),
) -> AccountContext:
    raw = (x_account_id or "").strip()
    if not raw:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="X-Account-Id header is required")
    try:
        account_id = int(raw)
    except ValueError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="X-Account-Id must be an integer")
    try:
        return load_account_context(db, account_id)
    except BookingCoreError as exc:
        raise _http_error(exc) from exc


def _policy_out(policy: ReviewPolicy) -> ReviewPolicyOut:
    return ReviewPolicyOut(
        appointment_review_mode=policy.appointment_review_mode.value,
        message_review_mode=policy.message_review_mode.value,
    )


def _utc(value):
    return value.replace(tzinfo=timezone.utc)


@router.post("/accounts", response_model=AccountOut, status_code=status.HTTP_201_CREATED)
def add_account(payload: AccountCreate, db: Session = Depends(get_db)):
    try:
        return create_account(db, payload.name, payload.timezone)
    except BookingCoreError as exc:
        raise _http_error(exc) from exc


@router.get("/accounts/me", response_model=AccountOut)
def read_account(
    db: Session = Depends(get_db),
    ctx: AccountContext = Depends(get_account_context),
):
    return get_account(db, ctx.account_id)


@router.patch("/accounts/me", response_model=AccountOut)
def patch_account(
    payload: AccountUpdate,
    db: Session = Depends(get_db),
    ctx: AccountContext = Depends(get_account_context),
):
    try:
        return update_account_timezone(db, ctx.account_id, payload.timezone)
    except BookingCoreError as exc:
        raise _http_error(exc) from exc


@router.get("/availability/slots", response_model=FreeSlotsOut)
def read_free_slots(
    start: date = Query(...),
    end: date = Query(...),
    duration: int = Query(...),
    step: Optional[int] = Query(default=None, ge=1, le=1440),
    db: Session = Depends(get_db),
    ctx: AccountContext = Depends(get_account_context),
):
    try:
        intervals = free_slots(db, ctx, start, end, duration)
        starts = list_bookable_starts(intervals, duration, step)
    except BookingCoreError as exc:
        raise _http_error(exc) from exc
    return FreeSlotsOut(
        timezone=ctx.timezone,
        duration_minutes=duration,
        slots=[IntervalOut(start=_utc(i.start), end=_utc(i.end), duration_minutes=i.minutes) for i in intervals],
        bookable_starts=[_utc(i.start) for i in starts],
    )


@router.get("/availability/schedule")
def read_schedule(
    db: Session = Depends(get_db),
    ctx: AccountContext = Depends(get_account_context),
) -> Dict[str, Any]:
    try:
        return serialize_weekly_schedule(get_weekly_schedule(db, ctx.account_id))
    except BookingCoreError as exc:
        raise _http_error(exc) from exc


@router.put("/availability/schedule")
def write_schedule(
    payload: Dict[str, Any] = Body(...),
    db: Session = Depends(get_db),
    ctx: AccountContext = Depends(get_account_context),
) -> Dict[str, Any]:
    try:
        return serialize_weekly_schedule(set_weekly_schedule(db, ctx.account_id, payload))
    except BookingCoreError as exc:
        raise _http_error(exc) from exc


@router.get("/availability/blackouts", response_model=List[BlackoutOut])
def read_blackouts(
    start: Optional[date] = Query(default=None),
    end: Optional[date] = Query(default=None),
    db: Session = Depends(get_db),
    ctx: AccountContext = Depends(get_account_context),
):
    return list_blackout_dates(db, ctx.account_id, start, end)


@router.post("/availability/blackouts", response_model=BlackoutOut, status_code=status.HTTP_201_CREATED)
def add_blackout(
    payload: BlackoutIn,
    db: Session = Depends(get_db),
    ctx: AccountContext = Depends(get_account_context),
):
    try:
        return add_blackout_date(db, ctx.account_id, payload.day, payload.reason, payload.is_recurring)
    except BookingCoreError as exc:
        raise _http_error(exc) from exc


@router.put("/availability/blackouts", response_model=List[BlackoutOut])
def put_blackouts(
    payload: List[BlackoutIn],
    db: Session = Depends(get_db),
    ctx: AccountContext = Depends(get_account_context),
):
    try:
        return replace_blackout_dates(db, ctx.account_id, [item.model_dump() for item in payload])
    except BookingCoreError as exc:
        raise _http_error(exc) from exc


@router.delete("/availability/blackouts/{blackout_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_blackout(
    blackout_id: int,
    db: Session = Depends(get_db),
    ctx: AccountContext = Depends(get_account_context),
):
    try:
        remove_blackout_date(db, ctx.account_id, blackout_id)
    except BookingCoreError as exc:
        raise _http_error(exc) from exc
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/appointments", response_model=AppointmentOut, status_code=status.HTTP_201_CREATED)
def add_appointment(
    payload: BookingCreate,
    x_actor_email: Optional[str] = Header(default=None),
    db: Session = Depends(get_db),
    ctx: AccountContext = Depends(get_account_context),
):
    request = BookingRequest(
        customer_name=payload.customer_name,
        customer_phone=payload.customer_phone,
        customer_email=payload.customer_email,
        start=payload.start,
        duration_minutes=payload.duration_minutes,
        service_id=payload.service_id,
        source=BookingSource(payload.source),
        is_flagged=payload.is_flagged,
        notes=payload.notes,
        actor=x_actor_email,
    )
    try:
        return book(db, ctx, request)
    except BookingCoreError as exc:
        raise _http_error(exc) from exc


@router.get("/appointments", response_model=List[AppointmentOut])
def read_appointments(
    start: Optional[date] = Query(default=None),
    end: Optional[date] = Query(default=None),
    status_filter: Optional[str] = Query(default=None, alias="status"),
    db: Session = Depends(get_db),
    ctx: AccountContext = Depends(get_account_context),
):
    range_start = local_day_bounds(start, ctx.tz)[0] if start else None
    range_end = local_day_bounds(end, ctx.tz)[1] if end else None
    try:
        return list_appointments(db, ctx.account_id, range_start, range_end, status_filter)
    except BookingCoreError as exc:
        raise _http_error(exc) from exc


@router.get("/appointments/{appointment_id}", response_model=AppointmentOut)
def read_appointment(
    appointment_id: int,
    db: Session = Depends(get_db),
    ctx: AccountContext = Depends(get_account_context),
):
    try:
        return get_appointment(db, ctx.account_id, appointment_id)
    except BookingCoreError as exc:
        raise _http_error(exc) from exc


@router.patch("/appointments/{appointment_id}", response_model=AppointmentOut)
def patch_appointment(
    appointment_id: int,
    payload: AppointmentUpdate,
    x_actor_email: Optional[str] = Header(default=None),
    db: Session = Depends(get_db),
    ctx: AccountContext = Depends(get_account_context),
):
    changes = payload.model_dump(exclude_unset=True)
    if not changes:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No fields to update")
    try:
        return update_appointment(db, ctx, appointment_id, actor=x_actor_email, **changes)
    except BookingCoreError as exc:
        raise _http_error(exc) from exc


@router.post("/appointments/{appointment_id}/transition", response_model=AppointmentOut)
def transition(
    appointment_id: int,
    payload: AppointmentTransition,
    x_actor_email: Optional[str] = Header(default=None),
    db: Session = Depends(get_db),
    ctx: AccountContext = Depends(get_account_context),
):
    try:
        return transition_appointment(
            db,
            ctx.account_id,
            appointment_id,
            payload.status,
            actor=x_actor_email,
            note=payload.note,
        )
    except BookingCoreError as exc:
        raise _http_error(exc) from exc


@router.get("/appointments/{appointment_id}/history", response_model=List[AppointmentStatusEventOut])
def read_appointment_history(
    appointment_id: int,
    db: Session = Depends(get_db),
    ctx: AccountContext = Depends(get_account_context),
):
    try:
        return list_status_events(db, ctx.account_id, appointment_id)
    except BookingCoreError as exc:
        raise _http_error(exc) from exc


@router.delete("/appointments/{appointment_id}", response_model=AppointmentOut)
def delete_appointment(
    appointment_id: int,
    x_actor_email: Optional[str] = Header(default=None),
    db: Session = Depends(get_db),
    ctx: AccountContext = Depends(get_account_context),
):
    try:
        return cancel_appointment(db, ctx.account_id, appointment_id, actor=x_actor_email)
    except BookingCoreError as exc:
        raise _http_error(exc) from exc


@router.get("/review/pending-appointments", response_model=List[AppointmentOut])
def read_pending_appointments(
    db: Session = Depends(get_db),
    ctx: AccountContext = Depends(get_account_context),
):
    return list_pending_appointments(db, ctx.account_id)


@router.get("/review/stats", response_model=ReviewStatsOut)
def read_review_stats(
    db: Session = Depends(get_db),
    ctx: AccountContext = Depends(get_account_context),
):
    return ReviewStatsOut(
        pending_appointments=pending_count(db, ctx.account_id),
        pending_messages=len(list_review_queue(db, ctx.account_id)),
    )


@router.post("/review/approve/{appointment_id}", response_model=AppointmentOut)
def approve(
    appointment_id: int,
    x_actor_email: Optional[str] = Header(default=None),
    db: Session = Depends(get_db),
    ctx: AccountContext = Depends(get_account_context),
):
    try:
        return approve_appointment(db, ctx.account_id, appointment_id, actor=x_actor_email)
    except BookingCoreError as exc:
        raise _http_error(exc) from exc


@router.post("/review/reject/{appointment_id}", response_model=AppointmentOut)
def reject(
    appointment_id: int,
    payload: Optional[AppointmentRejection] = None,
    x_actor_email: Optional[str] = Header(default=None),
    db: Session = Depends(get_db),
    ctx: AccountContext = Depends(get_account_context),
):
    reason = payload.reason if payload else None
    try:
        return reject_appointment(db, ctx.account_id, appointment_id, actor=x_actor_email, reason=reason)
    except BookingCoreError as exc:
        raise _http_error(exc) from exc


@router.get("/review-policy", response_model=ReviewPolicyOut)
def read_review_policy(
    db: Session = Depends(get_db),
    ctx: AccountContext = Depends(get_account_context),
):
    return _policy_out(get_review_policy(db, ctx.account_id))


@router.put("/review-policy", response_model=ReviewPolicyOut)
def write_review_policy(
    payload: ReviewPolicyIn,
    db: Session = Depends(get_db),
    ctx: AccountContext = Depends(get_account_context),
):
    try:
        policy = update_review_policy(
            db,
            ctx.account_id,
            appointment_review_mode=payload.appointment_review_mode,
            message_review_mode=payload.message_review_mode,
        )
    except BookingCoreError as exc:
        raise _http_error(exc) from exc
    return _policy_out(policy)


@router.post("/messages", response_model=MessageOut, status_code=status.HTTP_201_CREATED)
def add_message(
    payload: BotReplyCreate,
    db: Session = Depends(get_db),
    ctx: AccountContext = Depends(get_account_context),
):
    try:
        return submit_bot_reply(
            db,
            ctx,
            payload.conversation_key,
            payload.content,
            is_flagged=payload.is_flagged,
            deliverable=payload.deliverable,
        )
    except BookingCoreError as exc:
        raise _http_error(exc) from exc


@router.get("/messages/review", response_model=List[MessageOut])
def read_message_queue(
    db: Session = Depends(get_db),
    ctx: AccountContext = Depends(get_account_context),
):
    return list_review_queue(db, ctx.account_id)


@router.post("/messages/{message_id}/approve", response_model=MessageOut)
def approve_draft(
    message_id: int,
    db: Session = Depends(get_db),
    ctx: AccountContext = Depends(get_account_context),
):
    try:
        return approve_message(db, ctx.account_id, message_id)
    except BookingCoreError as exc:
        raise _http_error(exc) from exc


@router.post("/messages/{message_id}/send", response_model=MessageOut)
def send_custom(
    message_id: int,
    payload: CustomReply,
    db: Session = Depends(get_db),
    ctx: AccountContext = Depends(get_account_context),
):
    try:
        return send_custom_reply(db, ctx.account_id, message_id, payload.content)
    except BookingCoreError as exc:
        raise _http_error(exc) from exc


@router.post("/messages/{message_id}/sent", response_model=MessageOut)
def mark_sent(
    message_id: int,
    db: Session = Depends(get_db),
    ctx: AccountContext = Depends(get_account_context),
):
    try:
        return mark_message_sent(db, ctx.account_id, message_id)
    except BookingCoreError as exc:
        raise _http_error(exc) from exc


@router.get("/services", response_model=List[ServiceOut])
def read_services(
    active_only: bool = Query(default=True),
    db: Session = Depends(get_db),
    ctx: AccountContext = Depends(get_account_context),
):
    return list_services(db, ctx.account_id, active_only=active_only)


@router.post("/services", response_model=ServiceOut, status_code=status.HTTP_201_CREATED)
def add_service(
    payload: ServiceCreate,
    db: Session = Depends(get_db),
    ctx: AccountContext = Depends(get_account_context),
):
    try:
        return create_service(
            db,
            ctx.account_id,
            name=payload.name,
            duration_minutes=payload.duration_minutes,
            price=payload.price,
            currency=payload.currency,
            description=payload.description,
            sort_order=payload.sort_order,
        )
    except BookingCoreError as exc:
        raise _http_error(exc) from exc


@router.patch("/services/{service_id}", response_model=ServiceOut)
def patch_service(
    service_id: int,
    payload: ServiceUpdate,
    db: Session = Depends(get_db),
    ctx: AccountContext = Depends(get_account_context),
):
    changes = payload.model_dump(exclude_unset=True)
    if not changes:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No fields to update")
    try:
        return update_service(db, ctx.account_id, service_id, **changes)
    except BookingCoreError as exc:
        raise _http_error(exc) from exc


@router.delete("/services/{service_id}", response_model=ServiceOut)
def delete_service(
    service_id: int,
    db: Session = Depends(get_db),
    ctx: AccountContext = Depends(get_account_context),
):
    try:
        return deactivate_service(db, ctx.account_id, service_id)
    except BookingCoreError as exc:
        raise _http_error(exc) from exc
