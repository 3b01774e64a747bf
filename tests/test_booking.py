import threading
from datetime import datetime, timezone

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import sessionmaker

from bookingcore.booking import BookingRequest, book, update_appointment
from bookingcore.catalog import create_service, deactivate_service
from bookingcore.db import enable_sqlite_wal, init_db
from bookingcore.errors import ConflictError, ValidationError
from bookingcore.lifecycle import cancel_appointment
from bookingcore.models import Appointment, OutboxEvent, SlotClaim
from bookingcore.review_policy import update_review_policy
from bookingcore.schedule import default_weekly_schedule, serialize_weekly_schedule, set_weekly_schedule
from bookingcore.statuses import BookingSource
from bookingcore.tenancy import create_account, load_account_context


def make_session_factory(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'test_bookingcore.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    enable_sqlite_wal(engine)
    init_db(engine)
    return sessionmaker(bind=engine, autoflush=False, autocommit=False)


def make_context(db, name="Praxis Wien", appointment_review_mode=None):
    account = create_account(db, name, "Europe/Vienna")
    set_weekly_schedule(db, account.id, serialize_weekly_schedule(default_weekly_schedule()))
    if appointment_review_mode:
        update_review_policy(db, account.id, appointment_review_mode=appointment_review_mode)
    return load_account_context(db, account.id)


def request_at(hour, minute=0, **overrides):
    values = {
        "customer_name": "Anna Huber",
        "customer_phone": "+43 660 1234567",
        "start": datetime(2030, 1, 7, hour, minute),
        "duration_minutes": 30,
    }
    values.update(overrides)
    return BookingRequest(**values)


def test_bot_booking_is_booked_when_review_is_off(tmp_path):
    db = make_session_factory(tmp_path)()
    ctx = make_context(db)

    appointment = book(db, ctx, request_at(9))

    assert appointment.status == "booked"
    assert appointment.source == "bot"
    # Stored as naive UTC; Vienna is UTC+1 in January.
    assert appointment.start_at == datetime(2030, 1, 7, 8, 0)
    claims = db.execute(select(SlotClaim).where(SlotClaim.appointment_id == appointment.id)).scalars().all()
    assert len(claims) == 6
    outbox = db.execute(select(OutboxEvent)).scalars().all()
    assert [row.topic for row in outbox] == ["appointment.accepted"]


def test_staff_booking_is_confirmed(tmp_path):
    db = make_session_factory(tmp_path)()
    ctx = make_context(db)
    appointment = book(db, ctx, request_at(9, source=BookingSource.STAFF))
    assert appointment.status == "confirmed"


def test_review_mode_always_holds_booking_as_pending(tmp_path):
    db = make_session_factory(tmp_path)()
    ctx = make_context(db, appointment_review_mode="always")

    appointment = book(db, ctx, request_at(9))

    assert appointment.status == "pending"
    assert db.execute(select(func.count(OutboxEvent.id))).scalar_one() == 0


def test_on_redflag_holds_only_flagged_bookings(tmp_path):
    db = make_session_factory(tmp_path)()
    ctx = make_context(db, appointment_review_mode="on_redflag")

    flagged = book(db, ctx, request_at(9, is_flagged=True))
    clean = book(db, ctx, request_at(10))

    assert flagged.status == "pending"
    assert flagged.is_flagged is True
    assert clean.status == "booked"


def test_aware_start_is_converted_to_utc(tmp_path):
    db = make_session_factory(tmp_path)()
    ctx = make_context(db)
    appointment = book(
        db, ctx, request_at(9, start=datetime(2030, 1, 7, 12, 0, tzinfo=timezone.utc))
    )
    assert appointment.start_at == datetime(2030, 1, 7, 12, 0)


def test_overlapping_booking_conflicts(tmp_path):
    db = make_session_factory(tmp_path)()
    ctx = make_context(db)
    book(db, ctx, request_at(9, duration_minutes=60))

    with pytest.raises(ConflictError):
        book(db, ctx, request_at(9, 30))

    # Back-to-back is fine.
    follow_up = book(db, ctx, request_at(10))
    assert follow_up.status == "booked"


def test_booking_outside_opening_hours_is_invalid(tmp_path):
    db = make_session_factory(tmp_path)()
    ctx = make_context(db)

    with pytest.raises(ValidationError):
        book(db, ctx, request_at(7))
    # Straddles the lunch break between the two windows.
    with pytest.raises(ValidationError):
        book(db, ctx, request_at(11, 45))
    # Saturday is closed.
    with pytest.raises(ValidationError):
        book(db, ctx, request_at(9, start=datetime(2030, 1, 12, 9, 0)))


@pytest.mark.parametrize(
    "overrides",
    [
        {"start": datetime(2030, 1, 7, 9, 2)},
        {"duration_minutes": 17},
        {"duration_minutes": 0},
        {"duration_minutes": None},
        {"customer_name": " "},
        {"start": datetime(2001, 1, 1, 9, 0)},
    ],
)
def test_malformed_requests_are_rejected(tmp_path, overrides):
    db = make_session_factory(tmp_path)()
    ctx = make_context(db)
    with pytest.raises(ValidationError):
        book(db, ctx, request_at(9, **overrides))
    assert db.execute(select(func.count(Appointment.id))).scalar_one() == 0


def test_service_supplies_default_duration(tmp_path):
    db = make_session_factory(tmp_path)()
    ctx = make_context(db)
    service = create_service(db, ctx.account_id, "Beratungsgespräch", duration_minutes=60, price=75)

    appointment = book(db, ctx, request_at(9, duration_minutes=None, service_id=service.id))

    assert appointment.duration_minutes == 60
    assert appointment.service_id == service.id


def test_inactive_or_foreign_service_cannot_be_booked(tmp_path):
    db = make_session_factory(tmp_path)()
    ctx = make_context(db)
    other = make_context(db, name="Praxis Graz")
    retired = create_service(db, ctx.account_id, "Altes Angebot", duration_minutes=30)
    deactivate_service(db, ctx.account_id, retired.id)
    foreign = create_service(db, other.account_id, "Fremd", duration_minutes=30)

    with pytest.raises(ValidationError):
        book(db, ctx, request_at(9, service_id=retired.id))
    with pytest.raises(ValidationError):
        book(db, ctx, request_at(9, service_id=foreign.id))
    with pytest.raises(ValidationError):
        book(db, ctx, request_at(9, service_id=4242))


def _race(session_factory, account_id, requests):
    barrier = threading.Barrier(len(requests))
    outcomes = [None] * len(requests)

    def worker(index, request):
        db = session_factory()
        try:
            ctx = load_account_context(db, account_id)
            barrier.wait()
            try:
                outcomes[index] = book(db, ctx, request).id
            except ConflictError as exc:
                outcomes[index] = exc
        finally:
            db.close()

    threads = [threading.Thread(target=worker, args=(i, r)) for i, r in enumerate(requests)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=60)
    return outcomes


def test_concurrent_requests_for_the_same_slot_yield_one_booking(tmp_path):
    session_factory = make_session_factory(tmp_path)
    with session_factory() as db:
        account_id = make_context(db).account_id

    outcomes = _race(session_factory, account_id, [request_at(9), request_at(9)])

    successes = [o for o in outcomes if isinstance(o, int)]
    conflicts = [o for o in outcomes if isinstance(o, ConflictError)]
    assert len(successes) == 1
    assert len(conflicts) == 1
    with session_factory() as db:
        rows = db.execute(select(Appointment)).scalars().all()
        assert [row.id for row in rows] == successes


def test_concurrent_requests_for_disjoint_slots_both_succeed(tmp_path):
    session_factory = make_session_factory(tmp_path)
    with session_factory() as db:
        account_id = make_context(db).account_id

    outcomes = _race(session_factory, account_id, [request_at(9), request_at(10)])

    assert all(isinstance(o, int) for o in outcomes)
    with session_factory() as db:
        assert db.execute(select(func.count(Appointment.id))).scalar_one() == 2


def test_concurrent_partial_overlap_never_double_books(tmp_path):
    session_factory = make_session_factory(tmp_path)
    with session_factory() as db:
        account_id = make_context(db).account_id

    outcomes = _race(
        session_factory,
        account_id,
        [request_at(9, duration_minutes=60), request_at(9, 45), request_at(10, 30)],
    )

    with session_factory() as db:
        rows = db.execute(select(Appointment).order_by(Appointment.start_at)).scalars().all()
    for earlier, later in zip(rows, rows[1:]):
        assert earlier.start_at.timestamp() + earlier.duration_minutes * 60 <= later.start_at.timestamp()
    assert len(rows) == len([o for o in outcomes if isinstance(o, int)])


def test_start_skipped_by_dst_is_rejected_not_moved(tmp_path):
    db = make_session_factory(tmp_path)()
    account = create_account(db, "Praxis Wien", "Europe/Vienna")
    set_weekly_schedule(
        db,
        account.id,
        {"sunday": {"dayOfWeek": 0, "isAvailable": True, "timeSlots": [{"start": "01:00", "end": "05:00"}]}},
    )
    ctx = load_account_context(db, account.id)

    # 2030-03-31 02:00 jumps to 03:00 in Vienna.
    with pytest.raises(ValidationError):
        book(db, ctx, request_at(9, start=datetime(2030, 3, 31, 2, 30)))

    appointment = book(db, ctx, request_at(9, start=datetime(2030, 3, 31, 3, 0)))
    assert appointment.start_at == datetime(2030, 3, 31, 1, 0)


def test_update_appointment_edits_customer_details(tmp_path):
    db = make_session_factory(tmp_path)()
    ctx = make_context(db)
    appointment = book(db, ctx, request_at(9))

    updated = update_appointment(
        db, ctx, appointment.id, customer_name="Anna Maria Huber", notes="Rückruf erbeten"
    )

    assert updated.customer_name == "Anna Maria Huber"
    assert updated.notes == "Rückruf erbeten"
    assert updated.start_at == datetime(2030, 1, 7, 8, 0)
    with pytest.raises(ValidationError):
        update_appointment(db, ctx, appointment.id, customer_phone=" ")


def test_reschedule_into_free_time_moves_the_claims(tmp_path):
    db = make_session_factory(tmp_path)()
    ctx = make_context(db)
    appointment = book(db, ctx, request_at(9))

    moved = update_appointment(
        db, ctx, appointment.id, start=datetime(2030, 1, 7, 9, 15), duration_minutes=45, actor="staff@example.com"
    )

    assert moved.start_at == datetime(2030, 1, 7, 8, 15)
    assert moved.duration_minutes == 45
    claims = db.execute(
        select(SlotClaim.slot_start).where(SlotClaim.appointment_id == appointment.id)
    ).scalars().all()
    assert sorted(claims) == [datetime(2030, 1, 7, 8, m) for m in range(15, 60, 5)]
    # The old 09:00 slot is free again.
    assert book(db, ctx, request_at(9, duration_minutes=15)).status == "booked"


def test_reschedule_onto_occupied_or_closed_time_is_refused(tmp_path):
    db = make_session_factory(tmp_path)()
    ctx = make_context(db)
    appointment = book(db, ctx, request_at(9))
    book(db, ctx, request_at(10))

    with pytest.raises(ConflictError):
        update_appointment(db, ctx, appointment.id, start=datetime(2030, 1, 7, 9, 45))
    with pytest.raises(ConflictError):
        update_appointment(db, ctx, appointment.id, duration_minutes=90)
    with pytest.raises(ValidationError):
        update_appointment(db, ctx, appointment.id, start=datetime(2030, 1, 7, 18, 0))

    db.refresh(appointment)
    assert appointment.start_at == datetime(2030, 1, 7, 8, 0)
    assert appointment.duration_minutes == 30
    claims = db.execute(
        select(func.count(SlotClaim.id)).where(SlotClaim.appointment_id == appointment.id)
    ).scalar_one()
    assert claims == 6


def test_cancelled_appointment_cannot_be_rescheduled(tmp_path):
    db = make_session_factory(tmp_path)()
    ctx = make_context(db)
    appointment = book(db, ctx, request_at(9))
    cancel_appointment(db, ctx.account_id, appointment.id)

    with pytest.raises(ValidationError):
        update_appointment(db, ctx, appointment.id, start=datetime(2030, 1, 7, 10, 0))


def test_sqlite_writers_wait_for_the_lock(tmp_path):
    engine = create_engine(f"sqlite:///{tmp_path / 'test_bookingcore.db'}")
    enable_sqlite_wal(engine)
    with engine.connect() as connection:
        assert connection.exec_driver_sql("PRAGMA journal_mode").scalar() == "wal"
        assert connection.exec_driver_sql("PRAGMA busy_timeout").scalar() == 30000
