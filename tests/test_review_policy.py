import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from bookingcore.db import init_db
from bookingcore.errors import ValidationError
from bookingcore.review_policy import (
    decide_initial_status,
    decide_message_status,
    get_review_policy,
    parse_review_mode,
    requires_review,
    update_review_policy,
)
from bookingcore.statuses import AppointmentStatus, MessageStatus, ReviewMode
from bookingcore.tenancy import create_account


def make_session(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'test_bookingcore.db'}",
        connect_args={"check_same_thread": False},
    )
    init_db(engine)
    return sessionmaker(bind=engine, autoflush=False, autocommit=False)()


@pytest.mark.parametrize(
    "mode,flagged,expected",
    [
        ("never", False, AppointmentStatus.BOOKED),
        ("never", True, AppointmentStatus.BOOKED),
        ("always", False, AppointmentStatus.PENDING),
        ("always", True, AppointmentStatus.PENDING),
        ("on_redflag", True, AppointmentStatus.PENDING),
        ("on_redflag", False, AppointmentStatus.BOOKED),
    ],
)
def test_decide_initial_status(mode, flagged, expected):
    assert decide_initial_status(mode, flagged) == expected


def test_staff_bookings_auto_accept_as_confirmed():
    assert (
        decide_initial_status(ReviewMode.NEVER, False, accepted=AppointmentStatus.CONFIRMED)
        == AppointmentStatus.CONFIRMED
    )
    assert (
        decide_initial_status(ReviewMode.ALWAYS, False, accepted=AppointmentStatus.CONFIRMED)
        == AppointmentStatus.PENDING
    )
    with pytest.raises(ValidationError):
        decide_initial_status(ReviewMode.NEVER, False, accepted=AppointmentStatus.CANCELLED)


def test_decide_message_status():
    assert decide_message_status("never", True) == MessageStatus.APPROVED
    assert decide_message_status("never", False, deliverable=True) == MessageStatus.SENT
    assert decide_message_status("always", False) == MessageStatus.DRAFT
    assert decide_message_status("on_redflag", True) == MessageStatus.DRAFT
    assert decide_message_status("on_redflag", False) == MessageStatus.APPROVED


def test_requires_review_shares_one_rule():
    assert requires_review(ReviewMode.ALWAYS, False) is True
    assert requires_review(ReviewMode.NEVER, True) is False
    assert requires_review(ReviewMode.ON_REDFLAG, True) is True


@pytest.mark.parametrize("value", ["sometimes", "", None, "ALWAYS!"])
def test_unknown_review_mode_is_rejected(value):
    with pytest.raises(ValidationError):
        parse_review_mode(value)


def test_parse_review_mode_is_case_insensitive():
    assert parse_review_mode(" On_RedFlag ") is ReviewMode.ON_REDFLAG


def test_policy_defaults_to_never_and_updates_independently(tmp_path):
    db = make_session(tmp_path)
    account = create_account(db, "Praxis Wien")

    policy = get_review_policy(db, account.id)
    assert policy.appointment_review_mode is ReviewMode.NEVER
    assert policy.message_review_mode is ReviewMode.NEVER

    update_review_policy(db, account.id, appointment_review_mode="always")
    policy = update_review_policy(db, account.id, message_review_mode="on_redflag")
    assert policy.appointment_review_mode is ReviewMode.ALWAYS
    assert policy.message_review_mode is ReviewMode.ON_REDFLAG


def test_invalid_update_changes_nothing(tmp_path):
    db = make_session(tmp_path)
    account = create_account(db, "Praxis Wien")

    with pytest.raises(ValidationError):
        update_review_policy(db, account.id, appointment_review_mode="always", message_review_mode="bogus")

    assert get_review_policy(db, account.id).appointment_review_mode is ReviewMode.NEVER
