from enum import Enum


class AppointmentStatus(str, Enum):
    PENDING = "pending"
    BOOKED = "booked"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    COMPLETED = "completed"
    NOSHOW = "noshow"


# Statuses whose interval occupies the calendar.
OCCUPYING_STATUSES = frozenset(
    {AppointmentStatus.PENDING, AppointmentStatus.BOOKED, AppointmentStatus.CONFIRMED}
)
ACCEPTED_STATUSES = frozenset({AppointmentStatus.BOOKED, AppointmentStatus.CONFIRMED})
TERMINAL_STATUSES = frozenset(
    {AppointmentStatus.CANCELLED, AppointmentStatus.COMPLETED, AppointmentStatus.NOSHOW}
)


class MessageStatus(str, Enum):
    DRAFT = "draft"
    PENDING = "pending"
    APPROVED = "approved"
    SENT = "sent"


class ReviewMode(str, Enum):
    ALWAYS = "always"
    NEVER = "never"
    ON_REDFLAG = "on_redflag"


class BookingSource(str, Enum):
    BOT = "bot"
    STAFF = "staff"
