from datetime import date, datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field, field_validator


class AccountCreate(BaseModel):
    name: str = Field(min_length=2, max_length=120)
    timezone: str | None = Field(default=None, max_length=64)


class AccountUpdate(BaseModel):
    timezone: str = Field(min_length=1, max_length=64)


class AccountOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    timezone: str
    created_at: datetime


class IntervalOut(BaseModel):
    start: datetime
    end: datetime
    duration_minutes: int


class FreeSlotsOut(BaseModel):
    timezone: str
    duration_minutes: int
    slots: list[IntervalOut]
    bookable_starts: list[datetime]


class BlackoutIn(BaseModel):
    day: date
    reason: str | None = Field(default=None, max_length=200)
    is_recurring: bool = False


class BlackoutOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    day: date
    reason: str | None = None
    is_recurring: bool


class BookingCreate(BaseModel):
    customer_name: str = Field(min_length=2, max_length=120)
    customer_phone: str = Field(min_length=3, max_length=40)
    customer_email: str | None = Field(default=None, max_length=200)
    start: datetime
    duration_minutes: int | None = Field(default=None, gt=0, le=1440)
    service_id: int | None = None
    source: str = "bot"
    is_flagged: bool = False
    notes: str | None = Field(default=None, max_length=2000)

    @field_validator("source")
    @classmethod
    def validate_source(cls, value: str) -> str:
        normalized = (value or "").strip().lower()
        if normalized not in {"bot", "staff"}:
            raise ValueError("source must be 'bot' or 'staff'")
        return normalized


class AppointmentUpdate(BaseModel):
    customer_name: str | None = Field(default=None, min_length=2, max_length=120)
    customer_phone: str | None = Field(default=None, min_length=3, max_length=40)
    customer_email: str | None = Field(default=None, max_length=200)
    notes: str | None = Field(default=None, max_length=2000)
    start: datetime | None = None
    duration_minutes: int | None = Field(default=None, gt=0, le=1440)


class AppointmentOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    customer_name: str
    customer_phone: str
    customer_email: str | None = None
    start_at: datetime
    duration_minutes: int
    service_id: int | None = None
    status: str
    source: str
    is_flagged: bool
    notes: str | None = None
    created_at: datetime
    updated_at: datetime


class AppointmentTransition(BaseModel):
    status: str = Field(min_length=2, max_length=32)
    note: str | None = Field(default=None, max_length=300)


class AppointmentRejection(BaseModel):
    reason: str | None = Field(default=None, max_length=300)


class AppointmentStatusEventOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    appointment_id: int
    from_status: str | None = None
    to_status: str
    actor: str | None = None
    note: str | None = None
    created_at: datetime


class ReviewStatsOut(BaseModel):
    pending_appointments: int
    pending_messages: int


class ReviewPolicyIn(BaseModel):
    appointment_review_mode: str | None = None
    message_review_mode: str | None = None


class ReviewPolicyOut(BaseModel):
    appointment_review_mode: str
    message_review_mode: str


class BotReplyCreate(BaseModel):
    conversation_key: str = Field(min_length=1, max_length=120)
    content: str = Field(min_length=1, max_length=4000)
    is_flagged: bool = False
    deliverable: bool = False


class CustomReply(BaseModel):
    content: str = Field(min_length=1, max_length=4000)


class MessageOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    conversation_key: str
    content: str
    status: str
    is_flagged: bool
    is_custom_reply: bool
    created_at: datetime
    sent_at: datetime | None = None


class ServiceCreate(BaseModel):
    name: str = Field(min_length=2, max_length=120)
    duration_minutes: int = Field(gt=0, le=1440)
    price: Decimal = Field(default=Decimal("0"), ge=0)
    currency: str = Field(default="EUR", min_length=3, max_length=3)
    description: str | None = Field(default=None, max_length=500)
    sort_order: int = 0


class ServiceUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=2, max_length=120)
    duration_minutes: int | None = Field(default=None, gt=0, le=1440)
    price: Decimal | None = Field(default=None, ge=0)
    currency: str | None = Field(default=None, min_length=3, max_length=3)
    description: str | None = Field(default=None, max_length=500)
    is_active: bool | None = None
    sort_order: int | None = None


class ServiceOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    description: str | None = None
    duration_minutes: int
    price: Decimal
    currency: str
    is_active: bool
    sort_order: int
