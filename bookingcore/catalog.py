from decimal import Decimal, InvalidOperation

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .claims import granularity_minutes
from .errors import NotFoundError, ValidationError
from .models import Service, utc_now_naive
from .timeutils import MINUTES_PER_DAY

log = structlog.get_logger("bookingcore.catalog")

DEFAULT_SERVICES = (
    {
        "name": "Beratungsgespräch",
        "description": "Persönliches Beratungsgespräch",
        "duration_minutes": 60,
        "price": Decimal("75.00"),
        "sort_order": 0,
    },
    {
        "name": "Schnell-Check",
        "description": "Kurzer Termin für schnelle Fragen",
        "duration_minutes": 30,
        "price": Decimal("40.00"),
        "sort_order": 1,
    },
)


def _normalize_name(name: str | None) -> str:
    return " ".join((name or "").split())


def _normalize_duration(duration_minutes) -> int:
    try:
        value = int(duration_minutes)
    except (TypeError, ValueError) as exc:
        raise ValidationError("duration_minutes must be an integer") from exc
    if value <= 0:
        raise ValidationError("duration_minutes must be > 0")
    if value > MINUTES_PER_DAY:
        raise ValidationError("duration_minutes must not exceed one day")
    step = granularity_minutes()
    if value % step:
        raise ValidationError(f"duration_minutes must be a multiple of {step}")
    return value


def _normalize_price(price) -> Decimal:
    try:
        value = Decimal(str(price))
    except (InvalidOperation, ValueError) as exc:
        raise ValidationError("price must be a number") from exc
    if value < 0:
        raise ValidationError("price must be >= 0")
    return value.quantize(Decimal("0.01"))


def _normalize_currency(currency: str | None) -> str:
    value = (currency or "EUR").strip().upper()
    if len(value) != 3 or not value.isalpha():
        raise ValidationError("currency must be a 3-letter code")
    return value


def list_services(db: Session, account_id: int, active_only: bool = True) -> list[Service]:
    stmt = select(Service).where(Service.account_id == account_id)
    if active_only:
        stmt = stmt.where(Service.is_active.is_(True))
    stmt = stmt.order_by(Service.sort_order.asc(), Service.name.asc())
    return list(db.execute(stmt).scalars().all())


def get_service(db: Session, account_id: int, service_id: int) -> Service:
    row = db.execute(
        select(Service).where(Service.id == service_id, Service.account_id == account_id)
    ).scalar_one_or_none()
    if row is None:
        raise NotFoundError("Service not found")
    return row


def _get_service_by_name(db: Session, account_id: int, name: str) -> Service | None:
    return db.execute(
        select(Service).where(Service.account_id == account_id, Service.name == name)
    ).scalar_one_or_none()


def create_service(
    db: Session,
    account_id: int,
    name: str,
    duration_minutes: int,
    price=0,
    currency: str | None = "EUR",
    description: str | None = None,
    sort_order: int = 0,
) -> Service:
    normalized_name = _normalize_name(name)
    if not normalized_name:
        raise ValidationError("Service name is required")
    duration = _normalize_duration(duration_minutes)
    resolved_price = _normalize_price(price)
    resolved_currency = _normalize_currency(currency)

    existing = _get_service_by_name(db, account_id, normalized_name)
    if existing:
        if existing.is_active:
            raise ValidationError("Service already exists")
        # Re-creating a soft-deleted service revives it.
        existing.is_active = True
        existing.duration_minutes = duration
        existing.price = resolved_price
        existing.currency = resolved_currency
        existing.description = (description or "").strip() or None
        existing.sort_order = int(sort_order)
        existing.updated_at = utc_now_naive()
        db.commit()
        db.refresh(existing)
        return existing

    row = Service(
        account_id=account_id,
        name=normalized_name,
        description=(description or "").strip() or None,
        duration_minutes=duration,
        price=resolved_price,
        currency=resolved_currency,
        is_active=True,
        sort_order=int(sort_order),
        created_at=utc_now_naive(),
        updated_at=utc_now_naive(),
    )
    db.add(row)
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise ValidationError("Service already exists") from exc
    db.refresh(row)
    log.info("service_created", account_id=account_id, service_id=row.id, name=row.name)
    return row


def update_service(
    db: Session,
    account_id: int,
    service_id: int,
    *,
    name: str | None = None,
    duration_minutes: int | None = None,
    price=None,
    currency: str | None = None,
    description: str | None = None,
    is_active: bool | None = None,
    sort_order: int | None = None,
) -> Service:
    row = get_service(db, account_id, service_id)

    if name is not None:
        normalized_name = _normalize_name(name)
        if not normalized_name:
            raise ValidationError("Service name is required")
        if normalized_name != row.name:
            duplicate = _get_service_by_name(db, account_id, normalized_name)
            if duplicate and duplicate.id != row.id:
                raise ValidationError("Service name already exists")
            row.name = normalized_name
    if duration_minutes is not None:
        row.duration_minutes = _normalize_duration(duration_minutes)
    if price is not None:
        row.price = _normalize_price(price)
    if currency is not None:
        row.currency = _normalize_currency(currency)
    if description is not None:
        row.description = description.strip() or None
    if is_active is not None:
        row.is_active = bool(is_active)
    if sort_order is not None:
        row.sort_order = int(sort_order)

    row.updated_at = utc_now_naive()
    db.commit()
    db.refresh(row)
    return row


def deactivate_service(db: Session, account_id: int, service_id: int) -> Service:
    row = get_service(db, account_id, service_id)
    if row.is_active:
        row.is_active = False
        row.updated_at = utc_now_naive()
        db.commit()
        db.refresh(row)
        log.info("service_deactivated", account_id=account_id, service_id=row.id)
    return row


def ensure_default_services(db: Session, account_id: int) -> list[Service]:
    """Seed the default services when the account has no active ones.

    Returns the rows that were created; an account that already offers
    something is left untouched.
    """
    if list_services(db, account_id, active_only=True):
        return []
    created: list[Service] = []
    for item in DEFAULT_SERVICES:
        existing = _get_service_by_name(db, account_id, item["name"])
        if existing is not None:
            existing.is_active = True
            existing.updated_at = utc_now_naive()
            created.append(existing)
            continue
        row = Service(
            account_id=account_id,
            name=item["name"],
            description=item["description"],
            duration_minutes=item["duration_minutes"],
            price=item["price"],
            currency="EUR",
            is_active=True,
            sort_order=item["sort_order"],
            created_at=utc_now_naive(),
            updated_at=utc_now_naive(),
        )
        db.add(row)
        created.append(row)
    db.commit()
    for row in created:
        db.refresh(row)
    log.info("default_services_seeded", account_id=account_id, count=len(created))
    return created
