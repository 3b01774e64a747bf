"""Account scoping.

Every accessor in this package takes ``account_id`` right after the session and
filters by it. Looking up a row that belongs to another account is reported as
``NotFoundError`` so callers cannot probe for existence across accounts.
"""

from dataclasses import dataclass
from zoneinfo import ZoneInfo

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .config import settings
from .errors import NotFoundError, ValidationError
from .models import Account, BotConfig, utc_now_naive
from .review_policy import ReviewPolicy, get_review_policy
from .timeutils import get_zone

log = structlog.get_logger("bookingcore.tenancy")


@dataclass(frozen=True)
class AccountContext:
    account_id: int
    timezone: str
    review_policy: ReviewPolicy

    @property
    def tz(self) -> ZoneInfo:
        return get_zone(self.timezone)


def get_account(db: Session, account_id: int) -> Account:
    account = db.execute(select(Account).where(Account.id == account_id)).scalar_one_or_none()
    if account is None:
        raise NotFoundError("Account not found")
    return account


def load_account_context(db: Session, account_id: int) -> AccountContext:
    account = get_account(db, account_id)
    timezone_name = (account.timezone or "").strip() or settings.DEFAULT_ACCOUNT_TIMEZONE
    return AccountContext(
        account_id=account.id,
        timezone=timezone_name,
        review_policy=get_review_policy(db, account.id),
    )


def create_account(db: Session, name: str, timezone: str | None = None) -> Account:
    normalized_name = (name or "").strip()
    if len(normalized_name) < 2:
        raise ValidationError("Account name must be at least 2 characters")
    timezone_name = (timezone or settings.DEFAULT_ACCOUNT_TIMEZONE).strip()
    get_zone(timezone_name)

    account = Account(name=normalized_name, timezone=timezone_name, created_at=utc_now_naive())
    db.add(account)
    try:
        db.flush()
        db.add(BotConfig(account_id=account.id))
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise ValidationError(f"Account {normalized_name!r} already exists") from exc
    db.refresh(account)
    log.info("account_created", account_id=account.id, timezone=timezone_name)
    return account


def update_account_timezone(db: Session, account_id: int, timezone: str) -> Account:
    get_zone(timezone)
    account = get_account(db, account_id)
    account.timezone = timezone.strip()
    db.commit()
    db.refresh(account)
    return account
