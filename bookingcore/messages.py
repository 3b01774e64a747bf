import structlog
from sqlalchemy import select
from sqlalchemy.orm import Session

from .errors import InvalidTransition, NotFoundError, ValidationError
from .models import ChatDraftMessage, utc_now_naive
from .review_policy import decide_message_status
from .statuses import MessageStatus
from .tenancy import AccountContext

log = structlog.get_logger("bookingcore.messages")

M = MessageStatus

ALLOWED_MESSAGE_TRANSITIONS: dict[MessageStatus, frozenset[MessageStatus]] = {
    M.DRAFT: frozenset({M.APPROVED}),
    M.PENDING: frozenset({M.APPROVED}),
    M.APPROVED: frozenset({M.SENT}),
    M.SENT: frozenset(),
}

REVIEW_QUEUE_STATUSES = (M.DRAFT.value, M.PENDING.value)


def _normalize_content(content: str | None) -> str:
    value = (content or "").strip()
    if not value:
        raise ValidationError("Message content is required")
    return value


def get_message(db: Session, account_id: int, message_id: int) -> ChatDraftMessage:
    row = db.execute(
        select(ChatDraftMessage).where(
            ChatDraftMessage.id == message_id,
            ChatDraftMessage.account_id == account_id,
        )
    ).scalar_one_or_none()
    if row is None:
        raise NotFoundError("Message not found")
    return row


def _apply(db: Session, row: ChatDraftMessage, target: MessageStatus) -> ChatDraftMessage:
    current = MessageStatus(row.status)
    if current == target:
        return row
    if target not in ALLOWED_MESSAGE_TRANSITIONS[current]:
        raise InvalidTransition(current.value, target.value, entity="message")
    row.status = target.value
    row.updated_at = utc_now_naive()
    if target is MessageStatus.SENT:
        row.sent_at = row.updated_at
    db.commit()
    db.refresh(row)
    log.info(
        "message_status_changed",
        account_id=row.account_id,
        message_id=row.id,
        from_status=current.value,
        to_status=target.value,
    )
    return row


def submit_bot_reply(
    db: Session,
    ctx: AccountContext,
    conversation_key: str,
    content: str,
    is_flagged: bool = False,
    deliverable: bool = False,
) -> ChatDraftMessage:
    key = (conversation_key or "").strip()
    if not key:
        raise ValidationError("conversation_key is required")
    status = decide_message_status(ctx.review_policy.message_review_mode, is_flagged, deliverable)
    now = utc_now_naive()
    row = ChatDraftMessage(
        account_id=ctx.account_id,
        conversation_key=key,
        content=_normalize_content(content),
        status=status.value,
        is_flagged=bool(is_flagged),
        is_custom_reply=False,
        created_at=now,
        updated_at=now,
        sent_at=now if status is MessageStatus.SENT else None,
    )
    db.add(row)
    db.commit()
    db.refresh(row)
    log.info(
        "bot_reply_submitted",
        account_id=ctx.account_id,
        message_id=row.id,
        status=row.status,
        is_flagged=row.is_flagged,
    )
    return row


def list_review_queue(db: Session, account_id: int) -> list[ChatDraftMessage]:
    stmt = (
        select(ChatDraftMessage)
        .where(
            ChatDraftMessage.account_id == account_id,
            ChatDraftMessage.status.in_(REVIEW_QUEUE_STATUSES),
        )
        .order_by(ChatDraftMessage.created_at.asc(), ChatDraftMessage.id.asc())
    )
    return list(db.execute(stmt).scalars().all())


def approve_message(db: Session, account_id: int, message_id: int) -> ChatDraftMessage:
    row = get_message(db, account_id, message_id)
    if row.status == MessageStatus.SENT.value:
        return row
    return _apply(db, row, MessageStatus.APPROVED)


def send_custom_reply(
    db: Session, account_id: int, message_id: int, content: str
) -> ChatDraftMessage:
    """Replace the bot's text with a staff-written reply and approve it."""
    row = get_message(db, account_id, message_id)
    current = MessageStatus(row.status)
    if current is MessageStatus.SENT:
        raise InvalidTransition(current.value, MessageStatus.APPROVED.value, entity="message")
    row.content = _normalize_content(content)
    row.is_custom_reply = True
    if current is MessageStatus.APPROVED:
        row.updated_at = utc_now_naive()
        db.commit()
        db.refresh(row)
        return row
    return _apply(db, row, MessageStatus.APPROVED)


def mark_message_sent(db: Session, account_id: int, message_id: int) -> ChatDraftMessage:
    row = get_message(db, account_id, message_id)
    return _apply(db, row, MessageStatus.SENT)
