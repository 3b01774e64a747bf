import json
from datetime import timedelta

import redis
import structlog
from sqlalchemy.orm import Session

from .config import settings
from .models import OutboxEvent, utc_now_naive

log = structlog.get_logger("bookingcore.outbox")

APPOINTMENT_ACCEPTED_TOPIC = "appointment.accepted"


def _json_dumps(payload: dict | None) -> str:
    return json.dumps(payload or {}, ensure_ascii=True, sort_keys=True, default=str)


def enqueue_outbox_event(
    db: Session,
    *,
    account_id: int | None,
    topic: str,
    payload: dict,
    key: str | None = None,
) -> OutboxEvent:
    """Add an event to the caller's transaction; the caller commits."""
    row = OutboxEvent(
        account_id=account_id,
        topic=(topic or "").strip(),
        key=(key or "").strip() or None,
        payload_json=_json_dumps(payload),
        status="pending",
        retries=0,
        created_at=utc_now_naive(),
        updated_at=utc_now_naive(),
    )
    db.add(row)
    return row


def list_outbox_events(
    db: Session,
    *,
    account_id: int | None = None,
    status: str | None = None,
    limit: int = 200,
) -> list[OutboxEvent]:
    q = db.query(OutboxEvent)
    if account_id is not None:
        q = q.filter(OutboxEvent.account_id == account_id)
    if status:
        q = q.filter(OutboxEvent.status == status.strip().lower())
    return (
        q.order_by(OutboxEvent.created_at.asc(), OutboxEvent.id.asc())
        .limit(max(1, min(limit, 1000)))
        .all()
    )


def _redis_client() -> redis.Redis | None:
    if not settings.REDIS_URL:
        return None
    try:
        return redis.from_url(settings.REDIS_URL, decode_responses=True)
    except (redis.RedisError, ValueError) as exc:
        log.warning("redis_client_unavailable", error=str(exc))
        return None


def dispatch_outbox_events(
    db: Session,
    *,
    account_id: int | None = None,
    batch_size: int = 50,
    client: redis.Redis | None = None,
) -> dict:
    rows = list_outbox_events(db, account_id=account_id, status="pending", limit=batch_size)
    rows += list_outbox_events(db, account_id=account_id, status="failed", limit=batch_size)
    if not rows:
        return {"processed": 0, "published": 0, "failed": 0, "dead_lettered": 0}

    if client is None and settings.EVENT_BUS_ENABLED:
        client = _redis_client()
    published = 0
    failed = 0
    dead_lettered = 0
    max_retries = max(1, int(settings.OUTBOX_MAX_RETRIES))
    for row in rows:
        try:
            if settings.EVENT_BUS_ENABLED:
                if client is None:
                    raise RuntimeError("event bus enabled but Redis is not configured")
                client.xadd(
                    settings.EVENT_BUS_STREAM,
                    fields={
                        "event_id": str(row.id),
                        "topic": row.topic,
                        "account_id": str(row.account_id or ""),
                        "key": row.key or "",
                        "payload_json": row.payload_json or "{}",
                    },
                    maxlen=50000,
                    approximate=True,
                )
            row.status = "published"
            row.published_at = utc_now_naive()
            row.last_error = None
            published += 1
        except (redis.RedisError, RuntimeError) as exc:
            row.retries = int(row.retries or 0) + 1
            row.last_error = str(exc)[:500]
            if int(row.retries) >= max_retries:
                row.status = "dead_letter"
                dead_lettered += 1
            else:
                row.status = "failed"
            failed += 1
            log.warning("outbox_publish_failed", event_id=row.id, retries=row.retries, error=row.last_error)
        row.updated_at = utc_now_naive()
    db.commit()
    result = {
        "processed": len(rows),
        "published": published,
        "failed": failed,
        "dead_lettered": dead_lettered,
    }
    log.info("outbox_dispatched", **result)
    return result


def cleanup_outbox_events(
    db: Session,
    *,
    account_id: int | None = None,
    older_than_hours: int = 24 * 7,
) -> dict:
    cutoff = utc_now_naive() - timedelta(hours=max(1, int(older_than_hours)))
    q = db.query(OutboxEvent).filter(
        OutboxEvent.status.in_(["published", "dead_letter"]),
        OutboxEvent.updated_at < cutoff,
    )
    if account_id is not None:
        q = q.filter(OutboxEvent.account_id == account_id)
    deleted = q.delete(synchronize_session=False)
    db.commit()
    return {"deleted_events": int(deleted or 0), "cutoff": cutoff}
