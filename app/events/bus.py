from __future__ import annotations

from datetime import datetime

from sqlalchemy.orm import Session

from app.db.models.wms.common import utcnow
from app.events.outbox import OutboxEvent


def publish(db: Session, topic: str, payload: dict, *, available_at: datetime | None = None) -> OutboxEvent:
    """Publish an event by writing to the transactional outbox.

    The row joins the caller's transaction; nothing is committed here.
    """
    evt = OutboxEvent(
        topic=topic,
        payload=payload or {},
        available_at=available_at or utcnow(),
        delivered=False,
        attempt_count=0,
    )
    db.add(evt)
    return evt
