from __future__ import annotations

import json
from typing import Any

from sqlalchemy.orm import Session

from app.db.models.security_audit import AuditLog


def audit(
    db: Session,
    *,
    actor: str | None,
    action: str,
    entity_type: str,
    entity_id: str | None = None,
    reason: str | None = None,
    payload: dict | None = None,
) -> AuditLog:
    """Append an audit record to the caller's unit of work.

    Keep payload JSON-serializable.
    """
    safe_payload: dict[str, Any] = payload or {}
    try:
        json.dumps(safe_payload)
    except (TypeError, ValueError):
        safe_payload = {"_payload_error": "non_json", "_payload_repr": repr(payload)}

    row = AuditLog(
        actor=actor or "system",
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        reason=reason,
        payload=safe_payload,
    )
    db.add(row)
    return row
