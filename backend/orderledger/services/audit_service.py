# Overview: Service-layer operations for the audit trail.

from __future__ import annotations

import json
from datetime import datetime
from typing import Optional

from ..extensions import db
from ..models import AuditEvent
"""
Audit trail invariants

- Append-only log for cross-cutting business events.
- No business logic here.
- Events are written inside the same DB transaction as the change they record.
- occurred_at is business time; created_at is system time (DB default).
"""


def append_audit_event(
    *,
    channel_id: int,
    event_type: str,
    event_category: str,
    entity_type: str,
    entity_id: int,
    actor_user_id: int | None = None,
    order_id: int | None = None,
    payment_id: int | None = None,
    cashier_session_id: int | None = None,
    occurred_at: Optional[datetime] = None,
    note: Optional[str] = None,
    payload: dict | None = None,
) -> AuditEvent:
    """
    Append-only audit event.

    - No deletes/updates of existing events.
    - payload is stored as JSON text.
    """
    ev = AuditEvent(
        channel_id=channel_id,
        event_type=event_type,
        event_category=event_category,
        entity_type=entity_type,
        entity_id=entity_id,
        actor_user_id=actor_user_id,
        order_id=order_id,
        payment_id=payment_id,
        cashier_session_id=cashier_session_id,
        occurred_at=occurred_at,  # if None, db default applies
        note=note[:255] if note else None,
        payload=json.dumps(payload, sort_keys=True) if payload is not None else None,
    )
    db.session.add(ev)
    db.session.flush()  # ensures ev.id is assigned without committing
    return ev


def list_audit_events(*, channel_id: int, order_id: int | None = None, event_category: str | None = None):
    query = db.session.query(AuditEvent).filter_by(channel_id=channel_id)
    if order_id is not None:
        query = query.filter_by(order_id=order_id)
    if event_category:
        query = query.filter_by(event_category=event_category)
    return query.order_by(AuditEvent.id.asc()).all()
