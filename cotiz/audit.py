"""
cotiz/audit.py

Audit trail for every mutation: actor, tenant, entity, action, column snapshots.

- log_action() only ADDS the row to the session; the route or job that owns the
  transaction commits it together with the change it describes.
- Entries carry the actor's email and the tenant, so they outlive user deletion.
- Jobs and webhooks have no logged-in user; their entries are recorded as "system".

    log_action(payment, "FUNDS_RELEASED", details={"source": "auto_release"})
"""

from __future__ import annotations

import json
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, Optional

from flask import has_request_context, request
from flask_login import current_user

from .extensions import db
from .models import AuditLog

# Columns never copied into snapshots.
_SECRET_SUFFIXES = ("_hash", "_token")


def _snapshot_value(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return format(value, "f")
    return str(value)


def serialize_model(instance: Any) -> Dict[str, Optional[str]]:
    """Column values of a model instance as strings (relationships and secrets excluded)."""
    return {
        column.name: _snapshot_value(getattr(instance, column.name))
        for column in instance.__table__.columns
        if not column.name.endswith(_SECRET_SUFFIXES)
    }


def _actor():
    if not has_request_context():
        return None
    if current_user and current_user.is_authenticated:
        return current_user
    return None


def log_action(
    entity: Any,
    action: str,
    *,
    before: Optional[Dict[str, Any]] = None,
    after: Optional[Dict[str, Any]] = None,
    details: Optional[Dict[str, Any]] = None,
    entity_type: str | None = None,
    entity_id: Any = None,
    client_id: int | None = None,
) -> AuditLog:
    """
    Add an AuditLog entry to the current db session.

    Parameters:
        entity: SQLAlchemy model instance with .id (may be None when entity_type/entity_id given)
        action: CREATE / UPDATE / DELETE or a domain event (PROPOSAL_APPROVED, DELIVERY_CONFIRMED...)
        before / after: dict snapshots (optional)
        details: free-form JSON context (optional)

    SECURITY NOTE:
    - request.remote_addr is as Flask sees it. Behind a reverse proxy configure ProxyFix.
    """
    if entity is not None:
        entity_id = getattr(entity, "id", None) if entity_id is None else entity_id
        entity_type = entity_type or entity.__class__.__name__
        if client_id is None:
            client_id = getattr(entity, "client_id", None)

    if entity_type is None or entity_id is None:
        raise ValueError("log_action requires an entity with an id (after flush) or entity_type/entity_id.")

    actor = _actor()

    entry = AuditLog(
        user_id=actor.id if actor else None,
        username_snapshot=actor.email if actor else None,
        client_id=client_id if client_id is not None else (actor.client_id if actor else None),
        panel_type=actor.panel_type() if actor else "system",
        entity_type=str(entity_type),
        entity_id=str(entity_id),
        action=str(action),
        before_data=json.dumps(before, ensure_ascii=False, default=str) if before else None,
        after_data=json.dumps(after, ensure_ascii=False, default=str) if after else None,
        details=details,
        ip_address=request.remote_addr if has_request_context() else None,
    )
    db.session.add(entry)
    return entry
