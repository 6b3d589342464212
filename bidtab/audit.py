"""
bidtab/audit.py

Audit logging helper utilities.

Goals:
- Capture WHO did WHAT to WHICH entity, with BEFORE/AFTER snapshots.
- Store username snapshot to preserve identity even if username changes later.
- Store IP address for traceability.

IMPORTANT:
- This helper ADDS AuditLog entries to the current SQLAlchemy session.
  The calling unit of work controls transaction boundaries (commit/rollback), so an
  award or leveling call and its audit rows commit or roll back together.
- Works outside a request too (CLI, tests): user and IP are then recorded as None.
"""

from __future__ import annotations

import json
from typing import Any, Dict, Optional

from flask import has_request_context, request
from flask_login import current_user

from .extensions import db
from .models import AuditLog


def _safe_str(value: Any) -> Optional[str]:
    """
    Convert a value to a stable string representation suitable for JSON and DB storage.

    - For Decimal/datetime/etc: str(value) is typically safe.
    - For None: return None.
    """
    if value is None:
        return None
    return str(value)


def serialize_model(instance: Any) -> Dict[str, Optional[str]]:
    """
    Convert a SQLAlchemy model instance to a dict snapshot based on table columns.

    Captures only scalar column values (not relationships).
    """
    data: Dict[str, Optional[str]] = {}
    for column in instance.__table__.columns:
        data[column.name] = _safe_str(getattr(instance, column.name))
    return data


def _actor() -> tuple[Optional[int], Optional[str], Optional[str]]:
    if not has_request_context():
        return None, None, None
    if current_user and current_user.is_authenticated:
        return current_user.id, current_user.username, request.remote_addr
    return None, None, request.remote_addr


def log_action(
    entity: Any,
    action: str,
    *,
    before: Optional[Any] = None,
    after: Optional[Any] = None,
    session=None,
) -> AuditLog:
    """
    Add an AuditLog entry to the session (db.session unless one is passed).

    Parameters:
        entity: SQLAlchemy model instance with .id (flush first for new rows)
        action: CREATE / UPDATE / DELETE / LEVEL / AWARD / PUBLISH / SUBMIT / WITHDRAW
        before: snapshot (optional)
        after: snapshot (optional)
    """
    entity_id = getattr(entity, "id", None)
    if entity_id is None:
        raise ValueError("log_action entity must have an 'id' attribute (after flush).")

    user_id, username, ip_address = _actor()

    entry = AuditLog(
        user_id=user_id,
        username_snapshot=username,
        entity_type=entity.__class__.__name__,
        entity_id=int(entity_id),
        action=str(action),
        before_data=json.dumps(before, ensure_ascii=False, default=str) if before else None,
        after_data=json.dumps(after, ensure_ascii=False, default=str) if after else None,
        ip_address=ip_address,
    )
    (session or db.session).add(entry)
    return entry
