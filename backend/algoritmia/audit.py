from __future__ import annotations

import json
from typing import Optional

from sqlalchemy.orm import Session

from .models import AuditLog, User
from .normalize import serialize


class Operation:
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    ALL = (CREATE, UPDATE, DELETE)


def snapshot(instance) -> Optional[dict]:
    if instance is None:
        return None
    return serialize(instance)


def write_audit(
    db: Session,
    user: Optional[User],
    operation: str,
    instance,
    before: Optional[dict] = None,
    after: Optional[dict] = None,
) -> AuditLog:
    """Stage an audit row in the caller's transaction; the caller commits."""
    if instance.id is None:
        db.flush()
    if after is None:
        after = snapshot(instance)
    entry = AuditLog(
        table_name=instance.__tablename__,
        row_id=str(instance.id),
        operation=operation,
        user_id=user.id if user else None,
        before_json=json.dumps(before, default=str) if before is not None else None,
        after_json=json.dumps(after, default=str) if after is not None else None,
    )
    db.add(entry)
    return entry
