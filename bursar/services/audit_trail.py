"""Writes AuditLog rows for ledger and workflow mutations."""

import enum
from datetime import date, datetime
from decimal import Decimal
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from bursar.models.audit import AuditLog
from bursar.services.actor import Actor


def _jsonable(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    if isinstance(value, enum.Enum):
        return value.value
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    return value


def record_audit(
    db: AsyncSession,
    actor: Actor,
    entity_type: str,
    entity_id: int,
    action: str,
    *,
    old_values: dict | None = None,
    new_values: dict | None = None,
    details: str | None = None,
) -> AuditLog:
    entry = AuditLog(
        entity_type=entity_type,
        entity_id=entity_id,
        action=action,
        user_id=actor.user_id,
        actor_role=actor.role.value,
        old_values=_jsonable(old_values) if old_values else None,
        new_values=_jsonable(new_values) if new_values else None,
        details=details,
    )
    db.add(entry)
    return entry
