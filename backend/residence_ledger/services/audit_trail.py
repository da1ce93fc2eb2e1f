"""Audit trail helper: every reversal and status change gets an AuditLog row."""

import enum
import json
from datetime import date, datetime
from decimal import Decimal
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from residence_ledger.models.audit import AuditLog


def _jsonable(value: Any) -> Any:
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, enum.Enum):
        return value.value
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_jsonable(v) for v in value]
    return value


def record_audit(
    db: AsyncSession,
    *,
    entity_type: str,
    entity_id: str,
    action: str,
    user_id: str | None = None,
    old_values: dict | None = None,
    new_values: dict | None = None,
    details: dict | str | None = None,
) -> AuditLog:
    """Stage an AuditLog row on the session; the caller's commit persists it."""
    if isinstance(details, dict):
        details = json.dumps(_jsonable(details))
    audit = AuditLog(
        entity_type=entity_type,
        entity_id=str(entity_id),
        action=action,
        user_id=user_id,
        old_values=_jsonable(old_values) if old_values is not None else None,
        new_values=_jsonable(new_values) if new_values is not None else None,
        details=details,
    )
    db.add(audit)
    return audit
