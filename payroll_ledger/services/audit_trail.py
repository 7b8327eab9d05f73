from __future__ import annotations

import enum
import json
import logging
from datetime import date, datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from payroll_ledger.models import AuditAction, Consolidation, ConsolidationAuditEntry

logger = logging.getLogger("payroll_ledger.audit_trail")

_DECIMAL_TAG = "$decimal"
_DATE_TAG = "$date"
_DATETIME_TAG = "$datetime"


def _to_json_ready(value: Any) -> Any:
    if isinstance(value, enum.Enum):
        return value.value
    if isinstance(value, Decimal):
        return {_DECIMAL_TAG: str(value)}
    if isinstance(value, datetime):
        return {_DATETIME_TAG: value.isoformat()}
    if isinstance(value, date):
        return {_DATE_TAG: value.isoformat()}
    if isinstance(value, dict):
        return {str(key): _to_json_ready(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_to_json_ready(item) for item in value]
    return value


def _from_json_object(obj: dict[str, Any]) -> Any:
    if len(obj) == 1:
        if _DECIMAL_TAG in obj:
            return Decimal(obj[_DECIMAL_TAG])
        if _DATETIME_TAG in obj:
            return datetime.fromisoformat(obj[_DATETIME_TAG])
        if _DATE_TAG in obj:
            return date.fromisoformat(obj[_DATE_TAG])
    return obj


def encode_value(value: Any) -> str | None:
    if value is None:
        return None
    return json.dumps(_to_json_ready(value), sort_keys=True, ensure_ascii=False)


def decode_value(raw: str | None) -> Any:
    if raw is None:
        return None
    return json.loads(raw, object_hook=_from_json_object)


def record(
    db: Session,
    consolidation: Consolidation,
    action: AuditAction,
    actor: str,
    *,
    field: str | None = None,
    old: Any = None,
    new: Any = None,
    comment: str | None = None,
) -> ConsolidationAuditEntry:
    entry = ConsolidationAuditEntry(
        consolidation=consolidation,
        action=action,
        actor=actor,
        field=field,
        old_value=encode_value(old),
        new_value=encode_value(new),
        comment=comment,
    )
    db.add(entry)
    logger.info(
        "consolidation_audit_recorded",
        extra={
            "consolidation_id": consolidation.id,
            "action": action.value,
            "actor": actor,
            "field": field,
        },
    )
    return entry


def list_audit_trail(db: Session, consolidation_id: int) -> list[ConsolidationAuditEntry]:
    return list(
        db.scalars(
            select(ConsolidationAuditEntry)
            .where(ConsolidationAuditEntry.consolidation_id == consolidation_id)
            .order_by(ConsolidationAuditEntry.created_at.desc(), ConsolidationAuditEntry.id.desc())
        ).all()
    )
