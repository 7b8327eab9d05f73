from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from payroll_ledger.errors import ConflictError, InvalidStateError, NotFoundError, ValidationError
from payroll_ledger.models import (
    Consolidation,
    ConsolidationStatus,
    Employee,
    VariableItem,
    VariableItemCategory,
    VariableItemStatus,
)
from payroll_ledger.services.consolidation import ConsolidationEngine, find_consolidation, get_consolidation
from payroll_ledger.services.leave_calc import parse_decimal, parse_period, previous_period, quantize_amount

logger = logging.getLogger("payroll_ledger.variable_items")

_NEGATIVE_CATEGORIES = frozenset(
    {
        VariableItemCategory.ADVANCE,
        VariableItemCategory.DRAW_DOWN,
        VariableItemCategory.DEDUCTION,
    }
)


def expected_sign(category: VariableItemCategory) -> int:
    """Usual sign of an amount for the category. Informational only."""
    return -1 if category in _NEGATIVE_CATEGORIES else 1


def _require_label(label: str | None) -> str:
    cleaned = (label or "").strip()
    if not cleaned:
        raise ValidationError("label is required", field="label")
    return cleaned


def _require_draft_item(item: VariableItem, operation: str) -> None:
    if item.status != VariableItemStatus.DRAFT:
        raise InvalidStateError(
            f"Cannot {operation} a {item.status.value} variable item",
            current_state=item.status.value,
            required_states=[VariableItemStatus.DRAFT.value],
        )


def _require_draft_owner(consolidation: Consolidation | None, operation: str) -> None:
    if consolidation is not None and consolidation.status != ConsolidationStatus.DRAFT:
        raise InvalidStateError(
            f"Cannot {operation} a variable item of a {consolidation.status.value} consolidation",
            current_state=consolidation.status.value,
            required_states=[ConsolidationStatus.DRAFT.value],
        )


def _commit(db: Session, event: str, **extra: Any) -> None:
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise ConflictError("Variable item was modified concurrently", **extra) from exc
    logger.info(event, extra=extra)


def get_variable_item(db: Session, item_id: int) -> VariableItem:
    item = db.get(VariableItem, item_id)
    if item is None:
        raise NotFoundError("VariableItem", item_id)
    return item


def list_variable_items(
    db: Session,
    *,
    employee_id: int | None = None,
    period: str | None = None,
    status: VariableItemStatus | None = None,
) -> list[VariableItem]:
    stmt = select(VariableItem).order_by(
        VariableItem.period.desc(),
        VariableItem.employee_id.asc(),
        VariableItem.id.asc(),
    )
    if employee_id is not None:
        stmt = stmt.where(VariableItem.employee_id == employee_id)
    if period is not None:
        parse_period(period)
        stmt = stmt.where(VariableItem.period == period)
    if status is not None:
        stmt = stmt.where(VariableItem.status == status)
    return list(db.scalars(stmt).all())


def create_variable_item(
    db: Session,
    *,
    employee_id: int,
    period: str,
    category: VariableItemCategory,
    amount: Any,
    label: str | None,
    actor: str,
    description: str | None = None,
) -> VariableItem:
    parse_period(period)
    if db.get(Employee, employee_id) is None:
        raise NotFoundError("Employee", employee_id)
    parsed_amount = quantize_amount(parse_decimal(amount, field="amount"))
    clean_label = _require_label(label)

    consolidation = find_consolidation(db, employee_id, period, for_update=True)
    _require_draft_owner(consolidation, "add")

    item = VariableItem(
        employee_id=employee_id,
        period=period,
        category=category,
        amount=parsed_amount,
        label=clean_label,
        description=description,
        status=VariableItemStatus.DRAFT,
        consolidation=consolidation,
    )
    db.add(item)
    if consolidation is not None:
        ConsolidationEngine(db).refresh_variable_items_total(consolidation, actor)
    _commit(
        db,
        "variable_item_created",
        employee_id=employee_id,
        period=period,
        category=category.value,
        amount=parsed_amount,
    )
    return item


def update_variable_item(
    db: Session,
    item_id: int,
    *,
    actor: str,
    amount: Any = None,
    label: str | None = None,
    description: str | None = None,
    category: VariableItemCategory | None = None,
) -> VariableItem:
    item = get_variable_item(db, item_id)
    _require_draft_item(item, "update")
    _require_draft_owner(item.consolidation, "update")

    parsed_amount = quantize_amount(parse_decimal(amount, field="amount")) if amount is not None else None
    clean_label = _require_label(label) if label is not None else None

    item.touch_updated_at()
    if parsed_amount is not None:
        item.amount = parsed_amount
    if clean_label is not None:
        item.label = clean_label
    if description is not None:
        item.description = description
    if category is not None:
        item.category = category

    if item.consolidation is not None:
        ConsolidationEngine(db).refresh_variable_items_total(item.consolidation, actor)
    _commit(db, "variable_item_updated", variable_item_id=item.id)
    return item


def delete_variable_item(db: Session, item_id: int, *, actor: str) -> None:
    item = get_variable_item(db, item_id)
    _require_draft_item(item, "delete")
    consolidation = item.consolidation
    _require_draft_owner(consolidation, "delete")

    if consolidation is not None:
        consolidation.variable_items.remove(item)
        ConsolidationEngine(db).refresh_variable_items_total(consolidation, actor)
    db.delete(item)
    _commit(db, "variable_item_deleted", variable_item_id=item_id)


def validate_variable_item(db: Session, item_id: int, *, actor: str) -> VariableItem:
    item = get_variable_item(db, item_id)
    _require_draft_item(item, "validate")
    clean_actor = (actor or "").strip()
    if not clean_actor:
        raise ValidationError("actor is required", field="actor")

    _mark_validated(item, clean_actor)
    _commit(db, "variable_item_validated", variable_item_id=item.id, actor=clean_actor)
    return item


def _mark_validated(item: VariableItem, actor: str) -> None:
    item.touch_updated_at()
    item.status = VariableItemStatus.VALIDATED
    item.validated_by = actor
    item.validated_at = datetime.now(timezone.utc)


def validate_all_for_consolidation(db: Session, consolidation_id: int, *, actor: str) -> int:
    """Validate every DRAFT item linked to the consolidation. Returns how many changed."""
    consolidation = get_consolidation(db, consolidation_id, for_update=True)
    _require_draft_owner(consolidation, "validate")
    clean_actor = (actor or "").strip()
    if not clean_actor:
        raise ValidationError("actor is required", field="actor")

    drafts = [item for item in consolidation.variable_items if item.status == VariableItemStatus.DRAFT]
    if not drafts:
        return 0
    for item in drafts:
        _mark_validated(item, clean_actor)
    _commit(
        db,
        "variable_items_validated",
        consolidation_id=consolidation.id,
        count=len(drafts),
        actor=clean_actor,
    )
    return len(drafts)


def copy_recurring_from_previous_month(
    db: Session,
    employee_id: int,
    period: str,
    *,
    actor: str,
) -> list[VariableItem]:
    """Copy last month's bonuses into ``period`` as new DRAFT items.

    A bonus whose label already exists among the target month's bonuses is
    not copied again.
    """
    source_period = previous_period(period)
    if db.get(Employee, employee_id) is None:
        raise NotFoundError("Employee", employee_id)

    consolidation = find_consolidation(db, employee_id, period, for_update=True)
    _require_draft_owner(consolidation, "add")

    def _bonuses(month: str) -> list[VariableItem]:
        return list(
            db.scalars(
                select(VariableItem)
                .where(
                    VariableItem.employee_id == employee_id,
                    VariableItem.period == month,
                    VariableItem.category == VariableItemCategory.BONUS,
                )
                .order_by(VariableItem.id.asc())
            ).all()
        )

    existing_labels = {item.label for item in _bonuses(period)}
    copied: list[VariableItem] = []
    for source in _bonuses(source_period):
        if source.label in existing_labels:
            continue
        item = VariableItem(
            employee_id=employee_id,
            period=period,
            category=source.category,
            amount=source.amount,
            label=source.label,
            description=source.description,
            status=VariableItemStatus.DRAFT,
            consolidation=consolidation,
        )
        db.add(item)
        copied.append(item)
        existing_labels.add(source.label)

    if not copied:
        return []
    if consolidation is not None:
        ConsolidationEngine(db).refresh_variable_items_total(consolidation, actor)
    _commit(
        db,
        "variable_items_copied",
        employee_id=employee_id,
        source_period=source_period,
        period=period,
        count=len(copied),
    )
    return copied
