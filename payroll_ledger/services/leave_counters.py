from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any

from sqlalchemy import or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from payroll_ledger.errors import ConflictError, NotFoundError, ValidationError
from payroll_ledger.models import CounterKind, Employee, LeaveCounter, LeaveCounterMovement, MovementKind
from payroll_ledger.services.leave_calc import (
    parse_decimal,
    parse_period,
    parse_period_key,
    previous_period_key,
    quantize_days,
)
from payroll_ledger.settings import get_settings

logger = logging.getLogger("payroll_ledger.leave_counters")

SYSTEM_ACTOR = "system"


@dataclass(frozen=True)
class MovementWithBalance:
    movement: LeaveCounterMovement
    balance_after: Decimal


def _require_employee(db: Session, employee_id: int) -> Employee:
    employee = db.get(Employee, employee_id)
    if employee is None:
        raise NotFoundError("Employee", employee_id)
    return employee


def _finish(db: Session, *, commit: bool, conflict_message: str, details: dict[str, Any]) -> None:
    try:
        if commit:
            db.commit()
        else:
            db.flush()
    except IntegrityError as exc:
        db.rollback()
        logger.warning("leave_counter_conflict", extra=details)
        raise ConflictError(conflict_message, **details) from exc


def find_counter(
    db: Session,
    employee_id: int,
    kind: CounterKind,
    period_key: str,
    *,
    for_update: bool = False,
) -> LeaveCounter | None:
    stmt = select(LeaveCounter).where(
        LeaveCounter.employee_id == employee_id,
        LeaveCounter.kind == kind,
        LeaveCounter.period_key == period_key,
    )
    if for_update:
        stmt = stmt.with_for_update()
    return db.scalar(stmt)


def get_counter(db: Session, counter_id: int) -> LeaveCounter:
    counter = db.get(LeaveCounter, counter_id)
    if counter is None:
        raise NotFoundError("LeaveCounter", counter_id)
    return counter


def list_counters(
    db: Session,
    *,
    employee_id: int | None = None,
    kind: CounterKind | None = None,
) -> list[LeaveCounter]:
    stmt = select(LeaveCounter).order_by(
        LeaveCounter.employee_id.asc(),
        LeaveCounter.kind.asc(),
        LeaveCounter.period_key.asc(),
    )
    if employee_id is not None:
        stmt = stmt.where(LeaveCounter.employee_id == employee_id)
    if kind is not None:
        stmt = stmt.where(LeaveCounter.kind == kind)
    return list(db.scalars(stmt).all())


def _counters_in_scope(db: Session, kind: CounterKind | None, period_key: str | None) -> list[LeaveCounter]:
    stmt = select(LeaveCounter).order_by(LeaveCounter.employee_id.asc(), LeaveCounter.id.asc())
    if kind is not None:
        stmt = stmt.where(LeaveCounter.kind == kind)
    if period_key is not None:
        if kind is not None:
            parse_period_key(kind, period_key)
        stmt = stmt.where(LeaveCounter.period_key == period_key)
    return list(db.scalars(stmt).all())


def low_balance_counters(
    db: Session,
    threshold: Any = "10",
    *,
    kind: CounterKind | None = None,
    period_key: str | None = None,
) -> list[LeaveCounter]:
    """Counters whose balance is below ``threshold``, lowest balance first."""
    limit = parse_decimal(threshold, field="threshold")
    counters = [counter for counter in _counters_in_scope(db, kind, period_key) if counter.current_balance < limit]
    return sorted(counters, key=lambda counter: counter.current_balance)


def negative_counters(
    db: Session,
    *,
    kind: CounterKind | None = None,
    period_key: str | None = None,
) -> list[LeaveCounter]:
    return low_balance_counters(db, "0", kind=kind, period_key=period_key)


def _lock(db: Session, counter: LeaveCounter) -> LeaveCounter:
    if counter.id is None:
        return counter
    locked = db.scalar(select(LeaveCounter).where(LeaveCounter.id == counter.id).with_for_update())
    return locked or counter


def _apply_delta(counter: LeaveCounter, kind: MovementKind, delta: Decimal) -> None:
    if kind == MovementKind.ACCRUAL:
        counter.accrued = quantize_days(Decimal(counter.accrued or 0) + delta)
    elif kind == MovementKind.CONSUMPTION:
        counter.consumed = quantize_days(Decimal(counter.consumed or 0) + delta)
    else:
        counter.manual_adjustment = quantize_days(Decimal(counter.manual_adjustment or 0) + delta)
    counter.touch_updated_at()


def _add_movement(
    db: Session,
    counter: LeaveCounter,
    *,
    kind: MovementKind,
    days: Decimal,
    source_period: str | None,
    actor: str,
    comment: str | None,
) -> LeaveCounterMovement:
    movement = LeaveCounterMovement(
        counter=counter,
        kind=kind,
        days=days,
        source_period=source_period,
        actor=actor,
        comment=comment,
    )
    db.add(movement)
    _apply_delta(counter, kind, days)
    return movement


def get_or_create_counter(
    db: Session,
    employee_id: int,
    kind: CounterKind,
    period_key: str,
    *,
    actor: str = SYSTEM_ACTOR,
    commit: bool = True,
) -> LeaveCounter:
    parse_period_key(kind, period_key)
    existing = find_counter(db, employee_id, kind, period_key, for_update=True)
    if existing is not None:
        return existing

    _require_employee(db, employee_id)
    previous = find_counter(db, employee_id, kind, previous_period_key(kind, period_key))
    initial_balance = quantize_days(previous.current_balance) if previous is not None else Decimal("0.00")

    counter = LeaveCounter(
        employee_id=employee_id,
        kind=kind,
        period_key=period_key,
        initial_balance=initial_balance,
        accrued=Decimal("0"),
        consumed=Decimal("0"),
        manual_adjustment=Decimal("0"),
    )
    db.add(counter)
    if kind == CounterKind.ANNUAL_DAYS:
        _add_movement(
            db,
            counter,
            kind=MovementKind.ACCRUAL,
            days=quantize_days(get_settings().annual_day_allocation),
            source_period=None,
            actor=actor,
            comment="yearly allocation",
        )

    details = {"employee_id": employee_id, "kind": kind.value, "period_key": period_key}
    _finish(db, commit=commit, conflict_message="Leave counter already exists", details=details)
    logger.info(
        "leave_counter_created",
        extra={**details, "initial_balance": initial_balance, "carried_over": previous is not None},
    )
    return counter


def find_movement(
    db: Session,
    counter: LeaveCounter,
    kind: MovementKind,
    source_period: str,
) -> LeaveCounterMovement | None:
    if counter.id is None:
        return None
    return db.scalar(
        select(LeaveCounterMovement).where(
            LeaveCounterMovement.counter_id == counter.id,
            LeaveCounterMovement.kind == kind,
            LeaveCounterMovement.source_period == source_period,
        )
    )


def _post(
    db: Session,
    *,
    employee_id: int,
    counter_kind: CounterKind,
    period_key: str,
    movement_kind: MovementKind,
    days: Any,
    source_period: str | None,
    actor: str,
    comment: str | None,
    commit: bool,
) -> LeaveCounterMovement:
    amount = quantize_days(parse_decimal(days, field="days"))
    if amount <= 0:
        raise ValidationError("days must be greater than zero", field="days", value=days)
    if source_period is not None:
        parse_period(source_period)

    counter = _lock(db, get_or_create_counter(db, employee_id, counter_kind, period_key, actor=actor, commit=False))
    if source_period is not None and find_movement(db, counter, movement_kind, source_period) is not None:
        raise ConflictError(
            "Movement already posted for this source period",
            counter_id=counter.id,
            kind=movement_kind.value,
            source_period=source_period,
        )

    movement = _add_movement(
        db,
        counter,
        kind=movement_kind,
        days=amount,
        source_period=source_period,
        actor=actor,
        comment=comment,
    )
    details = {
        "employee_id": employee_id,
        "kind": counter_kind.value,
        "period_key": period_key,
        "movement_kind": movement_kind.value,
        "source_period": source_period,
    }
    _finish(db, commit=commit, conflict_message="Movement already posted for this source period", details=details)
    logger.info("leave_counter_movement_posted", extra={**details, "days": amount, "actor": actor})
    return movement


def accrue(
    db: Session,
    employee_id: int,
    kind: CounterKind,
    period_key: str,
    days: Any,
    *,
    source_period: str | None = None,
    actor: str = SYSTEM_ACTOR,
    comment: str | None = None,
    commit: bool = True,
) -> LeaveCounterMovement:
    return _post(
        db,
        employee_id=employee_id,
        counter_kind=kind,
        period_key=period_key,
        movement_kind=MovementKind.ACCRUAL,
        days=days,
        source_period=source_period,
        actor=actor,
        comment=comment,
        commit=commit,
    )


def consume(
    db: Session,
    employee_id: int,
    kind: CounterKind,
    period_key: str,
    days: Any,
    *,
    source_period: str | None = None,
    actor: str = SYSTEM_ACTOR,
    comment: str | None = None,
    commit: bool = True,
) -> LeaveCounterMovement:
    return _post(
        db,
        employee_id=employee_id,
        counter_kind=kind,
        period_key=period_key,
        movement_kind=MovementKind.CONSUMPTION,
        days=days,
        source_period=source_period,
        actor=actor,
        comment=comment,
        commit=commit,
    )


def adjust(
    db: Session,
    employee_id: int,
    kind: CounterKind,
    period_key: str,
    delta: Any,
    *,
    comment: str | None,
    actor: str | None,
    commit: bool = True,
) -> LeaveCounter:
    """Apply a manual correction to a counter.

    Negative deltas may take the balance below zero; the consolidation
    validation rules decide whether such a balance is acceptable.
    """
    amount = quantize_days(parse_decimal(delta, field="delta"))
    if amount == 0:
        raise ValidationError("delta must not be zero", field="delta", value=delta)
    clean_comment = (comment or "").strip()
    if not clean_comment:
        raise ValidationError("comment is required for a manual adjustment", field="comment")
    clean_actor = (actor or "").strip()
    if not clean_actor:
        raise ValidationError("actor is required for a manual adjustment", field="actor")

    counter = _lock(db, get_or_create_counter(db, employee_id, kind, period_key, actor=clean_actor, commit=False))
    _add_movement(
        db,
        counter,
        kind=MovementKind.ADJUSTMENT,
        days=amount,
        source_period=None,
        actor=clean_actor,
        comment=clean_comment,
    )
    counter.adjustment_comment = clean_comment

    details = {"employee_id": employee_id, "kind": kind.value, "period_key": period_key}
    _finish(db, commit=commit, conflict_message="Leave counter changed concurrently", details=details)
    logger.info(
        "leave_counter_adjusted",
        extra={**details, "delta": amount, "actor": clean_actor, "balance": counter.current_balance},
    )
    return counter


def revise_movement(
    db: Session,
    movement: LeaveCounterMovement,
    days: Any,
    *,
    actor: str = SYSTEM_ACTOR,
    commit: bool = False,
) -> LeaveCounterMovement:
    new_days = quantize_days(parse_decimal(days, field="days"))
    if new_days < 0:
        raise ValidationError("days must not be negative", field="days", value=days)

    delta = new_days - Decimal(movement.days)
    if delta == 0:
        return movement

    counter = _lock(db, movement.counter)
    _apply_delta(counter, movement.kind, delta)
    movement.days = new_days
    movement.actor = actor

    details = {
        "counter_id": counter.id,
        "movement_id": movement.id,
        "movement_kind": movement.kind.value,
        "source_period": movement.source_period,
    }
    _finish(db, commit=commit, conflict_message="Leave counter changed concurrently", details=details)
    logger.info("leave_counter_movement_revised", extra={**details, "delta": delta, "actor": actor})
    return movement


def list_counter_movements(db: Session, counter: LeaveCounter) -> list[MovementWithBalance]:
    movements = list(
        db.scalars(
            select(LeaveCounterMovement)
            .where(LeaveCounterMovement.counter_id == counter.id)
            .order_by(LeaveCounterMovement.created_at.asc(), LeaveCounterMovement.id.asc())
        ).all()
    )

    balance = Decimal(counter.initial_balance or 0)
    history: list[MovementWithBalance] = []
    for movement in movements:
        balance += movement.signed_days
        history.append(MovementWithBalance(movement=movement, balance_after=quantize_days(balance)))
    history.reverse()
    return history


def net_movements_before(db: Session, counter: LeaveCounter, period: str) -> Decimal:
    """Net accrual minus consumption that belongs to the opening balance of ``period``.

    Postings without a source month are part of the balance already; postings
    sourced from ``period`` itself or later months are not.
    """
    if counter.id is None:
        return Decimal("0")
    movements = db.scalars(
        select(LeaveCounterMovement).where(
            LeaveCounterMovement.counter_id == counter.id,
            LeaveCounterMovement.kind.in_([MovementKind.ACCRUAL, MovementKind.CONSUMPTION]),
            or_(
                LeaveCounterMovement.source_period.is_(None),
                LeaveCounterMovement.source_period < period,
            ),
        )
    ).all()
    return sum((movement.signed_days for movement in movements), Decimal("0"))


def open_period(db: Session, kind: CounterKind, period_key: str, *, actor: str = SYSTEM_ACTOR) -> list[LeaveCounter]:
    parse_period_key(kind, period_key)
    employees = db.scalars(select(Employee).where(Employee.is_active.is_(True)).order_by(Employee.id.asc())).all()

    created: list[LeaveCounter] = []
    for employee in employees:
        if find_counter(db, employee.id, kind, period_key) is not None:
            continue
        created.append(get_or_create_counter(db, employee.id, kind, period_key, actor=actor, commit=False))

    _finish(
        db,
        commit=True,
        conflict_message="Leave counter already exists",
        details={"kind": kind.value, "period_key": period_key},
    )
    logger.info(
        "leave_period_opened",
        extra={"kind": kind.value, "period_key": period_key, "created": len(created)},
    )
    return created
