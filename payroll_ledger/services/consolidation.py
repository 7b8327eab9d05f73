from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from payroll_ledger.errors import (
    ConflictError,
    InvalidStateError,
    LedgerError,
    NotFoundError,
    ValidationError,
)
from payroll_ledger.models import (
    AuditAction,
    Consolidation,
    ConsolidationStatus,
    CounterKind,
    Employee,
    MovementKind,
    VariableItem,
    VariableItemCategory,
    VariableItemStatus,
)
from payroll_ledger.services import audit_trail, leave_counters
from payroll_ledger.services.absence_types import deducts_from_counter
from payroll_ledger.services.facts import (
    AbsenceFactsProvider,
    AttendanceFactsProvider,
    NotificationJobSink,
    NotificationSink,
    SqlAbsenceFacts,
    SqlAttendanceFacts,
)
from payroll_ledger.services.leave_calc import (
    annual_period_key,
    monthly_accrual,
    paid_leave_period_key,
    parse_decimal,
    parse_period,
    quantize_amount,
    quantize_days,
)
from payroll_ledger.settings import Settings, get_settings

logger = logging.getLogger("payroll_ledger.consolidation")

BALANCE_TOLERANCE = Decimal("0.01")

SNAPSHOT_FIELDS = (
    "days_worked_shifts",
    "days_worked_events",
    "absence_days_by_type",
    "leave_balance_start",
    "leave_accrued",
    "leave_consumed",
    "leave_balance_end",
    "variable_items_total",
)

CORRECTABLE_FIELDS = frozenset(
    {
        "days_worked_shifts",
        "days_worked_events",
        "absence_days_by_type",
        "leave_balance_start",
        "leave_accrued",
        "leave_consumed",
    }
)

LEAVE_BALANCE_INPUTS = frozenset({"leave_balance_start", "leave_accrued", "leave_consumed"})

FINALIZED_STATUSES = frozenset(
    {ConsolidationStatus.VALIDATED, ConsolidationStatus.EXPORTED, ConsolidationStatus.ARCHIVED}
)


@dataclass(frozen=True)
class ConsolidationOutcome:
    employee_id: int
    outcome: str
    consolidation_id: int | None = None
    message: str | None = None


@dataclass(frozen=True)
class ValidationOutcome:
    consolidation_id: int
    employee_id: int
    validated: bool
    messages: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class MonthStats:
    period: str
    total: int
    draft: int
    validated: int
    exported: int
    archived: int
    finalized: int
    completion_rate: float


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _require_text(value: str | None, *, field_name: str) -> str:
    cleaned = (value or "").strip()
    if not cleaned:
        raise ValidationError(f"{field_name} is required", field=field_name)
    return cleaned


def _require_state(consolidation: Consolidation, allowed: Iterable[ConsolidationStatus], operation: str) -> None:
    allowed_states = set(allowed)
    if consolidation.status not in allowed_states:
        raise InvalidStateError(
            f"Cannot {operation} a consolidation in {consolidation.status.value} status",
            current_state=consolidation.status.value,
            required_states=[state.value for state in allowed_states],
        )


def normalize_absence_map(raw: Mapping[str, Any] | None) -> dict[str, str]:
    if raw is None:
        return {}
    if not isinstance(raw, Mapping):
        raise ValidationError(
            "absence_days_by_type must map absence codes to day counts",
            field="absence_days_by_type",
            value=raw,
        )
    normalized: dict[str, str] = {}
    for code, days in raw.items():
        clean_code = str(code).strip()
        if not clean_code:
            raise ValidationError("absence code must not be empty", field="absence_days_by_type")
        value = quantize_days(parse_decimal(days, field=f"absence_days_by_type.{clean_code}"))
        if value < 0:
            raise ValidationError(
                "absence days must not be negative",
                field=f"absence_days_by_type.{clean_code}",
                value=days,
            )
        normalized[clean_code] = str(value)
    return dict(sorted(normalized.items()))


def snapshot(consolidation: Consolidation) -> dict[str, Any]:
    values: dict[str, Any] = {}
    for name in SNAPSHOT_FIELDS:
        value = getattr(consolidation, name)
        if name == "absence_days_by_type":
            values[name] = dict(value or {})
        elif value is None:
            values[name] = None
        else:
            values[name] = quantize_days(Decimal(value))
    return values


def recompute_totals(consolidation: Consolidation) -> bool:
    """Recompute the derived totals. Returns True when one of them changed."""
    before = (consolidation.variable_items_total, consolidation.leave_balance_end)
    total = sum((Decimal(item.amount) for item in consolidation.variable_items), Decimal("0"))
    consolidation.variable_items_total = quantize_amount(total)
    consolidation.leave_balance_end = quantize_days(consolidation.expected_leave_balance_end)
    after = (consolidation.variable_items_total, consolidation.leave_balance_end)
    return tuple(quantize_days(Decimal(value or 0)) for value in before) != after


def get_consolidation(db: Session, consolidation_id: int, *, for_update: bool = False) -> Consolidation:
    stmt = select(Consolidation).where(Consolidation.id == consolidation_id)
    if for_update:
        stmt = stmt.with_for_update()
    consolidation = db.scalar(stmt)
    if consolidation is None:
        raise NotFoundError("Consolidation", consolidation_id)
    return consolidation


def find_consolidation(
    db: Session,
    employee_id: int,
    period: str,
    *,
    for_update: bool = False,
) -> Consolidation | None:
    stmt = select(Consolidation).where(
        Consolidation.employee_id == employee_id,
        Consolidation.period == period,
    )
    if for_update:
        stmt = stmt.with_for_update()
    return db.scalar(stmt)


def list_consolidations(
    db: Session,
    *,
    period: str | None = None,
    status: ConsolidationStatus | None = None,
    employee_id: int | None = None,
) -> list[Consolidation]:
    stmt = select(Consolidation).order_by(Consolidation.period.desc(), Consolidation.employee_id.asc())
    if period is not None:
        parse_period(period)
        stmt = stmt.where(Consolidation.period == period)
    if status is not None:
        stmt = stmt.where(Consolidation.status == status)
    if employee_id is not None:
        stmt = stmt.where(Consolidation.employee_id == employee_id)
    return list(db.scalars(stmt).all())


def month_stats(db: Session, period: str) -> MonthStats:
    parse_period(period)
    rows = db.execute(
        select(Consolidation.status, func.count(Consolidation.id))
        .where(Consolidation.period == period)
        .group_by(Consolidation.status)
    ).all()
    counts = {status: int(count) for status, count in rows}
    total = sum(counts.values())
    finalized = sum(counts.get(status, 0) for status in FINALIZED_STATUSES)
    return MonthStats(
        period=period,
        total=total,
        draft=counts.get(ConsolidationStatus.DRAFT, 0),
        validated=counts.get(ConsolidationStatus.VALIDATED, 0),
        exported=counts.get(ConsolidationStatus.EXPORTED, 0),
        archived=counts.get(ConsolidationStatus.ARCHIVED, 0),
        finalized=finalized,
        completion_rate=round(finalized / total * 100, 1) if total else 0.0,
    )


class ConsolidationEngine:
    """Builds monthly consolidations and drives them through their lifecycle.

    Each public command runs in one transaction: derived fields, counter
    postings, audit entries and outbox notifications are committed together,
    and a failed precondition leaves the session untouched.
    """

    def __init__(
        self,
        db: Session,
        *,
        attendance: AttendanceFactsProvider | None = None,
        absences: AbsenceFactsProvider | None = None,
        notifications: NotificationSink | None = None,
        settings: Settings | None = None,
    ) -> None:
        self.db = db
        self.attendance = attendance or SqlAttendanceFacts(db)
        self.absences = absences or SqlAbsenceFacts(db)
        self.notifications = notifications or NotificationJobSink(db)
        self.settings = settings or get_settings()

    def _commit(self, consolidation: Consolidation | None, event: str, **extra: Any) -> None:
        try:
            self.db.commit()
        except IntegrityError as exc:
            self.db.rollback()
            logger.warning("consolidation_conflict", extra={"operation": event, **extra})
            raise ConflictError("Consolidation was modified concurrently", **extra) from exc
        logger.info(
            event,
            extra={
                "consolidation_id": consolidation.id if consolidation is not None else None,
                **extra,
            },
        )

    def _compute(self, employee: Employee, period: str) -> dict[str, Any]:
        year, month = parse_period(period)
        worked = self.attendance.worked_days(employee.id, year, month)
        absence_map = normalize_absence_map(self.absences.absence_days(employee.id, year, month))

        counter = leave_counters.get_or_create_counter(
            self.db,
            employee.id,
            CounterKind.PAID_LEAVE,
            paid_leave_period_key(year, month),
            commit=False,
        )
        balance_start = (
            Decimal(counter.initial_balance or 0)
            + Decimal(counter.manual_adjustment or 0)
            + leave_counters.net_movements_before(self.db, counter, period)
        )
        consumed = sum(
            (Decimal(days) for code, days in absence_map.items() if deducts_from_counter(code)),
            Decimal("0"),
        )
        return {
            "days_worked_shifts": quantize_days(worked.shift_days),
            "days_worked_events": quantize_days(worked.event_days),
            "absence_days_by_type": absence_map,
            "leave_balance_start": quantize_days(balance_start),
            "leave_accrued": monthly_accrual(self.settings.paid_leave_monthly_accrual, employee.hire_date, year, month),
            "leave_consumed": quantize_days(consumed),
        }

    def _month_items(self, employee_id: int, period: str) -> list[VariableItem]:
        return list(
            self.db.scalars(
                select(VariableItem)
                .where(VariableItem.employee_id == employee_id, VariableItem.period == period)
                .order_by(VariableItem.id.asc())
            ).all()
        )

    def consolidate(self, employee_id: int, period: str, actor: str) -> Consolidation:
        parse_period(period)
        actor = _require_text(actor, field_name="actor")
        employee = self.db.get(Employee, employee_id)
        if employee is None:
            raise NotFoundError("Employee", employee_id)

        consolidation = find_consolidation(self.db, employee_id, period, for_update=True)
        if consolidation is not None:
            _require_state(consolidation, [ConsolidationStatus.DRAFT], "refresh")

        computed = self._compute(employee, period)
        items = self._month_items(employee_id, period)

        if consolidation is None:
            consolidation = Consolidation(
                employee_id=employee_id,
                period=period,
                status=ConsolidationStatus.DRAFT,
                **computed,
            )
            self.db.add(consolidation)
            for item in items:
                item.consolidation = consolidation
            recompute_totals(consolidation)
            try:
                self.db.flush()
            except IntegrityError as exc:
                self.db.rollback()
                raise ConflictError(
                    "Consolidation already exists for this employee and period",
                    employee_id=employee_id,
                    period=period,
                ) from exc
            audit_trail.record(
                self.db,
                consolidation,
                AuditAction.CREATED,
                actor,
                new=snapshot(consolidation),
            )
            self._commit(consolidation, "consolidation_created", employee_id=employee_id, period=period)
            return consolidation

        before = snapshot(consolidation)
        for name, value in computed.items():
            setattr(consolidation, name, value)
        for item in items:
            if item.consolidation_id != consolidation.id:
                item.consolidation = consolidation
        recompute_totals(consolidation)
        after = snapshot(consolidation)

        changed = [name for name in SNAPSHOT_FIELDS if before[name] != after[name]]
        if changed:
            consolidation.touch_updated_at()
            for name in changed:
                audit_trail.record(
                    self.db,
                    consolidation,
                    AuditAction.UPDATED,
                    actor,
                    field=name,
                    old=before[name],
                    new=after[name],
                )
        self._commit(
            consolidation,
            "consolidation_refreshed",
            employee_id=employee_id,
            period=period,
            changed_fields=changed,
        )
        return consolidation

    def consolidate_month(
        self,
        period: str,
        actor: str,
        *,
        refresh: bool = True,
        employee_id: int | None = None,
    ) -> list[ConsolidationOutcome]:
        parse_period(period)
        actor = _require_text(actor, field_name="actor")

        stmt = select(Employee).where(Employee.is_active.is_(True)).order_by(Employee.id.asc())
        if employee_id is not None:
            stmt = stmt.where(Employee.id == employee_id)
        employee_ids = [employee.id for employee in self.db.scalars(stmt).all()]

        outcomes: list[ConsolidationOutcome] = []
        for current_id in employee_ids:
            existing = find_consolidation(self.db, current_id, period)
            if existing is not None and (existing.status != ConsolidationStatus.DRAFT or not refresh):
                outcomes.append(
                    ConsolidationOutcome(
                        employee_id=current_id,
                        outcome="skipped",
                        consolidation_id=existing.id,
                        message=f"status {existing.status.value}",
                    )
                )
                continue
            try:
                consolidation = self.consolidate(current_id, period, actor)
            except LedgerError as exc:
                self.db.rollback()
                logger.warning(
                    "consolidation_failed",
                    extra={"employee_id": current_id, "period": period, "error_code": exc.code},
                )
                outcomes.append(ConsolidationOutcome(employee_id=current_id, outcome="failed", message=exc.message))
                continue
            outcomes.append(
                ConsolidationOutcome(
                    employee_id=current_id,
                    outcome="updated" if existing is not None else "created",
                    consolidation_id=consolidation.id,
                )
            )

        logger.info(
            "consolidation_month_completed",
            extra={
                "period": period,
                "processed": len(outcomes),
                "failed": sum(1 for outcome in outcomes if outcome.outcome == "failed"),
            },
        )
        return outcomes

    def check_validation(self, consolidation: Consolidation, allow_negative_balance: bool = False) -> list[str]:
        messages: list[str] = []
        if consolidation.status != ConsolidationStatus.DRAFT:
            messages.append(f"Consolidation is {consolidation.status.value}, only DRAFT can be validated")
        if consolidation.total_days_worked < 0:
            messages.append("Total worked days cannot be negative")

        expected_end = consolidation.expected_leave_balance_end
        balance_end = Decimal(consolidation.leave_balance_end or 0)
        if abs(balance_end - expected_end) > BALANCE_TOLERANCE:
            messages.append(
                f"Leave balance end {balance_end} does not match start + accrued - consumed ({expected_end})"
            )
        if balance_end < 0 and not allow_negative_balance:
            messages.append(f"Leave balance end is negative ({balance_end})")

        for item in sorted(consolidation.variable_items, key=lambda value: value.id or 0):
            if item.status != VariableItemStatus.VALIDATED:
                messages.append(f"Variable item {item.id} ({item.label}) is not validated")

        return list(dict.fromkeys(messages))

    def _post_counters(self, consolidation: Consolidation, actor: str) -> None:
        year, month = parse_period(consolidation.period)
        paid_key = paid_leave_period_key(year, month)
        postings = (
            (CounterKind.PAID_LEAVE, paid_key, MovementKind.ACCRUAL, consolidation.leave_accrued),
            (CounterKind.PAID_LEAVE, paid_key, MovementKind.CONSUMPTION, consolidation.leave_consumed),
            (CounterKind.ANNUAL_DAYS, annual_period_key(year), MovementKind.CONSUMPTION, consolidation.total_days_worked),
        )
        for counter_kind, period_key, movement_kind, raw_days in postings:
            days = quantize_days(Decimal(raw_days or 0))
            counter = leave_counters.get_or_create_counter(
                self.db,
                consolidation.employee_id,
                counter_kind,
                period_key,
                actor=actor,
                commit=False,
            )
            existing = leave_counters.find_movement(self.db, counter, movement_kind, consolidation.period)
            if existing is not None:
                leave_counters.revise_movement(self.db, existing, days, actor=actor)
                continue
            if days <= 0:
                continue
            post = leave_counters.accrue if movement_kind == MovementKind.ACCRUAL else leave_counters.consume
            post(
                self.db,
                consolidation.employee_id,
                counter_kind,
                period_key,
                days,
                source_period=consolidation.period,
                actor=actor,
                commit=False,
            )

    def validate(
        self,
        consolidation: Consolidation,
        actor: str,
        allow_negative_balance: bool = False,
    ) -> Consolidation:
        actor = _require_text(actor, field_name="actor")
        _require_state(consolidation, [ConsolidationStatus.DRAFT], "validate")
        messages = self.check_validation(consolidation, allow_negative_balance=allow_negative_balance)
        if messages:
            raise ValidationError("Consolidation cannot be validated", messages=messages)

        consolidation.touch_updated_at()
        consolidation.negative_balance_override = bool(
            allow_negative_balance and Decimal(consolidation.leave_balance_end) < 0
        )
        self._post_counters(consolidation, actor)

        consolidation.status = ConsolidationStatus.VALIDATED
        consolidation.validated_by = actor
        consolidation.validated_at = _utcnow()
        audit_trail.record(
            self.db,
            consolidation,
            AuditAction.VALIDATED,
            actor,
            field="status",
            old=ConsolidationStatus.DRAFT,
            new=ConsolidationStatus.VALIDATED,
        )
        self.notifications.on_validated(consolidation)
        self._commit(
            consolidation,
            "consolidation_validated",
            employee_id=consolidation.employee_id,
            period=consolidation.period,
            actor=actor,
        )
        return consolidation

    def validate_month(
        self,
        period: str,
        actor: str,
        *,
        allow_negative_balance: bool = False,
    ) -> list[ValidationOutcome]:
        drafts = list_consolidations(self.db, period=period, status=ConsolidationStatus.DRAFT)
        outcomes: list[ValidationOutcome] = []
        for consolidation in drafts:
            consolidation_id = consolidation.id
            employee_id = consolidation.employee_id
            try:
                self.validate(consolidation, actor, allow_negative_balance=allow_negative_balance)
            except ValidationError as exc:
                self.db.rollback()
                outcomes.append(
                    ValidationOutcome(
                        consolidation_id=consolidation_id,
                        employee_id=employee_id,
                        validated=False,
                        messages=exc.messages,
                    )
                )
                continue
            except LedgerError as exc:
                self.db.rollback()
                outcomes.append(
                    ValidationOutcome(
                        consolidation_id=consolidation_id,
                        employee_id=employee_id,
                        validated=False,
                        messages=[exc.message],
                    )
                )
                continue
            outcomes.append(ValidationOutcome(consolidation_id=consolidation_id, employee_id=employee_id, validated=True))

        logger.info(
            "consolidation_month_validated",
            extra={
                "period": period,
                "validated": sum(1 for outcome in outcomes if outcome.validated),
                "failed": sum(1 for outcome in outcomes if not outcome.validated),
            },
        )
        return outcomes

    def reopen(self, consolidation: Consolidation, actor: str, reason: str) -> Consolidation:
        actor = _require_text(actor, field_name="actor")
        _require_state(
            consolidation,
            [ConsolidationStatus.VALIDATED, ConsolidationStatus.EXPORTED],
            "reopen",
        )
        reason = _require_text(reason, field_name="reason")

        previous_status = consolidation.status
        consolidation.touch_updated_at()
        consolidation.status = ConsolidationStatus.DRAFT
        consolidation.negative_balance_override = False
        audit_trail.record(
            self.db,
            consolidation,
            AuditAction.REOPENED,
            actor,
            field="status",
            old=previous_status,
            new=ConsolidationStatus.DRAFT,
            comment=reason,
        )
        self._commit(consolidation, "consolidation_reopened", actor=actor, previous_status=previous_status.value)
        return consolidation

    def _parse_correction(self, field_name: str, new_value: Any) -> Any:
        if field_name == "absence_days_by_type":
            return normalize_absence_map(new_value)
        value = quantize_days(parse_decimal(new_value, field=field_name))
        if field_name != "leave_balance_start" and value < 0:
            raise ValidationError(f"{field_name} must not be negative", field=field_name, value=new_value)
        return value

    def correct_field(
        self,
        consolidation: Consolidation,
        field_name: str,
        new_value: Any,
        actor: str,
        comment: str,
    ) -> Consolidation:
        actor = _require_text(actor, field_name="actor")
        if field_name not in CORRECTABLE_FIELDS:
            raise ValidationError(
                f"{field_name} cannot be corrected",
                field="field",
                value=field_name,
            )
        comment = _require_text(comment, field_name="comment")
        value = self._parse_correction(field_name, new_value)

        old_value = snapshot(consolidation)[field_name]
        consolidation.touch_updated_at()
        setattr(consolidation, field_name, value)
        if field_name in LEAVE_BALANCE_INPUTS:
            consolidation.recalculate_leave_balance_end()
        audit_trail.record(
            self.db,
            consolidation,
            AuditAction.CORRECTION,
            actor,
            field=field_name,
            old=old_value,
            new=snapshot(consolidation)[field_name],
            comment=comment,
        )
        if consolidation.status != ConsolidationStatus.DRAFT:
            self.notifications.on_corrected(consolidation, field_name, comment)
        self._commit(consolidation, "consolidation_corrected", field=field_name, actor=actor)
        return consolidation

    def refresh_variable_items_total(self, consolidation: Consolidation, actor: str) -> bool:
        """Recompute totals after a linked item changed, auditing a changed total."""
        old_total = quantize_days(Decimal(consolidation.variable_items_total or 0))
        if not recompute_totals(consolidation):
            return False
        new_total = quantize_days(Decimal(consolidation.variable_items_total))
        consolidation.touch_updated_at()
        if new_total != old_total:
            audit_trail.record(
                self.db,
                consolidation,
                AuditAction.UPDATED,
                actor,
                field="variable_items_total",
                old=old_total,
                new=new_total,
            )
        return True

    def correct_variable_item(
        self,
        item: VariableItem,
        actor: str,
        comment: str,
        *,
        amount: Any = None,
        label: str | None = None,
        description: str | None = None,
        category: VariableItemCategory | None = None,
    ) -> VariableItem:
        actor = _require_text(actor, field_name="actor")
        comment = _require_text(comment, field_name="comment")
        consolidation = item.consolidation
        if consolidation is None:
            raise ValidationError(
                "Variable item is not linked to a consolidation",
                field="consolidation_id",
                value=item.id,
            )
        if amount is None and label is None and description is None and category is None:
            raise ValidationError("nothing to correct", field="variable_item", value=item.id)
        new_amount = quantize_days(parse_decimal(amount, field="amount")) if amount is not None else None
        new_label = _require_text(label, field_name="label") if label is not None else None

        old_total = quantize_days(Decimal(consolidation.variable_items_total or 0))
        item.touch_updated_at()
        consolidation.touch_updated_at()
        if new_amount is not None:
            item.amount = new_amount
        if new_label is not None:
            item.label = new_label
        if description is not None:
            item.description = description
        if category is not None:
            item.category = category
        recompute_totals(consolidation)

        audit_trail.record(
            self.db,
            consolidation,
            AuditAction.CORRECTION,
            actor,
            field="variable_items_total",
            old=old_total,
            new=quantize_days(Decimal(consolidation.variable_items_total)),
            comment=f"variable item {item.id}: {comment}",
        )
        if consolidation.status != ConsolidationStatus.DRAFT:
            self.notifications.on_corrected(consolidation, "variable_items_total", comment)
        self._commit(consolidation, "variable_item_corrected", variable_item_id=item.id, actor=actor)
        return item

    def mark_exported(self, consolidation: Consolidation, actor: str) -> Consolidation:
        actor = _require_text(actor, field_name="actor")
        _require_state(consolidation, [ConsolidationStatus.VALIDATED], "export")

        consolidation.touch_updated_at()
        consolidation.status = ConsolidationStatus.EXPORTED
        consolidation.exported_at = _utcnow()
        audit_trail.record(
            self.db,
            consolidation,
            AuditAction.EXPORTED,
            actor,
            field="status",
            old=ConsolidationStatus.VALIDATED,
            new=ConsolidationStatus.EXPORTED,
        )
        self._commit(consolidation, "consolidation_exported", actor=actor)
        return consolidation

    def mark_sent_to_accountant(self, consolidation: Consolidation, actor: str) -> Consolidation:
        actor = _require_text(actor, field_name="actor")
        _require_state(
            consolidation,
            [ConsolidationStatus.EXPORTED, ConsolidationStatus.ARCHIVED],
            "mark as sent to the accountant",
        )

        previous = consolidation.sent_to_accountant_at
        consolidation.touch_updated_at()
        consolidation.sent_to_accountant_at = _utcnow()
        audit_trail.record(
            self.db,
            consolidation,
            AuditAction.UPDATED,
            actor,
            field="sent_to_accountant_at",
            old=previous,
            new=consolidation.sent_to_accountant_at,
        )
        self._commit(consolidation, "consolidation_sent_to_accountant", actor=actor)
        return consolidation

    def archive(self, consolidation: Consolidation, actor: str) -> Consolidation:
        actor = _require_text(actor, field_name="actor")
        _require_state(consolidation, [ConsolidationStatus.EXPORTED], "archive")

        consolidation.touch_updated_at()
        consolidation.status = ConsolidationStatus.ARCHIVED
        audit_trail.record(
            self.db,
            consolidation,
            AuditAction.ARCHIVED,
            actor,
            field="status",
            old=ConsolidationStatus.EXPORTED,
            new=ConsolidationStatus.ARCHIVED,
        )
        self._commit(consolidation, "consolidation_archived", actor=actor)
        return consolidation
