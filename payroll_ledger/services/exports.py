from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from payroll_ledger.models import Consolidation, ConsolidationStatus, VariableItemCategory
from payroll_ledger.services.absence_types import SICK_LEAVE_CODE
from payroll_ledger.services.consolidation import FINALIZED_STATUSES, ConsolidationEngine
from payroll_ledger.services.leave_calc import parse_period, quantize_amount, quantize_days
from payroll_ledger.settings import get_settings

logger = logging.getLogger("payroll_ledger.exports")

BONUS_CATEGORIES = (VariableItemCategory.BONUS, VariableItemCategory.EXCEPTIONAL_BONUS)
ADVANCE_CATEGORIES = (VariableItemCategory.ADVANCE, VariableItemCategory.DRAW_DOWN)
EXPENSE_CATEGORIES = (VariableItemCategory.EXPENSE_REIMBURSEMENT, VariableItemCategory.TRANSPORT_ALLOWANCE)
DEDUCTION_CATEGORIES = (VariableItemCategory.DEDUCTION,)


@dataclass(frozen=True)
class PayrollExportRow:
    period: str
    consolidation_id: int
    employee_id: int
    matricule: str | None
    full_name: str
    status: ConsolidationStatus
    worked_days: Decimal
    leave_consumed: Decimal
    sick_days: Decimal
    other_absence_days: Decimal
    bonuses: Decimal
    advances: Decimal
    expenses: Decimal
    deductions: Decimal
    variable_items_total: Decimal


def _sum_categories(consolidation: Consolidation, categories: tuple[VariableItemCategory, ...]) -> Decimal:
    total = sum(
        (Decimal(item.amount) for item in consolidation.variable_items if item.category in categories),
        Decimal("0"),
    )
    return quantize_amount(total)


def _build_row(consolidation: Consolidation) -> PayrollExportRow:
    absences = consolidation.absence_days_by_type or {}
    sick_days = Decimal(str(absences.get(SICK_LEAVE_CODE, "0")))
    paid_leave_days = Decimal(str(absences.get(get_settings().paid_leave_counter_code, "0")))
    other_absences = max(Decimal("0"), consolidation.total_absence_days - sick_days - paid_leave_days)

    return PayrollExportRow(
        period=consolidation.period,
        consolidation_id=consolidation.id,
        employee_id=consolidation.employee_id,
        matricule=consolidation.employee.matricule,
        full_name=consolidation.employee.full_name,
        status=consolidation.status,
        worked_days=quantize_days(consolidation.total_days_worked),
        leave_consumed=quantize_days(Decimal(consolidation.leave_consumed)),
        sick_days=quantize_days(sick_days),
        other_absence_days=quantize_days(other_absences),
        bonuses=_sum_categories(consolidation, BONUS_CATEGORIES),
        advances=_sum_categories(consolidation, ADVANCE_CATEGORIES),
        expenses=_sum_categories(consolidation, EXPENSE_CATEGORIES),
        deductions=_sum_categories(consolidation, DEDUCTION_CATEGORIES),
        variable_items_total=quantize_amount(Decimal(consolidation.variable_items_total)),
    )


def _finalized_consolidations(db: Session, period: str) -> list[Consolidation]:
    return list(
        db.scalars(
            select(Consolidation)
            .options(selectinload(Consolidation.employee), selectinload(Consolidation.variable_items))
            .where(
                Consolidation.period == period,
                Consolidation.status.in_(list(FINALIZED_STATUSES)),
            )
            .order_by(Consolidation.employee_id.asc())
        ).all()
    )


def build_export_rows(db: Session, period: str) -> list[PayrollExportRow]:
    parse_period(period)
    return [_build_row(consolidation) for consolidation in _finalized_consolidations(db, period)]


def export_period(db: Session, period: str, actor: str) -> list[PayrollExportRow]:
    """Build the export rows and move every VALIDATED consolidation of the month to EXPORTED."""
    parse_period(period)
    engine = ConsolidationEngine(db)
    for consolidation in _finalized_consolidations(db, period):
        if consolidation.status == ConsolidationStatus.VALIDATED:
            engine.mark_exported(consolidation, actor)

    rows = build_export_rows(db, period)
    logger.info("payroll_export_built", extra={"period": period, "count": len(rows), "actor": actor})
    return rows
