from __future__ import annotations

import unittest
from datetime import date
from decimal import Decimal

from ledger_support import RecordingNotifications, add_absence, add_employee, add_worked_days, make_session

from payroll_ledger.errors import ValidationError
from payroll_ledger.models import AuditAction, ConsolidationStatus, VariableItemCategory
from payroll_ledger.services.audit_trail import list_audit_trail
from payroll_ledger.services.consolidation import ConsolidationEngine
from payroll_ledger.services.exports import build_export_rows, export_period
from payroll_ledger.services.variable_items import create_variable_item, validate_variable_item

PERIOD = "2025-07"


class PayrollExportTests(unittest.TestCase):
    def setUp(self) -> None:
        self.db = make_session()
        self.engine = ConsolidationEngine(self.db, notifications=RecordingNotifications())

        self.employee = add_employee(self.db, full_name="Alex Martin", matricule="M-100", hire_date=date(2019, 3, 4))
        self.pending = add_employee(self.db, full_name="Sam Rivera", matricule="M-101")

        add_worked_days(self.db, self.employee, date(2025, 7, 7), 15)
        add_absence(self.db, self.employee, "CP", date(2025, 7, 1), date(2025, 7, 1))
        add_absence(self.db, self.employee, "MAL", date(2025, 7, 2), date(2025, 7, 3))
        add_absence(self.db, self.employee, "CPSS", date(2025, 7, 4), date(2025, 7, 4))

        items = [
            (VariableItemCategory.BONUS, "100", "Sunday bonus"),
            (VariableItemCategory.EXCEPTIONAL_BONUS, "50", "Inventory bonus"),
            (VariableItemCategory.ADVANCE, "-200", "Salary advance"),
            (VariableItemCategory.TRANSPORT_ALLOWANCE, "30", "Transport"),
            (VariableItemCategory.DEDUCTION, "-10", "Lost badge"),
        ]
        for category, amount, label in items:
            item = create_variable_item(
                self.db,
                employee_id=self.employee.id,
                period=PERIOD,
                category=category,
                amount=amount,
                label=label,
                actor="hr.admin",
            )
            validate_variable_item(self.db, item.id, actor="hr.admin")
        create_variable_item(
            self.db,
            employee_id=self.pending.id,
            period=PERIOD,
            category=VariableItemCategory.BONUS,
            amount="75",
            label="Awaiting approval",
            actor="hr.admin",
        )

        self.engine.consolidate_month(PERIOD, "system")
        outcomes = self.engine.validate_month(PERIOD, "hr.admin")
        self.validated_id = next(outcome.consolidation_id for outcome in outcomes if outcome.validated)

    def tearDown(self) -> None:
        self.db.close()

    def test_rows_cover_finalized_consolidations_only(self) -> None:
        rows = build_export_rows(self.db, PERIOD)

        self.assertEqual(len(rows), 1)
        row = rows[0]
        self.assertEqual(row.consolidation_id, self.validated_id)
        self.assertEqual(row.matricule, "M-100")
        self.assertEqual(row.full_name, "Alex Martin")
        self.assertEqual(row.status, ConsolidationStatus.VALIDATED)
        self.assertEqual(row.worked_days, Decimal("15.00"))
        self.assertEqual(row.leave_consumed, Decimal("1.00"))
        self.assertEqual(row.sick_days, Decimal("2.00"))
        self.assertEqual(row.other_absence_days, Decimal("1.00"))
        self.assertEqual(row.bonuses, Decimal("150.00"))
        self.assertEqual(row.advances, Decimal("-200.00"))
        self.assertEqual(row.expenses, Decimal("30.00"))
        self.assertEqual(row.deductions, Decimal("-10.00"))
        self.assertEqual(row.variable_items_total, Decimal("-30.00"))

    def test_export_period_marks_validated_consolidations_once(self) -> None:
        rows = export_period(self.db, PERIOD, "hr.admin")
        self.assertEqual([row.status for row in rows], [ConsolidationStatus.EXPORTED])

        again = export_period(self.db, PERIOD, "hr.admin")
        self.assertEqual([row.status for row in again], [ConsolidationStatus.EXPORTED])

        actions = [entry.action for entry in list_audit_trail(self.db, self.validated_id)]
        self.assertEqual(actions.count(AuditAction.EXPORTED), 1)
        self.assertEqual(actions[0], AuditAction.EXPORTED)

    def test_empty_month_and_bad_period(self) -> None:
        self.assertEqual(build_export_rows(self.db, "2025-08"), [])
        with self.assertRaises(ValidationError):
            build_export_rows(self.db, "07/2025")


if __name__ == "__main__":
    unittest.main()
