from __future__ import annotations

import unittest
from datetime import date
from decimal import Decimal

from ledger_support import RecordingNotifications, add_employee, make_session

from payroll_ledger.errors import InvalidStateError, NotFoundError, ValidationError
from payroll_ledger.models import (
    AuditAction,
    ConsolidationStatus,
    VariableItem,
    VariableItemCategory,
    VariableItemStatus,
)
from payroll_ledger.services.audit_trail import decode_value, list_audit_trail
from payroll_ledger.services.consolidation import ConsolidationEngine
from payroll_ledger.services.variable_items import (
    copy_recurring_from_previous_month,
    create_variable_item,
    delete_variable_item,
    expected_sign,
    list_variable_items,
    update_variable_item,
    validate_all_for_consolidation,
    validate_variable_item,
)

PERIOD = "2025-07"


class VariableItemServiceTests(unittest.TestCase):
    def setUp(self) -> None:
        self.db = make_session()
        self.notifications = RecordingNotifications()
        self.engine = ConsolidationEngine(self.db, notifications=self.notifications)
        self.employee = add_employee(self.db, matricule="M-010", hire_date=date(2020, 1, 6))

    def tearDown(self) -> None:
        self.db.close()

    def _create(self, amount: str = "100", **overrides: object) -> VariableItem:
        values = {
            "employee_id": self.employee.id,
            "period": PERIOD,
            "category": VariableItemCategory.BONUS,
            "amount": amount,
            "label": "Sunday bonus",
            "actor": "hr.admin",
        }
        values.update(overrides)
        return create_variable_item(self.db, **values)

    def test_item_created_before_consolidation_is_linked_later(self) -> None:
        item = self._create()
        self.assertIsNone(item.consolidation_id)
        self.assertEqual(item.status, VariableItemStatus.DRAFT)
        self.assertEqual(item.amount, Decimal("100.00"))

        consolidation = self.engine.consolidate(self.employee.id, PERIOD, "system")

        self.assertEqual(item.consolidation_id, consolidation.id)
        self.assertEqual(consolidation.variable_items_total, Decimal("100.00"))

    def test_changes_on_draft_consolidation_keep_total_in_sync(self) -> None:
        consolidation = self.engine.consolidate(self.employee.id, PERIOD, "system")

        bonus = self._create("100")
        advance = self._create("-40", category=VariableItemCategory.ADVANCE, label="Advance")
        self.assertEqual(consolidation.variable_items_total, Decimal("60.00"))

        update_variable_item(self.db, bonus.id, actor="hr.admin", amount="80")
        self.assertEqual(consolidation.variable_items_total, Decimal("40.00"))

        delete_variable_item(self.db, advance.id, actor="hr.admin")
        self.assertEqual(consolidation.variable_items_total, Decimal("80.00"))
        self.assertEqual([item.id for item in list_variable_items(self.db, period=PERIOD)], [bonus.id])

        updates = [
            decode_value(entry.new_value)
            for entry in reversed(list_audit_trail(self.db, consolidation.id))
            if entry.action == AuditAction.UPDATED
        ]
        self.assertEqual(updates, [Decimal("100.00"), Decimal("60.00"), Decimal("40.00"), Decimal("80.00")])

    def test_validated_item_is_frozen(self) -> None:
        item = self._create()
        validate_variable_item(self.db, item.id, actor="hr.admin")

        self.assertEqual(item.status, VariableItemStatus.VALIDATED)
        self.assertEqual(item.validated_by, "hr.admin")
        with self.assertRaises(InvalidStateError):
            update_variable_item(self.db, item.id, actor="hr.admin", amount="1")
        with self.assertRaises(InvalidStateError):
            delete_variable_item(self.db, item.id, actor="hr.admin")
        with self.assertRaises(InvalidStateError):
            validate_variable_item(self.db, item.id, actor="hr.admin")

    def test_finalized_consolidation_rejects_new_items(self) -> None:
        consolidation = self.engine.consolidate(self.employee.id, PERIOD, "system")
        self.engine.validate(consolidation, "hr.admin")

        with self.assertRaises(InvalidStateError) as ctx:
            self._create()
        self.assertEqual(ctx.exception.current_state, ConsolidationStatus.VALIDATED.value)
        self.assertEqual(list_variable_items(self.db, employee_id=self.employee.id), [])

    def test_input_is_checked(self) -> None:
        with self.assertRaises(ValidationError):
            self._create(label="   ")
        with self.assertRaises(ValidationError):
            self._create(amount="ten")
        with self.assertRaises(ValidationError):
            self._create(period="2025-13")
        with self.assertRaises(NotFoundError):
            self._create(employee_id=404)
        with self.assertRaises(NotFoundError):
            update_variable_item(self.db, 404, actor="hr.admin", amount="1")

    def test_correction_after_validation_is_audited_and_notified(self) -> None:
        consolidation = self.engine.consolidate(self.employee.id, PERIOD, "system")
        item = self._create("100")
        validate_variable_item(self.db, item.id, actor="hr.admin")
        self.engine.validate(consolidation, "hr.admin")

        self.engine.correct_variable_item(item, "hr.admin", "amount agreed with manager", amount="120")

        self.assertEqual(item.amount, Decimal("120.00"))
        self.assertEqual(consolidation.variable_items_total, Decimal("120.00"))
        self.assertEqual(consolidation.status, ConsolidationStatus.VALIDATED)
        latest = list_audit_trail(self.db, consolidation.id)[0]
        self.assertEqual(latest.action, AuditAction.CORRECTION)
        self.assertEqual(decode_value(latest.old_value), Decimal("100.00"))
        self.assertEqual(decode_value(latest.new_value), Decimal("120.00"))
        self.assertEqual(latest.comment, f"variable item {item.id}: amount agreed with manager")
        self.assertEqual(
            self.notifications.corrected,
            [(consolidation.id, "variable_items_total", "amount agreed with manager")],
        )

    def test_correction_requires_comment_and_linked_consolidation(self) -> None:
        item = self._create()
        with self.assertRaises(ValidationError):
            self.engine.correct_variable_item(item, "hr.admin", "unlinked", amount="5")

        consolidation = self.engine.consolidate(self.employee.id, PERIOD, "system")
        with self.assertRaises(ValidationError):
            self.engine.correct_variable_item(item, "hr.admin", "", amount="5")
        self.assertEqual(consolidation.variable_items_total, Decimal("100.00"))

    def test_correction_without_changes_is_rejected(self) -> None:
        item = self._create()
        consolidation = self.engine.consolidate(self.employee.id, PERIOD, "system")
        validate_variable_item(self.db, item.id, actor="hr.admin")
        self.engine.validate(consolidation, "hr.admin")
        entries_before = len(list_audit_trail(self.db, consolidation.id))

        with self.assertRaises(ValidationError) as ctx:
            self.engine.correct_variable_item(item, "hr.admin", "checked with payroll")

        self.assertEqual(ctx.exception.message, "nothing to correct")
        self.assertEqual(len(list_audit_trail(self.db, consolidation.id)), entries_before)
        self.assertEqual(self.notifications.corrected, [])

    def test_validate_all_for_consolidation(self) -> None:
        consolidation = self.engine.consolidate(self.employee.id, PERIOD, "system")
        bonus = self._create("100")
        advance = self._create("-40", category=VariableItemCategory.ADVANCE, label="Advance")
        validate_variable_item(self.db, advance.id, actor="payroll.clerk")

        validated = validate_all_for_consolidation(self.db, consolidation.id, actor="hr.admin")

        self.assertEqual(validated, 1)
        self.assertEqual(bonus.status, VariableItemStatus.VALIDATED)
        self.assertEqual(bonus.validated_by, "hr.admin")
        self.assertEqual(advance.validated_by, "payroll.clerk")
        self.assertEqual(validate_all_for_consolidation(self.db, consolidation.id, actor="hr.admin"), 0)
        self.assertEqual(self.engine.check_validation(consolidation), [])

        self.engine.validate(consolidation, "hr.admin")
        with self.assertRaises(InvalidStateError):
            validate_all_for_consolidation(self.db, consolidation.id, actor="hr.admin")
        with self.assertRaises(NotFoundError):
            validate_all_for_consolidation(self.db, 999, actor="hr.admin")

    def test_copy_recurring_bonuses_from_previous_month(self) -> None:
        self._create("100", period="2025-06", description="every Sunday shift")
        self._create("-40", period="2025-06", category=VariableItemCategory.ADVANCE, label="Advance")
        consolidation = self.engine.consolidate(self.employee.id, PERIOD, "system")

        copied = copy_recurring_from_previous_month(self.db, self.employee.id, PERIOD, actor="hr.admin")

        self.assertEqual(len(copied), 1)
        item = copied[0]
        self.assertEqual(item.period, PERIOD)
        self.assertEqual(item.category, VariableItemCategory.BONUS)
        self.assertEqual(item.label, "Sunday bonus")
        self.assertEqual(item.amount, Decimal("100.00"))
        self.assertEqual(item.description, "every Sunday shift")
        self.assertEqual(item.status, VariableItemStatus.DRAFT)
        self.assertEqual(item.consolidation_id, consolidation.id)
        self.assertEqual(consolidation.variable_items_total, Decimal("100.00"))

        self.assertEqual(copy_recurring_from_previous_month(self.db, self.employee.id, PERIOD, actor="hr.admin"), [])
        self.assertEqual(len(list_variable_items(self.db, period=PERIOD)), 1)

    def test_copy_recurring_across_year_and_guards(self) -> None:
        self._create("75", period="2024-12", label="Year-end bonus")

        copied = copy_recurring_from_previous_month(self.db, self.employee.id, "2025-01", actor="hr.admin")
        self.assertEqual([item.label for item in copied], ["Year-end bonus"])
        self.assertIsNone(copied[0].consolidation_id)

        with self.assertRaises(NotFoundError):
            copy_recurring_from_previous_month(self.db, 999, "2025-01", actor="hr.admin")
        with self.assertRaises(ValidationError):
            copy_recurring_from_previous_month(self.db, self.employee.id, "2025-13", actor="hr.admin")

        consolidation = self.engine.consolidate(self.employee.id, PERIOD, "system")
        self.engine.validate(consolidation, "hr.admin")
        with self.assertRaises(InvalidStateError):
            copy_recurring_from_previous_month(self.db, self.employee.id, PERIOD, actor="hr.admin")

    def test_expected_sign_by_category(self) -> None:
        self.assertEqual(expected_sign(VariableItemCategory.BONUS), 1)
        self.assertEqual(expected_sign(VariableItemCategory.EXPENSE_REIMBURSEMENT), 1)
        self.assertEqual(expected_sign(VariableItemCategory.ADVANCE), -1)
        self.assertEqual(expected_sign(VariableItemCategory.DEDUCTION), -1)


if __name__ == "__main__":
    unittest.main()
