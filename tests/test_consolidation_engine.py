from __future__ import annotations

import unittest
from datetime import date
from decimal import Decimal
from unittest.mock import patch

from ledger_support import (
    RecordingNotifications,
    add_absence,
    add_employee,
    add_worked_days,
    make_session,
    state_of,
)
from sqlalchemy import select

from payroll_ledger.errors import ConflictError, InvalidStateError, NotFoundError, ValidationError
from payroll_ledger.models import (
    AbsenceStatus,
    AuditAction,
    Consolidation,
    ConsolidationStatus,
    CounterKind,
    LeaveCounter,
    NotificationJob,
    VariableItemCategory,
    WorkedDaySource,
)
from payroll_ledger.services import leave_counters
from payroll_ledger.services.audit_trail import decode_value, list_audit_trail
from payroll_ledger.services.consolidation import ConsolidationEngine, month_stats
from payroll_ledger.services.variable_items import create_variable_item, validate_variable_item

PERIOD = "2025-07"
PAID_LEAVE_KEY = "2025-2026"


class ConsolidationEngineTests(unittest.TestCase):
    def setUp(self) -> None:
        self.db = make_session()
        self.notifications = RecordingNotifications()
        self.engine = ConsolidationEngine(self.db, notifications=self.notifications)
        self.employee = add_employee(self.db, matricule="M-001", hire_date=date(2021, 9, 1))

        # Five days carried over from the previous paid-leave period.
        leave_counters.adjust(
            self.db,
            self.employee.id,
            CounterKind.PAID_LEAVE,
            "2024-2025",
            "5",
            comment="opening balance",
            actor="hr.admin",
        )
        add_worked_days(self.db, self.employee, date(2025, 7, 2), 10)
        add_worked_days(self.db, self.employee, date(2025, 7, 20), 2, source=WorkedDaySource.EVENT)
        add_absence(self.db, self.employee, "CP", date(2025, 7, 1), date(2025, 7, 1))

    def tearDown(self) -> None:
        self.db.close()

    def _consolidate(self) -> Consolidation:
        return self.engine.consolidate(self.employee.id, PERIOD, "system")

    def _paid_leave_counter(self) -> LeaveCounter | None:
        return leave_counters.find_counter(self.db, self.employee.id, CounterKind.PAID_LEAVE, PAID_LEAVE_KEY)

    def test_consolidate_aggregates_facts_and_leave_balance(self) -> None:
        consolidation = self._consolidate()

        self.assertEqual(consolidation.status, ConsolidationStatus.DRAFT)
        self.assertEqual(consolidation.days_worked_shifts, Decimal("10.00"))
        self.assertEqual(consolidation.days_worked_events, Decimal("2.00"))
        self.assertEqual(consolidation.total_days_worked, Decimal("12.00"))
        self.assertEqual(consolidation.absence_days_by_type, {"CP": "1.00"})
        self.assertEqual(consolidation.leave_balance_start, Decimal("5.00"))
        self.assertEqual(consolidation.leave_accrued, Decimal("2.50"))
        self.assertEqual(consolidation.leave_consumed, Decimal("1.00"))
        self.assertEqual(consolidation.leave_balance_end, Decimal("6.50"))

        entries = list_audit_trail(self.db, consolidation.id)
        self.assertEqual([entry.action for entry in entries], [AuditAction.CREATED])

    def test_non_deducting_absences_do_not_consume_leave(self) -> None:
        add_absence(self.db, self.employee, "MAL", date(2025, 7, 14), date(2025, 7, 15))
        add_absence(self.db, self.employee, "CPSS", date(2025, 7, 16), date(2025, 7, 16))
        add_absence(self.db, self.employee, "CP", date(2025, 7, 28), date(2025, 7, 28), status=AbsenceStatus.PENDING)

        consolidation = self._consolidate()

        self.assertEqual(consolidation.absence_days_by_type, {"CP": "1.00", "CPSS": "1.00", "MAL": "2.00"})
        self.assertEqual(consolidation.leave_consumed, Decimal("1.00"))

    def test_refresh_without_changed_facts_writes_nothing(self) -> None:
        first = self._consolidate()
        updated_at = first.updated_at

        second = self._consolidate()

        self.assertEqual(first.id, second.id)
        self.assertEqual(second.updated_at, updated_at)
        self.assertEqual(len(list_audit_trail(self.db, second.id)), 1)

    def test_refresh_logs_one_update_per_changed_field(self) -> None:
        consolidation = self._consolidate()
        add_worked_days(self.db, self.employee, date(2025, 7, 14), 1)
        add_absence(self.db, self.employee, "CP", date(2025, 7, 29), date(2025, 7, 29))

        self._consolidate()

        entries = list_audit_trail(self.db, consolidation.id)
        updated = {entry.field: entry for entry in entries if entry.action == AuditAction.UPDATED}
        self.assertEqual(
            set(updated),
            {"days_worked_shifts", "absence_days_by_type", "leave_consumed", "leave_balance_end"},
        )
        self.assertEqual(decode_value(updated["leave_balance_end"].old_value), Decimal("6.50"))
        self.assertEqual(decode_value(updated["leave_balance_end"].new_value), Decimal("5.50"))

    def test_unknown_employee_is_rejected(self) -> None:
        with self.assertRaises(NotFoundError):
            self.engine.consolidate(999, PERIOD, "system")

    def test_validate_posts_counters_and_notifies(self) -> None:
        consolidation = self._consolidate()

        self.engine.validate(consolidation, "hr.admin")

        self.assertEqual(consolidation.status, ConsolidationStatus.VALIDATED)
        self.assertEqual(consolidation.validated_by, "hr.admin")
        self.assertIsNotNone(consolidation.validated_at)
        self.assertEqual(self.notifications.validated, [consolidation.id])

        counter = self._paid_leave_counter()
        self.assertEqual(counter.current_balance, Decimal("6.50"))
        annual = leave_counters.find_counter(self.db, self.employee.id, CounterKind.ANNUAL_DAYS, "2025")
        self.assertEqual(annual.consumed, Decimal("12.00"))
        self.assertEqual(annual.current_balance, Decimal("246.00"))

    def test_reopen_keeps_validation_stamps_and_revalidation_does_not_double_post(self) -> None:
        consolidation = self._consolidate()
        self.engine.validate(consolidation, "hr.admin")
        validated_at = consolidation.validated_at

        self.engine.reopen(consolidation, "hr.admin", "typo in absence days")

        self.assertEqual(consolidation.status, ConsolidationStatus.DRAFT)
        self.assertEqual(consolidation.validated_at, validated_at)
        reopened = list_audit_trail(self.db, consolidation.id)[0]
        self.assertEqual(reopened.action, AuditAction.REOPENED)
        self.assertEqual(reopened.comment, "typo in absence days")

        refreshed = self._consolidate()
        self.assertEqual(refreshed.leave_balance_start, Decimal("5.00"))

        self.engine.correct_field(refreshed, "leave_consumed", "0", "hr.admin", "absence was recorded twice")
        self.assertEqual(refreshed.leave_balance_end, Decimal("7.50"))
        self.engine.validate(refreshed, "hr.admin")

        counter = self._paid_leave_counter()
        self.assertEqual(counter.accrued, Decimal("2.50"))
        self.assertEqual(counter.consumed, Decimal("0.00"))
        self.assertEqual(counter.current_balance, Decimal("7.50"))

    def test_balance_start_matches_counter_after_consolidation(self) -> None:
        consolidation = self._consolidate()

        self.assertEqual(consolidation.leave_balance_start, self._paid_leave_counter().current_balance)

    def test_postings_without_source_month_count_in_balance_start(self) -> None:
        args = (self.db, self.employee.id, CounterKind.PAID_LEAVE, PAID_LEAVE_KEY)
        leave_counters.accrue(*args, "3", comment="seniority days")
        leave_counters.consume(*args, "0.5", comment="half day taken before go-live")
        counter = self._paid_leave_counter()
        self.assertEqual(counter.current_balance, Decimal("7.50"))

        consolidation = self._consolidate()

        self.assertEqual(consolidation.leave_balance_start, Decimal("7.50"))
        self.assertEqual(consolidation.leave_balance_start, self._paid_leave_counter().current_balance)
        self.assertEqual(consolidation.leave_balance_end, Decimal("9.00"))

    def test_adjustment_after_validation_flows_into_revalidation(self) -> None:
        consolidation = self._consolidate()
        self.engine.validate(consolidation, "hr.admin")
        leave_counters.adjust(
            self.db,
            self.employee.id,
            CounterKind.PAID_LEAVE,
            PAID_LEAVE_KEY,
            "2",
            comment="days granted by agreement",
            actor="hr.admin",
        )
        self.assertEqual(self._paid_leave_counter().current_balance, Decimal("8.50"))

        self.engine.reopen(consolidation, "hr.admin", "balance adjusted")
        refreshed = self._consolidate()

        self.assertEqual(refreshed.leave_balance_start, Decimal("7.00"))
        self.assertEqual(refreshed.leave_balance_end, Decimal("8.50"))

        self.engine.validate(refreshed, "hr.admin")

        counter = self._paid_leave_counter()
        self.assertEqual(counter.accrued, Decimal("2.50"))
        self.assertEqual(counter.consumed, Decimal("1.00"))
        self.assertEqual(counter.current_balance, refreshed.leave_balance_end)

    def test_reopen_clears_negative_balance_override(self) -> None:
        consolidation = self._consolidate()
        self.engine.correct_field(consolidation, "leave_balance_start", "-10", "hr.admin", "imported debt")
        self.engine.validate(consolidation, "hr.admin", allow_negative_balance=True)
        self.assertTrue(consolidation.negative_balance_override)

        self.engine.reopen(consolidation, "hr.admin", "debt was larger")
        self.assertFalse(consolidation.negative_balance_override)
        self.engine.correct_field(consolidation, "leave_balance_start", "-50", "hr.admin", "full debt imported")
        self.assertEqual(consolidation.leave_balance_end, Decimal("-48.50"))

        messages = self.engine.check_validation(consolidation)
        self.assertEqual(len(messages), 1)
        self.assertIn("negative", messages[0])
        with self.assertRaises(ValidationError):
            self.engine.validate(consolidation, "hr.admin")
        self.assertEqual(consolidation.status, ConsolidationStatus.DRAFT)

        self.engine.validate(consolidation, "hr.admin", allow_negative_balance=True)
        self.assertEqual(consolidation.status, ConsolidationStatus.VALIDATED)
        self.assertTrue(consolidation.negative_balance_override)

    def test_next_month_starts_from_validated_balance(self) -> None:
        self.engine.validate(self._consolidate(), "hr.admin")

        august = self.engine.consolidate(self.employee.id, "2025-08", "system")

        self.assertEqual(august.leave_balance_start, Decimal("6.50"))
        self.assertEqual(august.leave_balance_end, Decimal("9.00"))

    def test_check_validation_lists_every_failure(self) -> None:
        consolidation = self._consolidate()
        create_variable_item(
            self.db,
            employee_id=self.employee.id,
            period=PERIOD,
            category=VariableItemCategory.BONUS,
            amount="150",
            label="Night bonus",
            actor="hr.admin",
        )
        self.engine.correct_field(consolidation, "leave_balance_start", "-10", "hr.admin", "imported debt")

        messages = self.engine.check_validation(consolidation)

        self.assertEqual(len(messages), 2)
        self.assertIn("negative", messages[0])
        self.assertIn("Night bonus", messages[1])
        self.assertEqual(messages, self.engine.check_validation(consolidation))

        with self.assertRaises(ValidationError) as ctx:
            self.engine.validate(consolidation, "hr.admin")
        self.assertEqual(ctx.exception.messages, messages)
        self.assertEqual(consolidation.status, ConsolidationStatus.DRAFT)

    def test_negative_balance_can_be_validated_with_override(self) -> None:
        consolidation = self._consolidate()
        self.engine.correct_field(consolidation, "leave_balance_start", "-10", "hr.admin", "imported debt")

        self.engine.validate(consolidation, "hr.admin", allow_negative_balance=True)

        self.assertEqual(consolidation.status, ConsolidationStatus.VALIDATED)
        self.assertTrue(consolidation.negative_balance_override)

    def test_inconsistent_balance_end_blocks_validation(self) -> None:
        consolidation = self._consolidate()
        consolidation.leave_balance_end = Decimal("9.99")

        messages = self.engine.check_validation(consolidation)

        self.assertEqual(len(messages), 1)
        self.assertIn("does not match", messages[0])

    def test_validated_items_allow_validation(self) -> None:
        consolidation = self._consolidate()
        item = create_variable_item(
            self.db,
            employee_id=self.employee.id,
            period=PERIOD,
            category=VariableItemCategory.ADVANCE,
            amount="-200",
            label="Salary advance",
            actor="hr.admin",
        )
        validate_variable_item(self.db, item.id, actor="hr.admin")

        self.engine.validate(consolidation, "hr.admin")

        self.assertEqual(consolidation.variable_items_total, Decimal("-200.00"))
        self.assertEqual(consolidation.status, ConsolidationStatus.VALIDATED)

    def test_full_lifecycle_is_audited(self) -> None:
        consolidation = self._consolidate()
        self.engine.validate(consolidation, "hr.admin")
        self.engine.mark_exported(consolidation, "hr.admin")
        self.engine.mark_sent_to_accountant(consolidation, "hr.admin")
        self.engine.archive(consolidation, "hr.admin")

        self.assertEqual(consolidation.status, ConsolidationStatus.ARCHIVED)
        self.assertIsNotNone(consolidation.exported_at)
        self.assertIsNotNone(consolidation.sent_to_accountant_at)
        self.assertEqual(
            [entry.action for entry in list_audit_trail(self.db, consolidation.id)],
            [
                AuditAction.ARCHIVED,
                AuditAction.UPDATED,
                AuditAction.EXPORTED,
                AuditAction.VALIDATED,
                AuditAction.CREATED,
            ],
        )

    def test_illegal_transitions_change_nothing(self) -> None:
        consolidation = self._consolidate()
        engine = self.engine
        illegal_by_status = {
            ConsolidationStatus.DRAFT: [
                lambda: engine.reopen(consolidation, "hr.admin", "why"),
                lambda: engine.mark_exported(consolidation, "hr.admin"),
                lambda: engine.mark_sent_to_accountant(consolidation, "hr.admin"),
                lambda: engine.archive(consolidation, "hr.admin"),
            ],
            ConsolidationStatus.VALIDATED: [
                lambda: engine.validate(consolidation, "hr.admin"),
                lambda: engine.consolidate(self.employee.id, PERIOD, "system"),
                lambda: engine.mark_sent_to_accountant(consolidation, "hr.admin"),
                lambda: engine.archive(consolidation, "hr.admin"),
            ],
            ConsolidationStatus.EXPORTED: [
                lambda: engine.validate(consolidation, "hr.admin"),
                lambda: engine.mark_exported(consolidation, "hr.admin"),
                lambda: engine.consolidate(self.employee.id, PERIOD, "system"),
            ],
            ConsolidationStatus.ARCHIVED: [
                lambda: engine.validate(consolidation, "hr.admin"),
                lambda: engine.reopen(consolidation, "hr.admin", "why"),
                lambda: engine.mark_exported(consolidation, "hr.admin"),
                lambda: engine.archive(consolidation, "hr.admin"),
            ],
        }
        advance = {
            ConsolidationStatus.DRAFT: lambda: engine.validate(consolidation, "hr.admin"),
            ConsolidationStatus.VALIDATED: lambda: engine.mark_exported(consolidation, "hr.admin"),
            ConsolidationStatus.EXPORTED: lambda: engine.archive(consolidation, "hr.admin"),
        }

        for current_status, operations in illegal_by_status.items():
            self.assertEqual(consolidation.status, current_status)
            for operation in operations:
                before = state_of(consolidation)
                with self.subTest(status=current_status):
                    with self.assertRaises(InvalidStateError) as ctx:
                        operation()
                    self.assertEqual(ctx.exception.current_state, current_status.value)
                self.assertEqual(state_of(consolidation), before)
            if current_status in advance:
                advance[current_status]()

    def test_correction_requires_comment_and_known_field(self) -> None:
        consolidation = self._consolidate()
        before = state_of(consolidation)

        with self.assertRaises(ValidationError):
            self.engine.correct_field(consolidation, "leave_consumed", "0", "hr.admin", " ")
        with self.assertRaises(ValidationError):
            self.engine.correct_field(consolidation, "status", "VALIDATED", "hr.admin", "skip checks")
        with self.assertRaises(ValidationError):
            self.engine.correct_field(consolidation, "leave_accrued", "-1", "hr.admin", "negative")

        self.assertEqual(state_of(consolidation), before)

    def test_correction_on_validated_record_writes_one_entry_and_notifies(self) -> None:
        consolidation = self._consolidate()
        self.engine.validate(consolidation, "hr.admin")
        entries_before = len(list_audit_trail(self.db, consolidation.id))

        self.engine.correct_field(
            consolidation,
            "absence_days_by_type",
            {"CP": "1", "MAL": 2},
            "hr.admin",
            "sick note received late",
        )

        entries = list_audit_trail(self.db, consolidation.id)
        self.assertEqual(len(entries), entries_before + 1)
        self.assertEqual(entries[0].action, AuditAction.CORRECTION)
        self.assertEqual(decode_value(entries[0].old_value), {"CP": "1.00"})
        self.assertEqual(decode_value(entries[0].new_value), {"CP": "1.00", "MAL": "2.00"})
        self.assertEqual(consolidation.status, ConsolidationStatus.VALIDATED)
        self.assertEqual(
            self.notifications.corrected,
            [(consolidation.id, "absence_days_by_type", "sick note received late")],
        )

    def test_concurrent_create_surfaces_as_conflict(self) -> None:
        self._consolidate()

        with patch("payroll_ledger.services.consolidation.find_consolidation", return_value=None):
            with self.assertRaises(ConflictError):
                self._consolidate()

    def test_month_operations_and_stats(self) -> None:
        other = add_employee(self.db, full_name="Sam Rivera", matricule="M-002")
        create_variable_item(
            self.db,
            employee_id=other.id,
            period=PERIOD,
            category=VariableItemCategory.BONUS,
            amount="50",
            label="Referral bonus",
            actor="hr.admin",
        )

        outcomes = self.engine.consolidate_month(PERIOD, "system")
        self.assertEqual([outcome.outcome for outcome in outcomes], ["created", "created"])

        results = {result.employee_id: result for result in self.engine.validate_month(PERIOD, "hr.admin")}
        self.assertTrue(results[self.employee.id].validated)
        self.assertFalse(results[other.id].validated)
        self.assertIn("Referral bonus", results[other.id].messages[0])

        stats = month_stats(self.db, PERIOD)
        self.assertEqual(stats.total, 2)
        self.assertEqual(stats.draft, 1)
        self.assertEqual(stats.finalized, 1)
        self.assertEqual(stats.completion_rate, 50.0)

        rerun = self.engine.consolidate_month(PERIOD, "system", refresh=False)
        self.assertEqual([outcome.outcome for outcome in rerun], ["skipped", "skipped"])


class NotificationOutboxTests(unittest.TestCase):
    def test_default_sink_writes_pending_jobs_in_the_same_transaction(self) -> None:
        db = make_session()
        try:
            employee = add_employee(db)
            engine = ConsolidationEngine(db)
            consolidation = engine.consolidate(employee.id, PERIOD, "system")

            engine.validate(consolidation, "hr.admin")

            jobs = list(db.scalars(select(NotificationJob)).all())
            self.assertEqual(len(jobs), 1)
            self.assertEqual(jobs[0].job_type, "CONSOLIDATION_VALIDATED")
            self.assertEqual(jobs[0].status, "PENDING")
            self.assertEqual(jobs[0].payload["consolidation_id"], consolidation.id)
        finally:
            db.close()


if __name__ == "__main__":
    unittest.main()
