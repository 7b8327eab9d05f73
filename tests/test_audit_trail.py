from __future__ import annotations

import unittest
from datetime import date, datetime, timezone
from decimal import Decimal

from ledger_support import add_employee, make_session

from payroll_ledger.models import AuditAction, Consolidation, ConsolidationStatus
from payroll_ledger.services.audit_trail import decode_value, encode_value, list_audit_trail, record


class AuditValueEncodingTests(unittest.TestCase):
    def test_values_round_trip_exactly(self) -> None:
        value = {
            "days": Decimal("2.50"),
            "absences": {"CP": "1.00", "MAL": "2.00"},
            "when": datetime(2025, 7, 1, 8, 30, tzinfo=timezone.utc),
            "day": date(2025, 7, 1),
            "status": ConsolidationStatus.VALIDATED,
            "items": [Decimal("-10.00"), None, True],
        }

        decoded = decode_value(encode_value(value))

        self.assertEqual(decoded["days"], Decimal("2.50"))
        self.assertEqual(str(decoded["days"]), "2.50")
        self.assertEqual(decoded["absences"], {"CP": "1.00", "MAL": "2.00"})
        self.assertEqual(decoded["when"], datetime(2025, 7, 1, 8, 30, tzinfo=timezone.utc))
        self.assertEqual(decoded["day"], date(2025, 7, 1))
        self.assertEqual(decoded["status"], "VALIDATED")
        self.assertEqual(decoded["items"], [Decimal("-10.00"), None, True])

    def test_none_is_stored_as_null(self) -> None:
        self.assertIsNone(encode_value(None))
        self.assertIsNone(decode_value(None))


class AuditTrailTests(unittest.TestCase):
    def setUp(self) -> None:
        self.db = make_session()
        employee = add_employee(self.db)
        self.consolidation = Consolidation(employee_id=employee.id, period="2025-07")
        self.db.add(self.consolidation)
        self.db.commit()

    def tearDown(self) -> None:
        self.db.close()

    def test_entries_are_listed_newest_first(self) -> None:
        record(self.db, self.consolidation, AuditAction.CREATED, "system")
        self.db.commit()
        record(
            self.db,
            self.consolidation,
            AuditAction.CORRECTION,
            "hr.admin",
            field="leave_consumed",
            old=Decimal("1.00"),
            new=Decimal("0.00"),
            comment="typo",
        )
        self.db.commit()

        entries = list_audit_trail(self.db, self.consolidation.id)

        self.assertEqual([entry.action for entry in entries], [AuditAction.CORRECTION, AuditAction.CREATED])
        self.assertEqual(decode_value(entries[0].old_value), Decimal("1.00"))
        self.assertEqual(entries[0].comment, "typo")
        self.assertEqual(entries[0].actor, "hr.admin")


if __name__ == "__main__":
    unittest.main()
