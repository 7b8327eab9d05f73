#!/usr/bin/env python
from __future__ import annotations

import argparse
import json
import sys
from dataclasses import asdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from payroll_ledger.db import SessionLocal
from payroll_ledger.errors import LedgerError
from payroll_ledger.logging_utils import setup_json_logging
from payroll_ledger.models import ConsolidationStatus
from payroll_ledger.services.consolidation import list_consolidations, month_stats
from payroll_ledger.services.facts import enqueue_validation_reminder
from payroll_ledger.services.leave_calc import format_period, parse_period, previous_period
from payroll_ledger.settings import get_settings


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Remind HR of payroll consolidations still waiting for validation.")
    parser.add_argument("year", type=int, nargs="?", default=None, help="defaults to the previous month's year")
    parser.add_argument("month", type=int, nargs="?", default=None, help="defaults to the previous month")
    parser.add_argument("--force", action="store_true", help="queue a reminder even when nothing is pending")
    parser.add_argument("--dry-run", action="store_true", help="report the reminder without queueing it")
    return parser.parse_args(argv)


def _target_period(args: argparse.Namespace) -> str:
    if args.year is not None and args.month is not None:
        return format_period(args.year, args.month)
    now = datetime.now(timezone.utc)
    return previous_period(format_period(now.year, now.month))


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)
    setup_json_logging(get_settings().log_level)
    period = _target_period(args)

    session = SessionLocal()
    try:
        parse_period(period)
        stats = month_stats(session, period)
        pending = list_consolidations(session, period=period, status=ConsolidationStatus.DRAFT)
        summary: dict[str, Any] = {
            "generated_at_utc": datetime.now(timezone.utc).isoformat(),
            "period": period,
            "dry_run": args.dry_run,
            "stats": asdict(stats),
            "pending": [
                {"consolidation_id": consolidation.id, "employee_id": consolidation.employee_id}
                for consolidation in pending
            ],
            "reminder_queued": False,
            "notification_job_id": None,
        }

        if pending or args.force:
            if not args.dry_run:
                job = enqueue_validation_reminder(session, period, pending)
                session.commit()
                summary["notification_job_id"] = job.id
            summary["reminder_queued"] = not args.dry_run
    except LedgerError as exc:
        print(json.dumps({"ok": False, "code": exc.code, "message": exc.message}, ensure_ascii=False, indent=2))
        return 2
    finally:
        session.close()

    print(json.dumps(summary, ensure_ascii=False, indent=2))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
