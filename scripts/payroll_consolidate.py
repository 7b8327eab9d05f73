#!/usr/bin/env python
from __future__ import annotations

import argparse
import json
import sys
from dataclasses import asdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from sqlalchemy import select

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from payroll_ledger.db import SessionLocal
from payroll_ledger.errors import LedgerError
from payroll_ledger.logging_utils import setup_json_logging
from payroll_ledger.models import ConsolidationStatus, Employee
from payroll_ledger.services.consolidation import ConsolidationEngine, find_consolidation
from payroll_ledger.services.leave_calc import format_period, parse_period
from payroll_ledger.settings import get_settings


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Build the monthly payroll consolidations.")
    parser.add_argument("year", type=int)
    parser.add_argument("month", type=int)
    parser.add_argument("--refresh", action="store_true", help="recompute existing DRAFT consolidations")
    parser.add_argument("--employee", type=int, default=None, help="only consolidate this employee id")
    parser.add_argument("--dry-run", action="store_true", help="report what would be done without writing")
    parser.add_argument("--actor", default="system")
    return parser.parse_args(argv)


def _plan(session, period: str, *, refresh: bool, employee_id: int | None) -> list[dict[str, Any]]:  # type: ignore[no-untyped-def]
    stmt = select(Employee).where(Employee.is_active.is_(True)).order_by(Employee.id.asc())
    if employee_id is not None:
        stmt = stmt.where(Employee.id == employee_id)

    plan: list[dict[str, Any]] = []
    for employee in session.scalars(stmt).all():
        existing = find_consolidation(session, employee.id, period)
        if existing is None:
            action = "create"
        elif existing.status == ConsolidationStatus.DRAFT and refresh:
            action = "refresh"
        else:
            action = "skip"
        plan.append(
            {
                "employee_id": employee.id,
                "full_name": employee.full_name,
                "action": action,
                "current_status": existing.status.value if existing is not None else None,
            }
        )
    return plan


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)
    setup_json_logging(get_settings().log_level)
    period = format_period(args.year, args.month)

    session = SessionLocal()
    try:
        parse_period(period)
        if args.dry_run:
            summary: dict[str, Any] = {
                "generated_at_utc": datetime.now(timezone.utc).isoformat(),
                "period": period,
                "dry_run": True,
                "plan": _plan(session, period, refresh=args.refresh, employee_id=args.employee),
            }
            print(json.dumps(summary, ensure_ascii=False, indent=2))
            return 0

        outcomes = ConsolidationEngine(session).consolidate_month(
            period,
            args.actor,
            refresh=args.refresh,
            employee_id=args.employee,
        )
    except LedgerError as exc:
        print(json.dumps({"ok": False, "code": exc.code, "message": exc.message}, ensure_ascii=False, indent=2))
        return 2
    finally:
        session.close()

    failed = [outcome for outcome in outcomes if outcome.outcome == "failed"]
    summary = {
        "generated_at_utc": datetime.now(timezone.utc).isoformat(),
        "period": period,
        "dry_run": False,
        "ok": not failed,
        "outcomes": [asdict(outcome) for outcome in outcomes],
    }
    print(json.dumps(summary, ensure_ascii=False, indent=2))
    return 1 if failed else 0


if __name__ == "__main__":
    raise SystemExit(main())
