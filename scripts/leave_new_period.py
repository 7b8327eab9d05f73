#!/usr/bin/env python
from __future__ import annotations

import argparse
import json
import sys
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any

from sqlalchemy import select

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from payroll_ledger.db import SessionLocal
from payroll_ledger.errors import LedgerError
from payroll_ledger.logging_utils import setup_json_logging
from payroll_ledger.models import CounterKind, Employee
from payroll_ledger.services.leave_calc import period_key_for, previous_period_key
from payroll_ledger.services.leave_counters import find_counter, open_period
from payroll_ledger.settings import get_settings


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Open a new leave counter period with balance carry-over.")
    parser.add_argument("--kind", choices=[kind.value for kind in CounterKind], default=CounterKind.PAID_LEAVE.value)
    parser.add_argument("--period-key", default=None, help="defaults to the period containing today")
    parser.add_argument("--dry-run", action="store_true", help="report carried-over balances without writing")
    parser.add_argument("--actor", default="system")
    return parser.parse_args(argv)


def _preview(session, kind: CounterKind, period_key: str) -> list[dict[str, Any]]:  # type: ignore[no-untyped-def]
    previous_key = previous_period_key(kind, period_key)
    employees = session.scalars(select(Employee).where(Employee.is_active.is_(True)).order_by(Employee.id.asc())).all()

    rows: list[dict[str, Any]] = []
    for employee in employees:
        if find_counter(session, employee.id, kind, period_key) is not None:
            continue
        previous = find_counter(session, employee.id, kind, previous_key)
        rows.append(
            {
                "employee_id": employee.id,
                "full_name": employee.full_name,
                "carried_over": str(previous.current_balance) if previous is not None else "0.00",
            }
        )
    return rows


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)
    setup_json_logging(get_settings().log_level)
    kind = CounterKind(args.kind)
    today = date.today()
    period_key = args.period_key or period_key_for(kind, today.year, today.month)

    session = SessionLocal()
    try:
        if args.dry_run:
            rows = _preview(session, kind, period_key)
        else:
            rows = [
                {
                    "employee_id": counter.employee_id,
                    "counter_id": counter.id,
                    "carried_over": str(counter.initial_balance),
                }
                for counter in open_period(session, kind, period_key, actor=args.actor)
            ]
    except LedgerError as exc:
        print(json.dumps({"ok": False, "code": exc.code, "message": exc.message}, ensure_ascii=False, indent=2))
        return 2
    finally:
        session.close()

    print(
        json.dumps(
            {
                "generated_at_utc": datetime.now(timezone.utc).isoformat(),
                "kind": kind.value,
                "period_key": period_key,
                "dry_run": args.dry_run,
                "counters": rows,
            },
            ensure_ascii=False,
            indent=2,
        )
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
