from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Protocol

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from payroll_ledger.models import (
    Absence,
    AbsenceStatus,
    Consolidation,
    NotificationJob,
    WorkedDayFact,
    WorkedDaySource,
)
from payroll_ledger.services.leave_calc import count_weekdays, month_bounds, quantize_days
from payroll_ledger.settings import get_settings

logger = logging.getLogger("payroll_ledger.facts")

JOB_TYPE_CONSOLIDATION_VALIDATED = "CONSOLIDATION_VALIDATED"
JOB_TYPE_CONSOLIDATION_CORRECTED = "CONSOLIDATION_CORRECTED"
JOB_TYPE_VALIDATION_REMINDER = "PAYROLL_VALIDATION_REMINDER"


@dataclass(frozen=True)
class WorkedDays:
    shift_days: Decimal
    event_days: Decimal


class AttendanceFactsProvider(Protocol):
    def worked_days(self, employee_id: int, year: int, month: int) -> WorkedDays: ...


class AbsenceFactsProvider(Protocol):
    def absence_days(self, employee_id: int, year: int, month: int) -> dict[str, Decimal]: ...


class NotificationSink(Protocol):
    def on_validated(self, consolidation: Consolidation) -> None: ...

    def on_corrected(self, consolidation: Consolidation, field: str, comment: str) -> None: ...


class SqlAttendanceFacts:
    def __init__(self, db: Session) -> None:
        self.db = db

    def worked_days(self, employee_id: int, year: int, month: int) -> WorkedDays:
        start, end = month_bounds(year, month)
        rows = self.db.execute(
            select(WorkedDayFact.source, func.coalesce(func.sum(WorkedDayFact.days), 0))
            .where(
                WorkedDayFact.employee_id == employee_id,
                WorkedDayFact.day_date >= start,
                WorkedDayFact.day_date <= end,
            )
            .group_by(WorkedDayFact.source)
        ).all()
        totals = {source: quantize_days(Decimal(str(total))) for source, total in rows}
        return WorkedDays(
            shift_days=totals.get(WorkedDaySource.SHIFT, Decimal("0.00")),
            event_days=totals.get(WorkedDaySource.EVENT, Decimal("0.00")),
        )


class SqlAbsenceFacts:
    """Approved absences, counted in working days (Monday to Friday) inside the month."""

    def __init__(self, db: Session) -> None:
        self.db = db

    def absence_days(self, employee_id: int, year: int, month: int) -> dict[str, Decimal]:
        start, end = month_bounds(year, month)
        absences = self.db.scalars(
            select(Absence)
            .where(
                Absence.employee_id == employee_id,
                Absence.status == AbsenceStatus.APPROVED,
                Absence.start_date <= end,
                Absence.end_date >= start,
            )
            .order_by(Absence.start_date.asc(), Absence.id.asc())
        ).all()

        totals: dict[str, Decimal] = {}
        for absence in absences:
            days = count_weekdays(max(absence.start_date, start), min(absence.end_date, end))
            if days <= 0:
                continue
            totals[absence.type_code] = totals.get(absence.type_code, Decimal("0")) + Decimal(days)
        return {code: quantize_days(days) for code, days in sorted(totals.items())}


class NotificationJobSink:
    """Writes pending notification jobs in the caller's transaction."""

    def __init__(self, db: Session) -> None:
        self.db = db

    def _enqueue(self, consolidation: Consolidation, job_type: str, payload: dict[str, Any]) -> NotificationJob:
        delay = timedelta(seconds=max(0, get_settings().notification_default_delay_seconds))
        job = NotificationJob(
            employee_id=consolidation.employee_id,
            job_type=job_type,
            payload=payload,
            scheduled_at_utc=datetime.now(timezone.utc) + delay,
            status="PENDING",
            attempts=0,
            idempotency_key=f"{job_type}:{consolidation.id}:{uuid.uuid4().hex}",
        )
        self.db.add(job)
        logger.info(
            "notification_job_enqueued",
            extra={"job_type": job_type, "consolidation_id": consolidation.id},
        )
        return job

    def on_validated(self, consolidation: Consolidation) -> None:
        self._enqueue(
            consolidation,
            JOB_TYPE_CONSOLIDATION_VALIDATED,
            {
                "consolidation_id": consolidation.id,
                "period": consolidation.period,
                "validated_by": consolidation.validated_by,
            },
        )

    def on_corrected(self, consolidation: Consolidation, field: str, comment: str) -> None:
        self._enqueue(
            consolidation,
            JOB_TYPE_CONSOLIDATION_CORRECTED,
            {
                "consolidation_id": consolidation.id,
                "period": consolidation.period,
                "status": consolidation.status.value,
                "field": field,
                "comment": comment,
            },
        )


def enqueue_validation_reminder(db: Session, period: str, pending: list[Consolidation]) -> NotificationJob:
    """Queue one reminder listing the consolidations of ``period`` still waiting for validation."""
    delay = timedelta(seconds=max(0, get_settings().notification_default_delay_seconds))
    job = NotificationJob(
        employee_id=None,
        job_type=JOB_TYPE_VALIDATION_REMINDER,
        payload={
            "period": period,
            "pending": [
                {"consolidation_id": consolidation.id, "employee_id": consolidation.employee_id}
                for consolidation in pending
            ],
        },
        scheduled_at_utc=datetime.now(timezone.utc) + delay,
        status="PENDING",
        attempts=0,
        idempotency_key=f"{JOB_TYPE_VALIDATION_REMINDER}:{period}:{uuid.uuid4().hex}",
    )
    db.add(job)
    logger.info(
        "notification_job_enqueued",
        extra={"job_type": JOB_TYPE_VALIDATION_REMINDER, "period": period, "pending": len(pending)},
    )
    return job
