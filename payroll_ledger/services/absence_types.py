from __future__ import annotations

from dataclasses import dataclass

from payroll_ledger.errors import NotFoundError
from payroll_ledger.settings import get_settings

SICK_LEAVE_CODE = "MAL"


@dataclass(frozen=True)
class AbsenceType:
    code: str
    label: str
    deducts_from_counter: bool
    requires_justification: bool
    justification_deadline_days: int | None = None


ABSENCE_TYPES: dict[str, AbsenceType] = {
    item.code: item
    for item in (
        AbsenceType("CP", "Paid leave", deducts_from_counter=True, requires_justification=False),
        AbsenceType(
            SICK_LEAVE_CODE,
            "Sick leave",
            deducts_from_counter=False,
            requires_justification=True,
            justification_deadline_days=2,
        ),
        AbsenceType(
            "AT",
            "Workplace accident",
            deducts_from_counter=False,
            requires_justification=True,
            justification_deadline_days=1,
        ),
        AbsenceType("CPSS", "Unpaid leave", deducts_from_counter=False, requires_justification=False),
        AbsenceType("REUNION", "Meeting", deducts_from_counter=False, requires_justification=False),
    )
}


def get_absence_type(code: str) -> AbsenceType:
    absence_type = ABSENCE_TYPES.get(code)
    if absence_type is None:
        raise NotFoundError("AbsenceType", code)
    return absence_type


def deducts_from_counter(code: str) -> bool:
    absence_type = ABSENCE_TYPES.get(code)
    if absence_type is None:
        return code == get_settings().paid_leave_counter_code
    return absence_type.deducts_from_counter


def list_absence_types() -> list[AbsenceType]:
    return sorted(ABSENCE_TYPES.values(), key=lambda item: item.code)
