from datetime import datetime
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from payroll_ledger.models import (
    AuditAction,
    AuditActorType,
    ConsolidationStatus,
    CounterKind,
    MovementKind,
    VariableItemCategory,
    VariableItemStatus,
)


class ConsolidationRead(BaseModel):
    id: int
    employee_id: int
    period: str
    status: ConsolidationStatus
    days_worked_shifts: Decimal
    days_worked_events: Decimal
    total_days_worked: Decimal
    absence_days_by_type: dict[str, Decimal] = Field(default_factory=dict)
    leave_balance_start: Decimal
    leave_accrued: Decimal
    leave_consumed: Decimal
    leave_balance_end: Decimal
    variable_items_total: Decimal
    negative_balance_override: bool
    validated_by: str | None = None
    validated_at: datetime | None = None
    exported_at: datetime | None = None
    sent_to_accountant_at: datetime | None = None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class ConsolidateRequest(BaseModel):
    employee_id: int = Field(ge=1)
    period: str


class ConsolidateMonthRequest(BaseModel):
    period: str
    refresh: bool = True
    employee_id: int | None = Field(default=None, ge=1)


class ConsolidationOutcomeRead(BaseModel):
    employee_id: int
    outcome: str
    consolidation_id: int | None = None
    message: str | None = None

    model_config = ConfigDict(from_attributes=True)


class ValidateRequest(BaseModel):
    allow_negative_balance: bool = False


class ValidateMonthRequest(BaseModel):
    period: str
    allow_negative_balance: bool = False


class ValidationCheckResponse(BaseModel):
    consolidation_id: int
    can_validate: bool
    messages: list[str] = Field(default_factory=list)


class ValidationOutcomeRead(BaseModel):
    consolidation_id: int
    employee_id: int
    validated: bool
    messages: list[str] = Field(default_factory=list)

    model_config = ConfigDict(from_attributes=True)


class ReopenRequest(BaseModel):
    reason: str


class CorrectionRequest(BaseModel):
    field: str
    new_value: Any
    comment: str


class MonthStatsRead(BaseModel):
    period: str
    total: int
    draft: int
    validated: int
    exported: int
    archived: int
    finalized: int
    completion_rate: float

    model_config = ConfigDict(from_attributes=True)


class AuditEntryRead(BaseModel):
    id: int
    consolidation_id: int
    action: AuditAction
    actor: str
    field: str | None = None
    old_value: Any = None
    new_value: Any = None
    comment: str | None = None
    created_at: datetime


class LeaveCounterRead(BaseModel):
    id: int
    employee_id: int
    kind: CounterKind
    period_key: str
    initial_balance: Decimal
    accrued: Decimal
    consumed: Decimal
    manual_adjustment: Decimal
    adjustment_comment: str | None = None
    current_balance: Decimal
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class LeaveCounterMovementRead(BaseModel):
    id: int
    kind: MovementKind
    days: Decimal
    source_period: str | None = None
    actor: str
    comment: str | None = None
    created_at: datetime
    balance_after: Decimal


class LeaveCounterRef(BaseModel):
    employee_id: int = Field(ge=1)
    kind: CounterKind
    period_key: str


class LeaveCounterPostRequest(LeaveCounterRef):
    days: Decimal
    source_period: str | None = None
    comment: str | None = None


class LeaveCounterAdjustRequest(LeaveCounterRef):
    delta: Decimal
    comment: str


class VariableItemCreateRequest(BaseModel):
    employee_id: int = Field(ge=1)
    period: str
    category: VariableItemCategory
    amount: Decimal
    label: str = Field(max_length=255)
    description: str | None = None


class VariableItemUpdateRequest(BaseModel):
    category: VariableItemCategory | None = None
    amount: Decimal | None = None
    label: str | None = Field(default=None, max_length=255)
    description: str | None = None


class VariableItemCorrectionRequest(VariableItemUpdateRequest):
    comment: str


class VariableItemCopyRequest(BaseModel):
    employee_id: int = Field(ge=1)
    period: str


class BulkValidationRead(BaseModel):
    consolidation_id: int
    validated: int


class VariableItemRead(BaseModel):
    id: int
    employee_id: int
    period: str
    category: VariableItemCategory
    amount: Decimal
    label: str
    description: str | None = None
    status: VariableItemStatus
    consolidation_id: int | None = None
    validated_by: str | None = None
    validated_at: datetime | None = None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class PayrollExportRowRead(BaseModel):
    period: str
    consolidation_id: int
    employee_id: int
    matricule: str | None = None
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

    model_config = ConfigDict(from_attributes=True)


class AuditLogRead(BaseModel):
    id: int
    ts_utc: datetime
    actor_type: AuditActorType
    actor_id: str
    action: str
    entity_type: str | None = None
    entity_id: str | None = None
    period: str | None = None
    consolidation_id: int | None = None
    ip: str | None = None
    user_agent: str | None = None
    success: bool
    details: dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(from_attributes=True)


class AbsenceTypeRead(BaseModel):
    code: str
    label: str
    deducts_from_counter: bool
    requires_justification: bool
    justification_deadline_days: int | None = None

    model_config = ConfigDict(from_attributes=True)
