from __future__ import annotations

import enum
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from payroll_ledger.db import Base

JSONDocument = JSON().with_variant(JSONB(), "postgresql")
DAYS = Numeric(10, 2)
MONEY = Numeric(12, 2)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CounterKind(str, enum.Enum):
    ANNUAL_DAYS = "ANNUAL_DAYS"
    PAID_LEAVE = "PAID_LEAVE"


class MovementKind(str, enum.Enum):
    ACCRUAL = "ACCRUAL"
    CONSUMPTION = "CONSUMPTION"
    ADJUSTMENT = "ADJUSTMENT"


class VariableItemCategory(str, enum.Enum):
    BONUS = "BONUS"
    EXCEPTIONAL_BONUS = "EXCEPTIONAL_BONUS"
    ADVANCE = "ADVANCE"
    DRAW_DOWN = "DRAW_DOWN"
    EXPENSE_REIMBURSEMENT = "EXPENSE_REIMBURSEMENT"
    TRANSPORT_ALLOWANCE = "TRANSPORT_ALLOWANCE"
    DEDUCTION = "DEDUCTION"


class VariableItemStatus(str, enum.Enum):
    DRAFT = "DRAFT"
    VALIDATED = "VALIDATED"


class ConsolidationStatus(str, enum.Enum):
    DRAFT = "DRAFT"
    VALIDATED = "VALIDATED"
    EXPORTED = "EXPORTED"
    ARCHIVED = "ARCHIVED"


class AuditAction(str, enum.Enum):
    CREATED = "CREATED"
    UPDATED = "UPDATED"
    CORRECTION = "CORRECTION"
    VALIDATED = "VALIDATED"
    REOPENED = "REOPENED"
    EXPORTED = "EXPORTED"
    ARCHIVED = "ARCHIVED"


class AuditActorType(str, enum.Enum):
    ADMIN = "ADMIN"
    SYSTEM = "SYSTEM"


class WorkedDaySource(str, enum.Enum):
    SHIFT = "SHIFT"
    EVENT = "EVENT"


class AbsenceStatus(str, enum.Enum):
    APPROVED = "APPROVED"
    PENDING = "PENDING"
    REJECTED = "REJECTED"


class Employee(Base):
    __tablename__ = "employees"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    full_name: Mapped[str] = mapped_column(String(255), nullable=False)
    matricule: Mapped[str | None] = mapped_column(String(50), nullable=True, unique=True)
    hire_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=text("true"))

    leave_counters: Mapped[list[LeaveCounter]] = relationship(back_populates="employee")
    consolidations: Mapped[list[Consolidation]] = relationship(back_populates="employee")
    variable_items: Mapped[list[VariableItem]] = relationship(back_populates="employee")


class WorkedDayFact(Base):
    __tablename__ = "worked_day_facts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    employee_id: Mapped[int] = mapped_column(
        ForeignKey("employees.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    day_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    source: Mapped[WorkedDaySource] = mapped_column(
        Enum(WorkedDaySource, name="worked_day_source"),
        nullable=False,
    )
    days: Mapped[Decimal] = mapped_column(DAYS, nullable=False, default=Decimal("1"))


class Absence(Base):
    __tablename__ = "absences"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    employee_id: Mapped[int] = mapped_column(
        ForeignKey("employees.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    type_code: Mapped[str] = mapped_column(String(20), nullable=False)
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date] = mapped_column(Date, nullable=False)
    status: Mapped[AbsenceStatus] = mapped_column(
        Enum(AbsenceStatus, name="absence_status"),
        nullable=False,
        default=AbsenceStatus.PENDING,
    )


class LeaveCounter(Base):
    __tablename__ = "leave_counters"
    __table_args__ = (
        UniqueConstraint("employee_id", "kind", "period_key", name="uq_leave_counters_employee_kind_period"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    employee_id: Mapped[int] = mapped_column(
        ForeignKey("employees.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    kind: Mapped[CounterKind] = mapped_column(Enum(CounterKind, name="leave_counter_kind"), nullable=False)
    period_key: Mapped[str] = mapped_column(String(9), nullable=False)
    initial_balance: Mapped[Decimal] = mapped_column(DAYS, nullable=False, default=Decimal("0"))
    accrued: Mapped[Decimal] = mapped_column(DAYS, nullable=False, default=Decimal("0"))
    consumed: Mapped[Decimal] = mapped_column(DAYS, nullable=False, default=Decimal("0"))
    manual_adjustment: Mapped[Decimal] = mapped_column(DAYS, nullable=False, default=Decimal("0"))
    adjustment_comment: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)

    employee: Mapped[Employee] = relationship(back_populates="leave_counters")
    movements: Mapped[list[LeaveCounterMovement]] = relationship(
        back_populates="counter",
        cascade="all, delete-orphan",
        order_by="LeaveCounterMovement.id",
    )

    @property
    def current_balance(self) -> Decimal:
        return (
            Decimal(self.initial_balance or 0)
            + Decimal(self.accrued or 0)
            - Decimal(self.consumed or 0)
            + Decimal(self.manual_adjustment or 0)
        )

    def touch_updated_at(self) -> None:
        self.updated_at = _utcnow()


class LeaveCounterMovement(Base):
    __tablename__ = "leave_counter_movements"
    __table_args__ = (
        UniqueConstraint(
            "counter_id",
            "kind",
            "source_period",
            name="uq_leave_counter_movements_counter_kind_source",
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    counter_id: Mapped[int] = mapped_column(
        ForeignKey("leave_counters.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    kind: Mapped[MovementKind] = mapped_column(Enum(MovementKind, name="leave_movement_kind"), nullable=False)
    days: Mapped[Decimal] = mapped_column(DAYS, nullable=False)
    source_period: Mapped[str | None] = mapped_column(String(7), nullable=True)
    actor: Mapped[str] = mapped_column(String(255), nullable=False, default="system")
    comment: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)

    counter: Mapped[LeaveCounter] = relationship(back_populates="movements")

    @property
    def signed_days(self) -> Decimal:
        if self.kind == MovementKind.CONSUMPTION:
            return -Decimal(self.days)
        return Decimal(self.days)


class Consolidation(Base):
    __tablename__ = "consolidations"
    __table_args__ = (
        UniqueConstraint("employee_id", "period", name="uq_consolidations_employee_period"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    employee_id: Mapped[int] = mapped_column(
        ForeignKey("employees.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    period: Mapped[str] = mapped_column(String(7), nullable=False, index=True)
    status: Mapped[ConsolidationStatus] = mapped_column(
        Enum(ConsolidationStatus, name="consolidation_status"),
        nullable=False,
        default=ConsolidationStatus.DRAFT,
        index=True,
    )
    days_worked_shifts: Mapped[Decimal] = mapped_column(DAYS, nullable=False, default=Decimal("0"))
    days_worked_events: Mapped[Decimal] = mapped_column(DAYS, nullable=False, default=Decimal("0"))
    absence_days_by_type: Mapped[dict[str, Any]] = mapped_column(JSONDocument, nullable=False, default=dict)
    leave_balance_start: Mapped[Decimal] = mapped_column(DAYS, nullable=False, default=Decimal("0"))
    leave_accrued: Mapped[Decimal] = mapped_column(DAYS, nullable=False, default=Decimal("0"))
    leave_consumed: Mapped[Decimal] = mapped_column(DAYS, nullable=False, default=Decimal("0"))
    leave_balance_end: Mapped[Decimal] = mapped_column(DAYS, nullable=False, default=Decimal("0"))
    variable_items_total: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0"))
    negative_balance_override: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        server_default=text("false"),
    )
    validated_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    validated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    exported_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    sent_to_accountant_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)

    employee: Mapped[Employee] = relationship(back_populates="consolidations")
    variable_items: Mapped[list[VariableItem]] = relationship(back_populates="consolidation")
    audit_entries: Mapped[list[ConsolidationAuditEntry]] = relationship(
        back_populates="consolidation",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    @property
    def total_days_worked(self) -> Decimal:
        return Decimal(self.days_worked_shifts or 0) + Decimal(self.days_worked_events or 0)

    @property
    def total_absence_days(self) -> Decimal:
        return sum((Decimal(str(value)) for value in (self.absence_days_by_type or {}).values()), Decimal("0"))

    @property
    def expected_leave_balance_end(self) -> Decimal:
        return (
            Decimal(self.leave_balance_start or 0)
            + Decimal(self.leave_accrued or 0)
            - Decimal(self.leave_consumed or 0)
        )

    def recalculate_leave_balance_end(self) -> None:
        self.leave_balance_end = self.expected_leave_balance_end

    def touch_updated_at(self) -> None:
        self.updated_at = _utcnow()


class VariableItem(Base):
    __tablename__ = "variable_items"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    employee_id: Mapped[int] = mapped_column(
        ForeignKey("employees.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    period: Mapped[str] = mapped_column(String(7), nullable=False, index=True)
    category: Mapped[VariableItemCategory] = mapped_column(
        Enum(VariableItemCategory, name="variable_item_category"),
        nullable=False,
    )
    amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    label: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[VariableItemStatus] = mapped_column(
        Enum(VariableItemStatus, name="variable_item_status"),
        nullable=False,
        default=VariableItemStatus.DRAFT,
    )
    consolidation_id: Mapped[int | None] = mapped_column(
        ForeignKey("consolidations.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    validated_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    validated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)

    employee: Mapped[Employee] = relationship(back_populates="variable_items")
    consolidation: Mapped[Consolidation | None] = relationship(back_populates="variable_items")

    def touch_updated_at(self) -> None:
        self.updated_at = _utcnow()


class ConsolidationAuditEntry(Base):
    __tablename__ = "consolidation_audit_entries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    consolidation_id: Mapped[int] = mapped_column(
        ForeignKey("consolidations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    action: Mapped[AuditAction] = mapped_column(Enum(AuditAction, name="consolidation_audit_action"), nullable=False)
    actor: Mapped[str] = mapped_column(String(255), nullable=False)
    field: Mapped[str | None] = mapped_column(String(100), nullable=True)
    old_value: Mapped[str | None] = mapped_column(Text, nullable=True)
    new_value: Mapped[str | None] = mapped_column(Text, nullable=True)
    comment: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        index=True,
    )

    consolidation: Mapped[Consolidation] = relationship(back_populates="audit_entries")


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    ts_utc: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        index=True,
    )
    actor_type: Mapped[AuditActorType] = mapped_column(
        Enum(AuditActorType, name="audit_actor_type"),
        nullable=False,
    )
    actor_id: Mapped[str] = mapped_column(String(255), nullable=False)
    action: Mapped[str] = mapped_column(String(255), nullable=False)
    entity_type: Mapped[str | None] = mapped_column(String(255), nullable=True)
    entity_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    period: Mapped[str | None] = mapped_column(String(7), nullable=True, index=True)
    consolidation_id: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)
    ip: Mapped[str | None] = mapped_column(String(255), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(Text, nullable=True)
    success: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=text("true"))
    details: Mapped[dict[str, Any]] = mapped_column(JSONDocument, nullable=False, default=dict)


class NotificationJob(Base):
    __tablename__ = "notification_jobs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    employee_id: Mapped[int | None] = mapped_column(
        ForeignKey("employees.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    job_type: Mapped[str] = mapped_column(String(100), nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(JSONDocument, nullable=False, default=dict)
    scheduled_at_utc: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default="PENDING",
        server_default=text("'PENDING'"),
        index=True,
    )
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default=text("0"))
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    idempotency_key: Mapped[str] = mapped_column(String(255), nullable=False, unique=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)

    employee: Mapped[Employee | None] = relationship()
