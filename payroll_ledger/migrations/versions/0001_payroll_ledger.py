"""Create payroll ledger tables

Revision ID: 0001_payroll_ledger
Revises:
Create Date: 2026-03-02 09:00:00
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "0001_payroll_ledger"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

worked_day_source = postgresql.ENUM("SHIFT", "EVENT", name="worked_day_source", create_type=False)
absence_status = postgresql.ENUM("APPROVED", "PENDING", "REJECTED", name="absence_status", create_type=False)
leave_counter_kind = postgresql.ENUM("ANNUAL_DAYS", "PAID_LEAVE", name="leave_counter_kind", create_type=False)
leave_movement_kind = postgresql.ENUM(
    "ACCRUAL",
    "CONSUMPTION",
    "ADJUSTMENT",
    name="leave_movement_kind",
    create_type=False,
)
consolidation_status = postgresql.ENUM(
    "DRAFT",
    "VALIDATED",
    "EXPORTED",
    "ARCHIVED",
    name="consolidation_status",
    create_type=False,
)
consolidation_audit_action = postgresql.ENUM(
    "CREATED",
    "UPDATED",
    "CORRECTION",
    "VALIDATED",
    "REOPENED",
    "EXPORTED",
    "ARCHIVED",
    name="consolidation_audit_action",
    create_type=False,
)
variable_item_category = postgresql.ENUM(
    "BONUS",
    "EXCEPTIONAL_BONUS",
    "ADVANCE",
    "DRAW_DOWN",
    "EXPENSE_REIMBURSEMENT",
    "TRANSPORT_ALLOWANCE",
    "DEDUCTION",
    name="variable_item_category",
    create_type=False,
)
variable_item_status = postgresql.ENUM("DRAFT", "VALIDATED", name="variable_item_status", create_type=False)
audit_actor_type = postgresql.ENUM("ADMIN", "SYSTEM", name="audit_actor_type", create_type=False)

ENUM_TYPES = (
    worked_day_source,
    absence_status,
    leave_counter_kind,
    leave_movement_kind,
    consolidation_status,
    consolidation_audit_action,
    variable_item_category,
    variable_item_status,
    audit_actor_type,
)


def _timestamp(name: str) -> sa.Column:
    return sa.Column(
        name,
        sa.DateTime(timezone=True),
        nullable=False,
        server_default=sa.text("CURRENT_TIMESTAMP"),
    )


def upgrade() -> None:
    bind = op.get_bind()
    for enum_type in ENUM_TYPES:
        enum_type.create(bind, checkfirst=True)

    op.create_table(
        "employees",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("full_name", sa.String(length=255), nullable=False),
        sa.Column("matricule", sa.String(length=50), nullable=True),
        sa.Column("hire_date", sa.Date(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.UniqueConstraint("matricule", name="uq_employees_matricule"),
    )

    op.create_table(
        "worked_day_facts",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("employee_id", sa.Integer(), nullable=False),
        sa.Column("day_date", sa.Date(), nullable=False),
        sa.Column("source", worked_day_source, nullable=False),
        sa.Column("days", sa.Numeric(10, 2), nullable=False, server_default=sa.text("1")),
        sa.ForeignKeyConstraint(["employee_id"], ["employees.id"], ondelete="CASCADE"),
    )
    op.create_index("ix_worked_day_facts_employee_id", "worked_day_facts", ["employee_id"], unique=False)
    op.create_index("ix_worked_day_facts_day_date", "worked_day_facts", ["day_date"], unique=False)

    op.create_table(
        "absences",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("employee_id", sa.Integer(), nullable=False),
        sa.Column("type_code", sa.String(length=20), nullable=False),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("end_date", sa.Date(), nullable=False),
        sa.Column("status", absence_status, nullable=False, server_default=sa.text("'PENDING'")),
        sa.ForeignKeyConstraint(["employee_id"], ["employees.id"], ondelete="CASCADE"),
    )
    op.create_index("ix_absences_employee_id", "absences", ["employee_id"], unique=False)

    op.create_table(
        "leave_counters",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("employee_id", sa.Integer(), nullable=False),
        sa.Column("kind", leave_counter_kind, nullable=False),
        sa.Column("period_key", sa.String(length=9), nullable=False),
        sa.Column("initial_balance", sa.Numeric(10, 2), nullable=False, server_default=sa.text("0")),
        sa.Column("accrued", sa.Numeric(10, 2), nullable=False, server_default=sa.text("0")),
        sa.Column("consumed", sa.Numeric(10, 2), nullable=False, server_default=sa.text("0")),
        sa.Column("manual_adjustment", sa.Numeric(10, 2), nullable=False, server_default=sa.text("0")),
        sa.Column("adjustment_comment", sa.Text(), nullable=True),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.ForeignKeyConstraint(["employee_id"], ["employees.id"], ondelete="CASCADE"),
        sa.UniqueConstraint(
            "employee_id",
            "kind",
            "period_key",
            name="uq_leave_counters_employee_kind_period",
        ),
    )
    op.create_index("ix_leave_counters_employee_id", "leave_counters", ["employee_id"], unique=False)

    op.create_table(
        "leave_counter_movements",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("counter_id", sa.Integer(), nullable=False),
        sa.Column("kind", leave_movement_kind, nullable=False),
        sa.Column("days", sa.Numeric(10, 2), nullable=False),
        sa.Column("source_period", sa.String(length=7), nullable=True),
        sa.Column("actor", sa.String(length=255), nullable=False, server_default=sa.text("'system'")),
        sa.Column("comment", sa.Text(), nullable=True),
        _timestamp("created_at"),
        sa.ForeignKeyConstraint(["counter_id"], ["leave_counters.id"], ondelete="CASCADE"),
        sa.UniqueConstraint(
            "counter_id",
            "kind",
            "source_period",
            name="uq_leave_counter_movements_counter_kind_source",
        ),
    )
    op.create_index(
        "ix_leave_counter_movements_counter_id",
        "leave_counter_movements",
        ["counter_id"],
        unique=False,
    )

    op.create_table(
        "consolidations",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("employee_id", sa.Integer(), nullable=False),
        sa.Column("period", sa.String(length=7), nullable=False),
        sa.Column("status", consolidation_status, nullable=False, server_default=sa.text("'DRAFT'")),
        sa.Column("days_worked_shifts", sa.Numeric(10, 2), nullable=False, server_default=sa.text("0")),
        sa.Column("days_worked_events", sa.Numeric(10, 2), nullable=False, server_default=sa.text("0")),
        sa.Column(
            "absence_days_by_type",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        sa.Column("leave_balance_start", sa.Numeric(10, 2), nullable=False, server_default=sa.text("0")),
        sa.Column("leave_accrued", sa.Numeric(10, 2), nullable=False, server_default=sa.text("0")),
        sa.Column("leave_consumed", sa.Numeric(10, 2), nullable=False, server_default=sa.text("0")),
        sa.Column("leave_balance_end", sa.Numeric(10, 2), nullable=False, server_default=sa.text("0")),
        sa.Column("variable_items_total", sa.Numeric(12, 2), nullable=False, server_default=sa.text("0")),
        sa.Column(
            "negative_balance_override",
            sa.Boolean(),
            nullable=False,
            server_default=sa.text("false"),
        ),
        sa.Column("validated_by", sa.String(length=255), nullable=True),
        sa.Column("validated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("exported_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("sent_to_accountant_at", sa.DateTime(timezone=True), nullable=True),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.ForeignKeyConstraint(["employee_id"], ["employees.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("employee_id", "period", name="uq_consolidations_employee_period"),
    )
    op.create_index("ix_consolidations_employee_id", "consolidations", ["employee_id"], unique=False)
    op.create_index("ix_consolidations_period", "consolidations", ["period"], unique=False)
    op.create_index("ix_consolidations_status", "consolidations", ["status"], unique=False)

    op.create_table(
        "variable_items",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("employee_id", sa.Integer(), nullable=False),
        sa.Column("period", sa.String(length=7), nullable=False),
        sa.Column("category", variable_item_category, nullable=False),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("label", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("status", variable_item_status, nullable=False, server_default=sa.text("'DRAFT'")),
        sa.Column("consolidation_id", sa.Integer(), nullable=True),
        sa.Column("validated_by", sa.String(length=255), nullable=True),
        sa.Column("validated_at", sa.DateTime(timezone=True), nullable=True),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.ForeignKeyConstraint(["employee_id"], ["employees.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["consolidation_id"], ["consolidations.id"], ondelete="SET NULL"),
    )
    op.create_index("ix_variable_items_employee_id", "variable_items", ["employee_id"], unique=False)
    op.create_index("ix_variable_items_period", "variable_items", ["period"], unique=False)
    op.create_index("ix_variable_items_consolidation_id", "variable_items", ["consolidation_id"], unique=False)

    op.create_table(
        "consolidation_audit_entries",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("consolidation_id", sa.Integer(), nullable=False),
        sa.Column("action", consolidation_audit_action, nullable=False),
        sa.Column("actor", sa.String(length=255), nullable=False),
        sa.Column("field", sa.String(length=100), nullable=True),
        sa.Column("old_value", sa.Text(), nullable=True),
        sa.Column("new_value", sa.Text(), nullable=True),
        sa.Column("comment", sa.Text(), nullable=True),
        _timestamp("created_at"),
        sa.ForeignKeyConstraint(["consolidation_id"], ["consolidations.id"], ondelete="CASCADE"),
    )
    op.create_index(
        "ix_consolidation_audit_entries_consolidation_id",
        "consolidation_audit_entries",
        ["consolidation_id"],
        unique=False,
    )
    op.create_index(
        "ix_consolidation_audit_entries_created_at",
        "consolidation_audit_entries",
        ["created_at"],
        unique=False,
    )

    op.create_table(
        "audit_logs",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        _timestamp("ts_utc"),
        sa.Column("actor_type", audit_actor_type, nullable=False),
        sa.Column("actor_id", sa.String(length=255), nullable=False),
        sa.Column("action", sa.String(length=255), nullable=False),
        sa.Column("entity_type", sa.String(length=255), nullable=True),
        sa.Column("entity_id", sa.String(length=255), nullable=True),
        sa.Column("period", sa.String(length=7), nullable=True),
        sa.Column("consolidation_id", sa.Integer(), nullable=True),
        sa.Column("ip", sa.String(length=255), nullable=True),
        sa.Column("user_agent", sa.Text(), nullable=True),
        sa.Column("success", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column(
            "details",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
    )
    op.create_index("ix_audit_logs_ts_utc", "audit_logs", ["ts_utc"], unique=False)
    op.create_index("ix_audit_logs_period", "audit_logs", ["period"], unique=False)
    op.create_index("ix_audit_logs_consolidation_id", "audit_logs", ["consolidation_id"], unique=False)

    op.create_table(
        "notification_jobs",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("employee_id", sa.Integer(), nullable=True),
        sa.Column("job_type", sa.String(length=100), nullable=False),
        sa.Column(
            "payload",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        sa.Column("scheduled_at_utc", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False, server_default=sa.text("'PENDING'")),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("idempotency_key", sa.String(length=255), nullable=False),
        _timestamp("created_at"),
        sa.ForeignKeyConstraint(["employee_id"], ["employees.id"], ondelete="SET NULL"),
    )
    op.create_index("ix_notification_jobs_employee_id", "notification_jobs", ["employee_id"], unique=False)
    op.create_index(
        "ix_notification_jobs_scheduled_at_utc",
        "notification_jobs",
        ["scheduled_at_utc"],
        unique=False,
    )
    op.create_index("ix_notification_jobs_status", "notification_jobs", ["status"], unique=False)
    op.create_index(
        "ix_notification_jobs_idempotency_key",
        "notification_jobs",
        ["idempotency_key"],
        unique=True,
    )


def downgrade() -> None:
    op.drop_index("ix_notification_jobs_idempotency_key", table_name="notification_jobs")
    op.drop_index("ix_notification_jobs_status", table_name="notification_jobs")
    op.drop_index("ix_notification_jobs_scheduled_at_utc", table_name="notification_jobs")
    op.drop_index("ix_notification_jobs_employee_id", table_name="notification_jobs")
    op.drop_table("notification_jobs")

    op.drop_index("ix_audit_logs_consolidation_id", table_name="audit_logs")
    op.drop_index("ix_audit_logs_period", table_name="audit_logs")
    op.drop_index("ix_audit_logs_ts_utc", table_name="audit_logs")
    op.drop_table("audit_logs")

    op.drop_index("ix_consolidation_audit_entries_created_at", table_name="consolidation_audit_entries")
    op.drop_index("ix_consolidation_audit_entries_consolidation_id", table_name="consolidation_audit_entries")
    op.drop_table("consolidation_audit_entries")

    op.drop_index("ix_variable_items_consolidation_id", table_name="variable_items")
    op.drop_index("ix_variable_items_period", table_name="variable_items")
    op.drop_index("ix_variable_items_employee_id", table_name="variable_items")
    op.drop_table("variable_items")

    op.drop_index("ix_consolidations_status", table_name="consolidations")
    op.drop_index("ix_consolidations_period", table_name="consolidations")
    op.drop_index("ix_consolidations_employee_id", table_name="consolidations")
    op.drop_table("consolidations")

    op.drop_index("ix_leave_counter_movements_counter_id", table_name="leave_counter_movements")
    op.drop_table("leave_counter_movements")

    op.drop_index("ix_leave_counters_employee_id", table_name="leave_counters")
    op.drop_table("leave_counters")

    op.drop_index("ix_absences_employee_id", table_name="absences")
    op.drop_table("absences")

    op.drop_index("ix_worked_day_facts_day_date", table_name="worked_day_facts")
    op.drop_index("ix_worked_day_facts_employee_id", table_name="worked_day_facts")
    op.drop_table("worked_day_facts")

    op.drop_table("employees")

    bind = op.get_bind()
    for enum_type in reversed(ENUM_TYPES):
        enum_type.drop(bind, checkfirst=True)
