from __future__ import annotations

from decimal import Decimal
from typing import Any

from fastapi import APIRouter, Depends, Query, Request, Response, status
from sqlalchemy import select
from sqlalchemy.orm import Session

from payroll_ledger.audit import log_audit
from payroll_ledger.db import get_db
from payroll_ledger.errors import NotFoundError
from payroll_ledger.models import (
    AuditActorType,
    AuditLog,
    ConsolidationAuditEntry,
    ConsolidationStatus,
    CounterKind,
    VariableItemStatus,
)
from payroll_ledger.schemas import (
    AbsenceTypeRead,
    AuditEntryRead,
    AuditLogRead,
    BulkValidationRead,
    ConsolidateMonthRequest,
    ConsolidateRequest,
    ConsolidationOutcomeRead,
    ConsolidationRead,
    CorrectionRequest,
    LeaveCounterAdjustRequest,
    LeaveCounterMovementRead,
    LeaveCounterPostRequest,
    LeaveCounterRead,
    MonthStatsRead,
    PayrollExportRowRead,
    ReopenRequest,
    ValidateMonthRequest,
    ValidateRequest,
    ValidationCheckResponse,
    ValidationOutcomeRead,
    VariableItemCopyRequest,
    VariableItemCorrectionRequest,
    VariableItemCreateRequest,
    VariableItemRead,
    VariableItemUpdateRequest,
)
from payroll_ledger.security import actor_from_claims, require_admin_permission
from payroll_ledger.services import leave_counters
from payroll_ledger.services.absence_types import get_absence_type, list_absence_types
from payroll_ledger.services.audit_trail import decode_value, list_audit_trail
from payroll_ledger.services.consolidation import (
    ConsolidationEngine,
    find_consolidation,
    get_consolidation,
    list_consolidations,
    month_stats,
)
from payroll_ledger.services.exports import build_export_rows, export_period
from payroll_ledger.services.variable_items import (
    copy_recurring_from_previous_month,
    create_variable_item,
    delete_variable_item,
    get_variable_item,
    list_variable_items,
    update_variable_item,
    validate_all_for_consolidation,
    validate_variable_item,
)

router = APIRouter(prefix="/api/admin/payroll", tags=["payroll"])


def _client_ip(request: Request) -> str | None:
    forwarded_for = request.headers.get("x-forwarded-for")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()
    if request.client:
        return request.client.host
    return None


def _user_agent(request: Request) -> str | None:
    return request.headers.get("user-agent")


def _log_admin_action(
    request: Request,
    db: Session,
    *,
    claims: dict[str, Any],
    action: str,
    entity_type: str,
    entity_id: Any,
    period: str | None = None,
    consolidation_id: int | None = None,
    details: dict[str, Any] | None = None,
) -> None:
    log_audit(
        db,
        actor_type=AuditActorType.ADMIN,
        actor_id=actor_from_claims(claims),
        action=action,
        success=True,
        entity_type=entity_type,
        entity_id=str(entity_id),
        period=period,
        consolidation_id=consolidation_id,
        ip=_client_ip(request),
        user_agent=_user_agent(request),
        details=details,
        request_id=getattr(request.state, "request_id", None),
    )


def _audit_entry_read(entry: ConsolidationAuditEntry) -> AuditEntryRead:
    return AuditEntryRead(
        id=entry.id,
        consolidation_id=entry.consolidation_id,
        action=entry.action,
        actor=entry.actor,
        field=entry.field,
        old_value=decode_value(entry.old_value),
        new_value=decode_value(entry.new_value),
        comment=entry.comment,
        created_at=entry.created_at,
    )


def _counter_movements(db: Session, counter_id: int) -> list[LeaveCounterMovementRead]:
    counter = leave_counters.get_counter(db, counter_id)
    return [
        LeaveCounterMovementRead(
            id=item.movement.id,
            kind=item.movement.kind,
            days=item.movement.days,
            source_period=item.movement.source_period,
            actor=item.movement.actor,
            comment=item.movement.comment,
            created_at=item.movement.created_at,
            balance_after=item.balance_after,
        )
        for item in leave_counters.list_counter_movements(db, counter)
    ]


@router.get(
    "/consolidations",
    response_model=list[ConsolidationRead],
)
def list_consolidations_endpoint(
    period: str | None = Query(default=None),
    status_filter: ConsolidationStatus | None = Query(default=None, alias="status"),
    employee_id: int | None = Query(default=None, ge=1),
    _claims: dict[str, Any] = Depends(require_admin_permission("consolidations")),
    db: Session = Depends(get_db),
) -> list[ConsolidationRead]:
    return list_consolidations(db, period=period, status=status_filter, employee_id=employee_id)


@router.get("/consolidations/lookup", response_model=ConsolidationRead)
def lookup_consolidation_endpoint(
    employee_id: int = Query(ge=1),
    period: str = Query(),
    _claims: dict[str, Any] = Depends(require_admin_permission("consolidations")),
    db: Session = Depends(get_db),
) -> ConsolidationRead:
    consolidation = find_consolidation(db, employee_id, period)
    if consolidation is None:
        raise NotFoundError("Consolidation", f"{employee_id}:{period}")
    return consolidation


@router.get("/consolidations/{consolidation_id}", response_model=ConsolidationRead)
def get_consolidation_endpoint(
    consolidation_id: int,
    _claims: dict[str, Any] = Depends(require_admin_permission("consolidations")),
    db: Session = Depends(get_db),
) -> ConsolidationRead:
    return get_consolidation(db, consolidation_id)


@router.get("/consolidations/{consolidation_id}/audit", response_model=list[AuditEntryRead])
def consolidation_audit_endpoint(
    consolidation_id: int,
    _claims: dict[str, Any] = Depends(require_admin_permission("audit")),
    db: Session = Depends(get_db),
) -> list[AuditEntryRead]:
    get_consolidation(db, consolidation_id)
    return [_audit_entry_read(entry) for entry in list_audit_trail(db, consolidation_id)]


@router.get("/consolidations/{consolidation_id}/validation-check", response_model=ValidationCheckResponse)
def validation_check_endpoint(
    consolidation_id: int,
    allow_negative_balance: bool = Query(default=False),
    _claims: dict[str, Any] = Depends(require_admin_permission("consolidations")),
    db: Session = Depends(get_db),
) -> ValidationCheckResponse:
    consolidation = get_consolidation(db, consolidation_id)
    messages = ConsolidationEngine(db).check_validation(
        consolidation,
        allow_negative_balance=allow_negative_balance,
    )
    return ValidationCheckResponse(
        consolidation_id=consolidation.id,
        can_validate=not messages,
        messages=messages,
    )


@router.post("/consolidations", response_model=ConsolidationRead)
def consolidate_endpoint(
    payload: ConsolidateRequest,
    claims: dict[str, Any] = Depends(require_admin_permission("consolidations", write=True)),
    db: Session = Depends(get_db),
) -> ConsolidationRead:
    return ConsolidationEngine(db).consolidate(payload.employee_id, payload.period, actor_from_claims(claims))


@router.post("/consolidations/month", response_model=list[ConsolidationOutcomeRead])
def consolidate_month_endpoint(
    payload: ConsolidateMonthRequest,
    request: Request,
    claims: dict[str, Any] = Depends(require_admin_permission("consolidations", write=True)),
    db: Session = Depends(get_db),
) -> list[ConsolidationOutcomeRead]:
    outcomes = ConsolidationEngine(db).consolidate_month(
        payload.period,
        actor_from_claims(claims),
        refresh=payload.refresh,
        employee_id=payload.employee_id,
    )
    _log_admin_action(
        request,
        db,
        claims=claims,
        action="PAYROLL_MONTH_CONSOLIDATED",
        entity_type="payroll_period",
        entity_id=payload.period,
        period=payload.period,
        details={
            "processed": len(outcomes),
            "failed": sum(1 for outcome in outcomes if outcome.outcome == "failed"),
        },
    )
    return outcomes


@router.post("/consolidations/validate-month", response_model=list[ValidationOutcomeRead])
def validate_month_endpoint(
    payload: ValidateMonthRequest,
    request: Request,
    claims: dict[str, Any] = Depends(require_admin_permission("consolidations", write=True)),
    db: Session = Depends(get_db),
) -> list[ValidationOutcomeRead]:
    outcomes = ConsolidationEngine(db).validate_month(
        payload.period,
        actor_from_claims(claims),
        allow_negative_balance=payload.allow_negative_balance,
    )
    _log_admin_action(
        request,
        db,
        claims=claims,
        action="PAYROLL_MONTH_VALIDATED",
        entity_type="payroll_period",
        entity_id=payload.period,
        period=payload.period,
        details={
            "validated": sum(1 for outcome in outcomes if outcome.validated),
            "failed": sum(1 for outcome in outcomes if not outcome.validated),
        },
    )
    return outcomes


@router.post("/consolidations/{consolidation_id}/validate", response_model=ConsolidationRead)
def validate_consolidation_endpoint(
    consolidation_id: int,
    request: Request,
    payload: ValidateRequest | None = None,
    claims: dict[str, Any] = Depends(require_admin_permission("consolidations", write=True)),
    db: Session = Depends(get_db),
) -> ConsolidationRead:
    consolidation = get_consolidation(db, consolidation_id, for_update=True)
    allow_negative_balance = payload.allow_negative_balance if payload is not None else False
    ConsolidationEngine(db).validate(
        consolidation,
        actor_from_claims(claims),
        allow_negative_balance=allow_negative_balance,
    )
    _log_admin_action(
        request,
        db,
        claims=claims,
        action="CONSOLIDATION_VALIDATED",
        entity_type="consolidation",
        entity_id=consolidation.id,
        period=consolidation.period,
        consolidation_id=consolidation.id,
        details={"negative_balance_override": consolidation.negative_balance_override},
    )
    return consolidation


@router.post("/consolidations/{consolidation_id}/reopen", response_model=ConsolidationRead)
def reopen_consolidation_endpoint(
    consolidation_id: int,
    payload: ReopenRequest,
    request: Request,
    claims: dict[str, Any] = Depends(require_admin_permission("consolidations", write=True)),
    db: Session = Depends(get_db),
) -> ConsolidationRead:
    consolidation = get_consolidation(db, consolidation_id, for_update=True)
    ConsolidationEngine(db).reopen(consolidation, actor_from_claims(claims), payload.reason)
    _log_admin_action(
        request,
        db,
        claims=claims,
        action="CONSOLIDATION_REOPENED",
        entity_type="consolidation",
        entity_id=consolidation.id,
        period=consolidation.period,
        consolidation_id=consolidation.id,
        details={"reason": payload.reason},
    )
    return consolidation


@router.post("/consolidations/{consolidation_id}/corrections", response_model=ConsolidationRead)
def correct_consolidation_endpoint(
    consolidation_id: int,
    payload: CorrectionRequest,
    claims: dict[str, Any] = Depends(require_admin_permission("consolidations", write=True)),
    db: Session = Depends(get_db),
) -> ConsolidationRead:
    consolidation = get_consolidation(db, consolidation_id, for_update=True)
    return ConsolidationEngine(db).correct_field(
        consolidation,
        payload.field,
        payload.new_value,
        actor_from_claims(claims),
        payload.comment,
    )


@router.post("/consolidations/{consolidation_id}/export", response_model=ConsolidationRead)
def export_consolidation_endpoint(
    consolidation_id: int,
    claims: dict[str, Any] = Depends(require_admin_permission("exports", write=True)),
    db: Session = Depends(get_db),
) -> ConsolidationRead:
    consolidation = get_consolidation(db, consolidation_id, for_update=True)
    return ConsolidationEngine(db).mark_exported(consolidation, actor_from_claims(claims))


@router.post("/consolidations/{consolidation_id}/sent-to-accountant", response_model=ConsolidationRead)
def sent_to_accountant_endpoint(
    consolidation_id: int,
    claims: dict[str, Any] = Depends(require_admin_permission("exports", write=True)),
    db: Session = Depends(get_db),
) -> ConsolidationRead:
    consolidation = get_consolidation(db, consolidation_id, for_update=True)
    return ConsolidationEngine(db).mark_sent_to_accountant(consolidation, actor_from_claims(claims))


@router.post("/consolidations/{consolidation_id}/archive", response_model=ConsolidationRead)
def archive_consolidation_endpoint(
    consolidation_id: int,
    claims: dict[str, Any] = Depends(require_admin_permission("consolidations", write=True)),
    db: Session = Depends(get_db),
) -> ConsolidationRead:
    consolidation = get_consolidation(db, consolidation_id, for_update=True)
    return ConsolidationEngine(db).archive(consolidation, actor_from_claims(claims))


@router.get("/stats", response_model=MonthStatsRead)
def month_stats_endpoint(
    period: str = Query(),
    _claims: dict[str, Any] = Depends(require_admin_permission("consolidations")),
    db: Session = Depends(get_db),
) -> MonthStatsRead:
    return month_stats(db, period)


@router.get("/absence-types", response_model=list[AbsenceTypeRead])
def list_absence_types_endpoint(
    _claims: dict[str, Any] = Depends(require_admin_permission("consolidations")),
) -> list[AbsenceTypeRead]:
    return list_absence_types()


@router.get("/absence-types/{code}", response_model=AbsenceTypeRead)
def get_absence_type_endpoint(
    code: str,
    _claims: dict[str, Any] = Depends(require_admin_permission("consolidations")),
) -> AbsenceTypeRead:
    return get_absence_type(code)


@router.get("/leave-counters", response_model=list[LeaveCounterRead])
def list_leave_counters_endpoint(
    employee_id: int | None = Query(default=None, ge=1),
    kind: CounterKind | None = Query(default=None),
    _claims: dict[str, Any] = Depends(require_admin_permission("leave_counters")),
    db: Session = Depends(get_db),
) -> list[LeaveCounterRead]:
    return leave_counters.list_counters(db, employee_id=employee_id, kind=kind)


@router.get("/leave-counters/low-balance", response_model=list[LeaveCounterRead])
def low_balance_counters_endpoint(
    threshold: Decimal = Query(default=Decimal("10")),
    kind: CounterKind | None = Query(default=None),
    period_key: str | None = Query(default=None),
    _claims: dict[str, Any] = Depends(require_admin_permission("leave_counters")),
    db: Session = Depends(get_db),
) -> list[LeaveCounterRead]:
    return leave_counters.low_balance_counters(db, threshold, kind=kind, period_key=period_key)


@router.get("/leave-counters/negative", response_model=list[LeaveCounterRead])
def negative_counters_endpoint(
    kind: CounterKind | None = Query(default=None),
    period_key: str | None = Query(default=None),
    _claims: dict[str, Any] = Depends(require_admin_permission("leave_counters")),
    db: Session = Depends(get_db),
) -> list[LeaveCounterRead]:
    return leave_counters.negative_counters(db, kind=kind, period_key=period_key)


@router.get("/leave-counters/{counter_id}", response_model=LeaveCounterRead)
def get_leave_counter_endpoint(
    counter_id: int,
    _claims: dict[str, Any] = Depends(require_admin_permission("leave_counters")),
    db: Session = Depends(get_db),
) -> LeaveCounterRead:
    return leave_counters.get_counter(db, counter_id)


@router.get("/leave-counters/{counter_id}/movements", response_model=list[LeaveCounterMovementRead])
def leave_counter_movements_endpoint(
    counter_id: int,
    _claims: dict[str, Any] = Depends(require_admin_permission("leave_counters")),
    db: Session = Depends(get_db),
) -> list[LeaveCounterMovementRead]:
    return _counter_movements(db, counter_id)


@router.post("/leave-counters/accruals", response_model=LeaveCounterRead)
def accrue_leave_counter_endpoint(
    payload: LeaveCounterPostRequest,
    claims: dict[str, Any] = Depends(require_admin_permission("leave_counters", write=True)),
    db: Session = Depends(get_db),
) -> LeaveCounterRead:
    movement = leave_counters.accrue(
        db,
        payload.employee_id,
        payload.kind,
        payload.period_key,
        payload.days,
        source_period=payload.source_period,
        actor=actor_from_claims(claims),
        comment=payload.comment,
    )
    return movement.counter


@router.post("/leave-counters/consumptions", response_model=LeaveCounterRead)
def consume_leave_counter_endpoint(
    payload: LeaveCounterPostRequest,
    claims: dict[str, Any] = Depends(require_admin_permission("leave_counters", write=True)),
    db: Session = Depends(get_db),
) -> LeaveCounterRead:
    movement = leave_counters.consume(
        db,
        payload.employee_id,
        payload.kind,
        payload.period_key,
        payload.days,
        source_period=payload.source_period,
        actor=actor_from_claims(claims),
        comment=payload.comment,
    )
    return movement.counter


@router.post("/leave-counters/adjustments", response_model=LeaveCounterRead)
def adjust_leave_counter_endpoint(
    payload: LeaveCounterAdjustRequest,
    request: Request,
    claims: dict[str, Any] = Depends(require_admin_permission("leave_counters", write=True)),
    db: Session = Depends(get_db),
) -> LeaveCounterRead:
    counter = leave_counters.adjust(
        db,
        payload.employee_id,
        payload.kind,
        payload.period_key,
        payload.delta,
        comment=payload.comment,
        actor=actor_from_claims(claims),
    )
    _log_admin_action(
        request,
        db,
        claims=claims,
        action="LEAVE_COUNTER_ADJUSTED",
        entity_type="leave_counter",
        entity_id=counter.id,
        details={"delta": str(payload.delta), "comment": payload.comment},
    )
    return counter


@router.get("/variable-items", response_model=list[VariableItemRead])
def list_variable_items_endpoint(
    employee_id: int | None = Query(default=None, ge=1),
    period: str | None = Query(default=None),
    status_filter: VariableItemStatus | None = Query(default=None, alias="status"),
    _claims: dict[str, Any] = Depends(require_admin_permission("variable_items")),
    db: Session = Depends(get_db),
) -> list[VariableItemRead]:
    return list_variable_items(db, employee_id=employee_id, period=period, status=status_filter)


@router.post("/variable-items", response_model=VariableItemRead, status_code=status.HTTP_201_CREATED)
def create_variable_item_endpoint(
    payload: VariableItemCreateRequest,
    claims: dict[str, Any] = Depends(require_admin_permission("variable_items", write=True)),
    db: Session = Depends(get_db),
) -> VariableItemRead:
    return create_variable_item(
        db,
        employee_id=payload.employee_id,
        period=payload.period,
        category=payload.category,
        amount=payload.amount,
        label=payload.label,
        description=payload.description,
        actor=actor_from_claims(claims),
    )


@router.post(
    "/variable-items/copy-recurring",
    response_model=list[VariableItemRead],
    status_code=status.HTTP_201_CREATED,
)
def copy_recurring_variable_items_endpoint(
    payload: VariableItemCopyRequest,
    claims: dict[str, Any] = Depends(require_admin_permission("variable_items", write=True)),
    db: Session = Depends(get_db),
) -> list[VariableItemRead]:
    return copy_recurring_from_previous_month(
        db,
        payload.employee_id,
        payload.period,
        actor=actor_from_claims(claims),
    )


@router.post("/consolidations/{consolidation_id}/variable-items/validate", response_model=BulkValidationRead)
def validate_consolidation_items_endpoint(
    consolidation_id: int,
    claims: dict[str, Any] = Depends(require_admin_permission("variable_items", write=True)),
    db: Session = Depends(get_db),
) -> BulkValidationRead:
    count = validate_all_for_consolidation(db, consolidation_id, actor=actor_from_claims(claims))
    return BulkValidationRead(consolidation_id=consolidation_id, validated=count)


@router.patch("/variable-items/{item_id}", response_model=VariableItemRead)
def update_variable_item_endpoint(
    item_id: int,
    payload: VariableItemUpdateRequest,
    claims: dict[str, Any] = Depends(require_admin_permission("variable_items", write=True)),
    db: Session = Depends(get_db),
) -> VariableItemRead:
    return update_variable_item(
        db,
        item_id,
        actor=actor_from_claims(claims),
        amount=payload.amount,
        label=payload.label,
        description=payload.description,
        category=payload.category,
    )


@router.delete("/variable-items/{item_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_variable_item_endpoint(
    item_id: int,
    claims: dict[str, Any] = Depends(require_admin_permission("variable_items", write=True)),
    db: Session = Depends(get_db),
) -> Response:
    delete_variable_item(db, item_id, actor=actor_from_claims(claims))
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/variable-items/{item_id}/validate", response_model=VariableItemRead)
def validate_variable_item_endpoint(
    item_id: int,
    claims: dict[str, Any] = Depends(require_admin_permission("variable_items", write=True)),
    db: Session = Depends(get_db),
) -> VariableItemRead:
    return validate_variable_item(db, item_id, actor=actor_from_claims(claims))


@router.post("/variable-items/{item_id}/corrections", response_model=VariableItemRead)
def correct_variable_item_endpoint(
    item_id: int,
    payload: VariableItemCorrectionRequest,
    claims: dict[str, Any] = Depends(require_admin_permission("variable_items", write=True)),
    db: Session = Depends(get_db),
) -> VariableItemRead:
    item = get_variable_item(db, item_id)
    return ConsolidationEngine(db).correct_variable_item(
        item,
        actor_from_claims(claims),
        payload.comment,
        amount=payload.amount,
        label=payload.label,
        description=payload.description,
        category=payload.category,
    )


@router.get("/exports", response_model=list[PayrollExportRowRead])
def export_rows_endpoint(
    period: str = Query(),
    _claims: dict[str, Any] = Depends(require_admin_permission("exports")),
    db: Session = Depends(get_db),
) -> list[PayrollExportRowRead]:
    return build_export_rows(db, period)


@router.post("/exports", response_model=list[PayrollExportRowRead])
def export_period_endpoint(
    request: Request,
    period: str = Query(),
    claims: dict[str, Any] = Depends(require_admin_permission("exports", write=True)),
    db: Session = Depends(get_db),
) -> list[PayrollExportRowRead]:
    rows = export_period(db, period, actor_from_claims(claims))
    _log_admin_action(
        request,
        db,
        claims=claims,
        action="PAYROLL_PERIOD_EXPORTED",
        entity_type="payroll_period",
        entity_id=period,
        period=period,
        details={"rows": len(rows)},
    )
    return rows


@router.get("/audit-logs", response_model=list[AuditLogRead])
def list_audit_logs_endpoint(
    action: str | None = Query(default=None),
    period: str | None = Query(default=None),
    consolidation_id: int | None = Query(default=None, ge=1),
    limit: int = Query(default=100, ge=1, le=500),
    _claims: dict[str, Any] = Depends(require_admin_permission("audit")),
    db: Session = Depends(get_db),
) -> list[AuditLogRead]:
    stmt = select(AuditLog).order_by(AuditLog.ts_utc.desc(), AuditLog.id.desc()).limit(limit)
    if action:
        stmt = stmt.where(AuditLog.action == action)
    if period is not None:
        stmt = stmt.where(AuditLog.period == period)
    if consolidation_id is not None:
        stmt = stmt.where(AuditLog.consolidation_id == consolidation_id)
    return list(db.scalars(stmt).all())
