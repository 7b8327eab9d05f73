from __future__ import annotations

from collections.abc import Iterable
from typing import Any

from fastapi import Request
from fastapi.responses import JSONResponse


class ApiError(Exception):
    def __init__(self, status_code: int, code: str, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.message = message
        self.details = details or {}


class LedgerError(ApiError):
    """Base class for domain rule violations raised by the ledger services."""

    status_code = 400
    code = "LEDGER_ERROR"

    def __init__(self, message: str, **details: Any):
        super().__init__(
            status_code=type(self).status_code,
            code=type(self).code,
            message=message,
            details={key: value for key, value in details.items() if value is not None},
        )


class ValidationError(LedgerError):
    status_code = 422
    code = "VALIDATION_ERROR"

    def __init__(
        self,
        message: str,
        *,
        field: str | None = None,
        value: Any = None,
        messages: Iterable[str] | None = None,
    ):
        self.field = field
        self.value = value
        self.messages = list(messages) if messages is not None else [message]
        super().__init__(
            message,
            field=field,
            value=None if value is None else str(value),
            messages=self.messages,
        )


class InvalidStateError(LedgerError):
    status_code = 409
    code = "INVALID_STATE"

    def __init__(self, message: str, *, current_state: str, required_states: Iterable[str]):
        self.current_state = current_state
        self.required_states = sorted(required_states)
        super().__init__(
            message,
            current_state=current_state,
            required_states=self.required_states,
        )


class NotFoundError(LedgerError):
    status_code = 404
    code = "NOT_FOUND"

    def __init__(self, entity: str, entity_id: Any):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} not found", entity=entity, entity_id=str(entity_id))


class ConflictError(LedgerError):
    status_code = 409
    code = "CONFLICT"


def get_request_id(request: Request) -> str:
    request_id = getattr(request.state, "request_id", None)
    if request_id:
        return str(request_id)
    return "unknown"


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
) -> JSONResponse:
    payload: dict[str, Any] = {
        "error": {
            "code": code,
            "message": message,
            "request_id": get_request_id(request),
        }
    }
    if details:
        payload["error"]["details"] = details
    return JSONResponse(status_code=status_code, content=payload)
