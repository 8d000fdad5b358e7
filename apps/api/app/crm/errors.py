from __future__ import annotations

from typing import Any


class CRMError(Exception):
    """Base class for errors raised by the CRM and revenue services.

    Services raise these before any write happens; the API layer turns them
    into the JSON error envelope.
    """

    status_code = 500
    code = "internal_error"

    def __init__(self, message: str, *, code: str | None = None, details: Any = None) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        self.details = details


class ValidationError(CRMError):
    status_code = 422
    code = "validation_error"

    def __init__(self, field: str, message: str) -> None:
        self.field = field
        super().__init__(message, details=[{"field": field, "message": message}])


class NotFoundError(CRMError):
    status_code = 404
    code = "not_found"

    def __init__(self, entity: str, entity_id: Any) -> None:
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} not found", details={"entity": entity, "id": entity_id})


class ConflictError(CRMError):
    status_code = 409
    code = "conflict"


class StateError(CRMError):
    status_code = 409
    code = "invalid_state"


class OrderNumberExhaustedError(CRMError):
    status_code = 500
    code = "order_number_exhausted"
