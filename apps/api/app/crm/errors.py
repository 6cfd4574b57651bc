from __future__ import annotations

from typing import Any

from app.platform.errors import PlatformError


class LeadEngineError(PlatformError):
    code = "lead_engine_error"
    status_code = 400


class NotFoundError(LeadEngineError):
    code = "not_found"
    status_code = 404

    def __init__(self, entity: str, message: str | None = None) -> None:
        super().__init__(message or f"{entity} not found", {"entity": entity})
        self.entity = entity


class DuplicateConflictError(LeadEngineError):
    code = "duplicate_conflict"
    status_code = 409

    def __init__(self, duplicate_type: str, duplicate_id: str, message: str) -> None:
        super().__init__(message, {"duplicate_type": duplicate_type, "duplicate_id": duplicate_id})
        self.duplicate_type = duplicate_type
        self.duplicate_id = duplicate_id


class ConcurrencyConflictError(LeadEngineError):
    code = "concurrency_conflict"
    status_code = 409

    def __init__(self, entity: str, message: str) -> None:
        super().__init__(message, {"entity": entity})


class InvalidStateError(LeadEngineError):
    code = "invalid_state"
    status_code = 422

    def __init__(self, reason: str, message: str) -> None:
        super().__init__(message, {"reason": reason})
        self.reason = reason


class ValidationFailedError(LeadEngineError):
    """Required stage fields are missing; nothing has been written."""

    code = "validation_failed"
    status_code = 422

    def __init__(self, missing_fields: list[dict[str, Any]], message: str = "Required fields missing for this stage") -> None:
        super().__init__(message, {"missing_fields": missing_fields})
        self.missing_fields = missing_fields
