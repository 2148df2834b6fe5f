from __future__ import annotations
from typing import Any, Dict, Iterable, List, Optional

from pydantic import BaseModel, ValidationError


class FieldError(BaseModel):
    field: str
    message: str


class InvoicingError(Exception):
    """Erreur métier récupérable : jamais fatale pour le process."""

    code = "invoicing_error"
    status_code = 400

    def __init__(self, message: str, errors: Optional[Iterable[FieldError]] = None):
        super().__init__(message)
        self.message = message
        self.errors: List[FieldError] = list(errors or [])

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": False,
            "error": self.code,
            "message": self.message,
            "errors": [e.model_dump() for e in self.errors],
        }


class ValidationFailed(InvoicingError):
    code = "validation_failed"
    status_code = 422

    def __init__(self, errors: Iterable[FieldError], message: str = "Validation failed"):
        super().__init__(message, errors)


class InvalidTransition(InvoicingError):
    code = "invalid_transition"
    status_code = 409

    def __init__(self, current: str, requested: str, reason: Optional[str] = None):
        msg = f"Cannot move invoice from '{current}' to '{requested}'"
        if reason:
            msg = f"{msg}: {reason}"
        super().__init__(msg, [FieldError(field="status", message=msg)])
        self.current = current
        self.requested = requested


class NotFound(InvoicingError):
    code = "not_found"
    status_code = 404

    def __init__(self, entity: str, key: Any):
        super().__init__(f"{entity} {key} not found")
        self.entity = entity
        self.key = key


class Conflict(InvoicingError):
    code = "conflict"
    status_code = 409

    def __init__(self, expected: Any, actual: Any, entity: str = "invoice"):
        super().__init__(
            f"Stale {entity} version {expected} (current is {actual})",
            [FieldError(field="version", message=f"expected {actual}, got {expected}")],
        )
        self.expected = expected
        self.actual = actual


def from_pydantic(exc: ValidationError) -> ValidationFailed:
    """Convertit une ValidationError pydantic en liste (champ, message)."""
    errors: List[FieldError] = []
    for err in exc.errors():
        loc = [str(p) for p in err.get("loc", ()) if p not in ("body", "query", "path")]
        field = ".".join(loc) or "__root__"
        errors.append(FieldError(field=field, message=err.get("msg", "invalid value")))
    return ValidationFailed(errors)
