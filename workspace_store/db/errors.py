"""Error kinds raised by the access layer.

Callers distinguish "no such record" (``RecordNotFoundError``) from "would-be
duplicate" (``UniqueConstraintError``) and from malformed arguments
(``QueryValidationError``) or broken domain rules (``InvariantViolationError``).
"""

from __future__ import annotations

from typing import Any, Optional, Sequence

from sqlalchemy.exc import IntegrityError

PG_UNIQUE_VIOLATION = "23505"
PG_FOREIGN_KEY_VIOLATION = "23503"


class WorkspaceStoreError(Exception):
    pass


class RecordNotFoundError(WorkspaceStoreError):
    def __init__(self, model: str, where: Optional[dict[str, Any]] = None) -> None:
        self.model = model
        self.where = where or {}
        super().__init__(f"No {model} record found for {self.where!r}")


class ConstraintViolationError(WorkspaceStoreError):
    def __init__(self, model: str, message: str) -> None:
        self.model = model
        super().__init__(message)


class UniqueConstraintError(ConstraintViolationError):
    def __init__(self, model: str, fields: Sequence[str] = ()) -> None:
        self.fields = tuple(fields)
        target = ", ".join(self.fields) if self.fields else "unique key"
        super().__init__(model, f"Unique constraint failed on {model} ({target})")


class ForeignKeyConstraintError(ConstraintViolationError):
    def __init__(self, model: str, detail: str = "") -> None:
        message = f"Foreign key constraint failed on {model}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(model, message)


class QueryValidationError(WorkspaceStoreError, ValueError):
    pass


class InvariantViolationError(WorkspaceStoreError, ValueError):
    pass


def _sqlstate(exc: IntegrityError) -> Optional[str]:
    orig = exc.orig
    return getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)


def translate_integrity_error(
    exc: IntegrityError,
    *,
    model: str,
    unique_keys: Sequence[Sequence[str]] = (),
) -> ConstraintViolationError:
    """Map a driver ``IntegrityError`` onto the store's constraint error kinds."""
    code = _sqlstate(exc)
    message = str(exc.orig)
    lowered = message.lower()
    if code == PG_UNIQUE_VIOLATION or "unique constraint" in lowered or "duplicate key" in lowered:
        return UniqueConstraintError(model, _match_unique_fields(lowered, unique_keys))
    if code == PG_FOREIGN_KEY_VIOLATION or "foreign key constraint" in lowered:
        return ForeignKeyConstraintError(model, message)
    return ConstraintViolationError(model, message)


def _match_unique_fields(message: str, unique_keys: Sequence[Sequence[str]]) -> tuple[str, ...]:
    # Longest key first so the connector triple wins over its connector_id PK.
    for key in sorted(unique_keys, key=len, reverse=True):
        if all(field in message for field in key):
            return tuple(key)
    return ()
