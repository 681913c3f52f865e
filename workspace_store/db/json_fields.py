"""Null handling for JSON columns.

A JSON field in a write has three states beyond a concrete value:

* omitted from the data dict: leave the stored value untouched
* ``JsonNull``: store the JSON literal ``null``
* ``DbNull``: store SQL ``NULL`` (nullable columns only)

Plain ``None`` is refused for JSON fields because it cannot say which of the
last two is meant. ``AnyNull`` only appears in filters and matches either.
"""

from __future__ import annotations

from typing import Any

from sqlalchemy import JSON, String, cast, null, or_
from sqlalchemy.dialects.postgresql import JSONB

from workspace_store.db.errors import QueryValidationError

# JSONB on PostgreSQL, the generic JSON type everywhere else.
JsonColumn = JSON(none_as_null=False).with_variant(JSONB(none_as_null=False), "postgresql")


class _NullSentinel:
    __slots__ = ("_name",)

    def __init__(self, name: str) -> None:
        self._name = name

    def __repr__(self) -> str:
        return self._name

    def __reduce__(self):
        return self._name


JsonNull = _NullSentinel("JsonNull")
DbNull = _NullSentinel("DbNull")
AnyNull = _NullSentinel("AnyNull")


def is_null_sentinel(value: Any) -> bool:
    return isinstance(value, _NullSentinel)


def to_write_value(field: str, value: Any, *, nullable: bool) -> Any:
    """Translate a JSON field value from a write into what SQLAlchemy persists."""
    if value is None:
        raise QueryValidationError(
            f"{field}: use JsonNull or DbNull instead of None for JSON fields"
        )
    if value is JsonNull:
        return JSON.NULL
    if value is DbNull:
        if not nullable:
            raise QueryValidationError(f"{field}: DbNull is not allowed on a required JSON field")
        return null()
    if value is AnyNull:
        raise QueryValidationError(f"{field}: AnyNull is only valid in filters")
    return value


def null_filter(column, sentinel: _NullSentinel):
    """Build the filter clause matching ``sentinel`` for a JSON column."""
    json_literal_null = cast(column, String) == "null"
    if sentinel is DbNull:
        return column.is_(None)
    if sentinel is JsonNull:
        return json_literal_null
    return or_(column.is_(None), json_literal_null)
