"""Translate filter/order dictionaries into SQLAlchemy clauses.

Filters look like ``{"status": "pending", "readiness_score": {"gte": Decimal("0.5")},
"OR": [{...}, {...}]}``; orderings like ``[{"created_at": "desc"}, {"run_id": "asc"}]``.
"""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Iterable, Mapping, Optional, Sequence

import sqlalchemy as sa
from sqlalchemy import Integer, Numeric, and_, func, not_, or_

from workspace_store.db.errors import QueryValidationError
from workspace_store.db.json_fields import JsonColumn, is_null_sentinel, null_filter

SCALAR_OPERATORS = frozenset(
    {
        "equals",
        "not",
        "in",
        "not_in",
        "lt",
        "lte",
        "gt",
        "gte",
        "contains",
        "starts_with",
        "ends_with",
        "mode",
    }
)
LIST_RELATION_OPERATORS = frozenset({"some", "none", "every"})
SINGLE_RELATION_OPERATORS = frozenset({"is", "is_not"})
SORT_DIRECTIONS = ("asc", "desc")


@dataclass(frozen=True)
class ModelSpec:
    model: type
    name: str
    fields: tuple[str, ...]
    json_fields: frozenset[str]
    numeric_fields: frozenset[str]
    decimal_fields: frozenset[str]
    nullable_fields: frozenset[str]
    required_fields: frozenset[str]
    primary_key: tuple[str, ...]
    column_names: Mapping[str, str]
    list_relations: Mapping[str, type]
    single_relations: Mapping[str, type]

    def column(self, field: str):
        return getattr(self.model, field)

    def unknown_fields_message(self, unknown: Iterable[str]) -> str:
        """Name the attribute to use when a caller passes a column name that is mapped under another key."""
        renamed = {column: field for field, column in self.column_names.items() if column != field}
        message = f"{self.name}: unknown fields {sorted(unknown)}"
        hints = [f"use {renamed[name]!r} for {name!r}" for name in sorted(unknown) if name in renamed]
        if hints:
            message += " (" + "; ".join(hints) + ")"
        return message


@lru_cache(maxsize=None)
def model_spec(model: type) -> ModelSpec:
    mapper = sa.inspect(model)
    fields: list[str] = []
    json_fields: set[str] = set()
    numeric_fields: set[str] = set()
    decimal_fields: set[str] = set()
    nullable_fields: set[str] = set()
    required_fields: set[str] = set()
    column_names: dict[str, str] = {}
    for attr in mapper.column_attrs:
        column = attr.columns[0]
        fields.append(attr.key)
        column_names[attr.key] = column.name
        column_type = column.type
        if isinstance(column_type, sa.JSON) or column_type is JsonColumn:
            json_fields.add(attr.key)
        if isinstance(column_type, (Integer, Numeric)):
            numeric_fields.add(attr.key)
        if isinstance(column_type, Numeric) and not isinstance(column_type, sa.Float):
            decimal_fields.add(attr.key)
        if column.nullable:
            nullable_fields.add(attr.key)
        elif column.default is None and column.server_default is None:
            required_fields.add(attr.key)
    primary_key = tuple(mapper.get_property_by_column(col).key for col in mapper.primary_key)
    list_relations = {rel.key: rel.mapper.class_ for rel in mapper.relationships if rel.uselist}
    single_relations = {rel.key: rel.mapper.class_ for rel in mapper.relationships if not rel.uselist}
    return ModelSpec(
        model=model,
        name=model.__name__,
        fields=tuple(fields),
        json_fields=frozenset(json_fields),
        numeric_fields=frozenset(numeric_fields),
        decimal_fields=frozenset(decimal_fields),
        nullable_fields=frozenset(nullable_fields),
        required_fields=frozenset(required_fields),
        primary_key=primary_key,
        column_names=column_names,
        list_relations=list_relations,
        single_relations=single_relations,
    )


def _as_list(value: Any) -> list[Any]:
    if isinstance(value, Mapping):
        return [value]
    if isinstance(value, (list, tuple)):
        return list(value)
    raise QueryValidationError(f"Expected a filter or list of filters, got {value!r}")


def build_where(spec: ModelSpec, where: Optional[Mapping[str, Any]]):
    if not where:
        return sa.true()
    if not isinstance(where, Mapping):
        raise QueryValidationError(f"where must be a mapping, got {type(where).__name__}")
    clauses = []
    for key, value in where.items():
        if key == "AND":
            clauses.append(and_(sa.true(), *[build_where(spec, item) for item in _as_list(value)]))
        elif key == "OR":
            clauses.append(or_(sa.false(), *[build_where(spec, item) for item in _as_list(value)]))
        elif key == "NOT":
            clauses.append(and_(sa.true(), *[not_(build_where(spec, item)) for item in _as_list(value)]))
        elif key in spec.list_relations:
            clauses.append(_list_relation_filter(spec, key, value))
        elif key in spec.single_relations:
            clauses.append(_single_relation_filter(spec, key, value))
        elif key in spec.fields:
            clauses.append(field_filter(spec, key, value))
        else:
            raise QueryValidationError(spec.unknown_fields_message([key]))
    return and_(sa.true(), *clauses)


def _list_relation_filter(spec: ModelSpec, key: str, value: Any):
    if not isinstance(value, Mapping) or not value or set(value) - LIST_RELATION_OPERATORS:
        raise QueryValidationError(f"{spec.name}.{key} accepts only some/none/every filters")
    relation = spec.column(key)
    target = model_spec(spec.list_relations[key])
    clauses = []
    for op, sub_where in value.items():
        condition = build_where(target, sub_where)
        if op == "some":
            clauses.append(relation.any(condition))
        elif op == "none":
            clauses.append(not_(relation.any(condition)))
        else:
            clauses.append(not_(relation.any(not_(condition))))
    return and_(*clauses)


def _single_relation_filter(spec: ModelSpec, key: str, value: Any):
    if not isinstance(value, Mapping):
        raise QueryValidationError(f"{spec.name}.{key} expects a filter mapping")
    relation = spec.column(key)
    target = model_spec(spec.single_relations[key])
    if not set(value) & SINGLE_RELATION_OPERATORS:
        return relation.has(build_where(target, value))
    if set(value) - SINGLE_RELATION_OPERATORS:
        raise QueryValidationError(f"{spec.name}.{key} mixes is/is_not with field filters")
    clauses = []
    if "is" in value:
        clauses.append(relation.has(build_where(target, value["is"])))
    if "is_not" in value:
        clauses.append(not_(relation.has(build_where(target, value["is_not"]))))
    return and_(*clauses)


def field_filter(spec: ModelSpec, field: str, value: Any):
    column = spec.column(field)
    if field in spec.json_fields:
        return _json_filter(spec, field, value)
    if value is None:
        return column.is_(None)
    if isinstance(value, Mapping):
        return operator_filter(column, value, label=f"{spec.name}.{field}")
    return column == value


def _json_filter(spec: ModelSpec, field: str, value: Any):
    column = spec.column(field)
    if is_null_sentinel(value):
        return null_filter(column, value)
    if isinstance(value, Mapping) and set(value) <= {"equals", "not"} and value:
        clauses = []
        for op, operand in value.items():
            if not is_null_sentinel(operand):
                break
            clause = null_filter(column, operand)
            clauses.append(clause if op == "equals" else not_(clause))
        else:
            return and_(*clauses)
    raise QueryValidationError(
        f"{spec.name}.{field}: JSON fields can only be filtered by JsonNull, DbNull or AnyNull"
    )


def operator_filter(column, ops: Mapping[str, Any], *, label: str):
    """Apply scalar filter operators to ``column``, which may also be an aggregate expression."""
    unknown = set(ops) - SCALAR_OPERATORS
    if unknown:
        raise QueryValidationError(f"{label}: unknown filter operators {sorted(unknown)}")
    mode = ops.get("mode", "default")
    if mode not in ("default", "insensitive"):
        raise QueryValidationError(f"{label}: mode must be 'default' or 'insensitive'")
    insensitive = mode == "insensitive"
    clauses = []
    for op, operand in ops.items():
        if op == "mode":
            continue
        if op == "equals":
            if operand is None:
                clauses.append(column.is_(None))
            elif insensitive and isinstance(operand, str):
                clauses.append(func.lower(column) == operand.lower())
            else:
                clauses.append(column == operand)
        elif op == "not":
            if operand is None:
                clauses.append(column.is_not(None))
            elif isinstance(operand, Mapping):
                nested = dict(operand)
                if insensitive:
                    nested.setdefault("mode", mode)
                clauses.append(not_(operator_filter(column, nested, label=label)))
            else:
                clauses.append(column != operand)
        elif op == "in":
            clauses.append(column.in_(list(_as_values(label, operand))))
        elif op == "not_in":
            clauses.append(column.not_in(list(_as_values(label, operand))))
        elif op == "lt":
            clauses.append(column < operand)
        elif op == "lte":
            clauses.append(column <= operand)
        elif op == "gt":
            clauses.append(column > operand)
        elif op == "gte":
            clauses.append(column >= operand)
        elif op == "contains":
            clauses.append(
                column.icontains(operand, autoescape=True)
                if insensitive
                else column.contains(operand, autoescape=True)
            )
        elif op == "starts_with":
            clauses.append(
                column.istartswith(operand, autoescape=True)
                if insensitive
                else column.startswith(operand, autoescape=True)
            )
        elif op == "ends_with":
            clauses.append(
                column.iendswith(operand, autoescape=True)
                if insensitive
                else column.endswith(operand, autoescape=True)
            )
    return and_(sa.true(), *clauses)


def _as_values(label: str, operand: Any) -> Iterable[Any]:
    if isinstance(operand, (str, bytes)) or not isinstance(operand, Iterable):
        raise QueryValidationError(f"{label}: in/not_in expects a list of values")
    return operand


@dataclass(frozen=True)
class OrderTerm:
    field: str
    descending: bool = False
    nulls: Optional[str] = None

    def reversed(self) -> "OrderTerm":
        nulls = {"first": "last", "last": "first"}.get(self.nulls or "", None)
        return OrderTerm(self.field, not self.descending, nulls)


def _direction(field: str, value: Any) -> tuple[bool, Optional[str]]:
    nulls = None
    if isinstance(value, Mapping):
        nulls = value.get("nulls")
        if nulls not in (None, "first", "last"):
            raise QueryValidationError(f"{field}: nulls must be 'first' or 'last'")
        value = value.get("sort")
    if value not in SORT_DIRECTIONS:
        raise QueryValidationError(f"{field}: sort direction must be 'asc' or 'desc', got {value!r}")
    return value == "desc", nulls


def normalize_order_by(spec: ModelSpec, order_by: Any) -> list[OrderTerm]:
    if not order_by:
        return []
    terms: list[OrderTerm] = []
    for item in _as_list(order_by):
        for field, value in item.items():
            if field not in spec.fields:
                raise QueryValidationError(f"Cannot order {spec.name} by unknown field {field!r}")
            if field in spec.json_fields:
                raise QueryValidationError(f"Cannot order {spec.name} by JSON field {field!r}")
            descending, nulls = _direction(field, value)
            terms.append(OrderTerm(field, descending, nulls))
    return terms


def order_clause(column, term: OrderTerm):
    clause = column.desc() if term.descending else column.asc()
    if term.nulls == "first":
        clause = clause.nulls_first()
    elif term.nulls == "last":
        clause = clause.nulls_last()
    return clause


def with_tiebreakers(spec: ModelSpec, terms: Sequence[OrderTerm]) -> list[OrderTerm]:
    """Append primary key columns so cursor pagination sees a total order."""
    present = {term.field for term in terms}
    return list(terms) + [OrderTerm(field) for field in spec.primary_key if field not in present]


def cursor_clause(spec: ModelSpec, terms: Sequence[OrderTerm], cursor_row: Any):
    """Rows at or after ``cursor_row`` in the order described by ``terms``."""
    branches = []
    equal_so_far = []
    for term in terms:
        column = spec.column(term.field)
        value = getattr(cursor_row, term.field)
        if value is None:
            # NULL never compares greater; only rows sharing the NULL continue the tie.
            equal_so_far.append(column.is_(None))
            continue
        beyond = column < value if term.descending else column > value
        branches.append(and_(sa.true(), *equal_so_far, beyond))
        equal_so_far.append(column == value)
    branches.append(and_(sa.true(), *equal_so_far))
    return or_(*branches)
