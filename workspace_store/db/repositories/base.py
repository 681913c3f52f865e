from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime
from decimal import Decimal
from typing import Any, ClassVar, Generic, Iterable, Mapping, Optional, Sequence, TypeVar

import sqlalchemy as sa
from sqlalchemy import delete, func, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from workspace_store.db.base import Base
from workspace_store.db.errors import (
    InvariantViolationError,
    QueryValidationError,
    RecordNotFoundError,
    UniqueConstraintError,
    translate_integrity_error,
)
from workspace_store.db.json_fields import is_null_sentinel, to_write_value
from workspace_store.db.models import utcnow
from workspace_store.db.query import (
    ModelSpec,
    OrderTerm,
    build_where,
    cursor_clause,
    field_filter,
    model_spec,
    normalize_order_by,
    operator_filter,
    order_clause,
    with_tiebreakers,
)
from workspace_store.db.validation import Validator, as_utc

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=Base)

AGGREGATE_KEYS = ("_count", "_avg", "_sum", "_min", "_max")
ATOMIC_NUMBER_OPERATIONS = ("increment", "decrement", "multiply", "divide")


def _to_decimal(value: Any) -> Optional[Decimal]:
    if value is None or isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def _key_marker(key: tuple) -> tuple:
    # Caller keys may carry any UTC offset; loaded keys are UTC.
    return tuple(as_utc(part) if isinstance(part, datetime) else part for part in key)


def _aggregate_fields(kind: str, selection: Any) -> list[str]:
    """Normalize ``True`` / ``["a", "b"]`` / ``{"a": True}`` into a field list."""
    if selection is None or selection is False:
        return []
    if selection is True:
        if kind != "_count":
            raise QueryValidationError(f"{kind} needs explicit fields")
        return ["_all"]
    if isinstance(selection, str):
        return [selection]
    if isinstance(selection, Mapping):
        return [field for field, enabled in selection.items() if enabled]
    if isinstance(selection, (list, tuple, set, frozenset)):
        return list(selection)
    raise QueryValidationError(f"{kind}: unsupported selection {selection!r}")


class Repository(Generic[ModelT]):
    """Typed CRUD, aggregate and group-by access for one mapped model.

    Reads never commit. Writes commit on success and roll back on failure,
    unless the repository was created with ``autocommit=False`` (inside
    ``WorkspaceStore.transaction``), in which case they only flush and leave
    commit/rollback to the enclosing transaction.
    """

    model: ClassVar[type]
    compound_keys: ClassVar[Mapping[str, tuple[str, ...]]] = {}
    validator: ClassVar[Optional[Validator]] = None
    immutable: ClassVar[bool] = False
    touch_updated_at: ClassVar[bool] = False

    def __init__(self, session: Session, *, autocommit: bool = True) -> None:
        self.session = session
        self.autocommit = autocommit

    @property
    def spec(self) -> ModelSpec:
        return model_spec(self.model)

    @property
    def unique_keys(self) -> tuple[tuple[str, ...], ...]:
        keys = [self.spec.primary_key]
        for fields in self.compound_keys.values():
            if fields not in keys:
                keys.append(fields)
        return tuple(keys)

    # -- transaction plumbing -------------------------------------------------

    @contextmanager
    def _write_scope(self):
        try:
            yield
            if self.autocommit:
                self.session.commit()
            else:
                self.session.flush()
        except IntegrityError as exc:
            self._rollback()
            error = translate_integrity_error(exc, model=self.spec.name, unique_keys=self.unique_keys)
            logger.info(
                "Constraint violation",
                extra={"model": self.spec.name, "error_type": type(error).__name__},
            )
            raise error from exc
        except SQLAlchemyError:
            self._rollback()
            raise

    def _rollback(self) -> None:
        if self.autocommit:
            self.session.rollback()

    # -- argument handling ----------------------------------------------------

    def _unique_where(self, where: Any) -> dict[str, Any]:
        if not isinstance(where, Mapping) or not where:
            raise QueryValidationError(f"{self.spec.name}: a unique filter is required")
        flat: dict[str, Any] = {}
        for key, value in where.items():
            if key in self.compound_keys:
                fields = self.compound_keys[key]
                if not isinstance(value, Mapping) or set(value) != set(fields):
                    raise QueryValidationError(
                        f"{self.spec.name}.{key} requires exactly {', '.join(fields)}"
                    )
                flat.update(value)
            else:
                flat[key] = value
        for key in self.unique_keys:
            if all(field in flat and self._is_key_value(flat[field]) for field in key):
                return flat
        options = " | ".join("(" + ", ".join(key) + ")" for key in self.unique_keys)
        raise QueryValidationError(f"{self.spec.name}: unique filter must cover one of {options}")

    @staticmethod
    def _is_key_value(value: Any) -> bool:
        return value is not None and not isinstance(value, Mapping) and not is_null_sentinel(value)

    @staticmethod
    def _check_paging(take: Optional[int], skip: Optional[int]) -> None:
        if take is not None and (not isinstance(take, int) or isinstance(take, bool)):
            raise QueryValidationError("take must be an integer")
        if skip is not None and (not isinstance(skip, int) or isinstance(skip, bool) or skip < 0):
            raise QueryValidationError("skip must be a non-negative integer")

    def _distinct_fields(self, distinct: Any) -> list[str]:
        fields = [distinct] if isinstance(distinct, str) else list(distinct)
        for field in fields:
            if field not in self.spec.fields or field in self.spec.json_fields:
                raise QueryValidationError(f"Cannot apply distinct on {self.spec.name}.{field}")
        return fields

    def _prepare_values(self, data: Any, *, creating: bool) -> dict[str, Any]:
        spec = self.spec
        if not isinstance(data, Mapping):
            raise QueryValidationError(f"{spec.name}: data must be a mapping")
        unknown = set(data) - set(spec.fields)
        if unknown:
            raise QueryValidationError(spec.unknown_fields_message(unknown))
        values: dict[str, Any] = {}
        for field, value in data.items():
            if field in spec.json_fields:
                values[field] = to_write_value(
                    f"{spec.name}.{field}", value, nullable=field in spec.nullable_fields
                )
            elif value is None:
                if field not in spec.nullable_fields:
                    raise QueryValidationError(f"{spec.name}.{field} cannot be null")
                values[field] = None
            elif isinstance(value, Mapping):
                if creating:
                    raise QueryValidationError(f"{spec.name}.{field}: nested writes are not supported")
                values[field] = self._atomic_update(field, value)
            else:
                values[field] = value
        if creating:
            missing = spec.required_fields - set(data)
            if missing:
                raise QueryValidationError(f"{spec.name}: missing required fields {sorted(missing)}")
        return values

    def _atomic_update(self, field: str, operation: Mapping[str, Any]):
        if len(operation) != 1:
            raise QueryValidationError(f"{self.spec.name}.{field}: exactly one update operation expected")
        ((op, operand),) = operation.items()
        if op == "set":
            if operand is None and field not in self.spec.nullable_fields:
                raise QueryValidationError(f"{self.spec.name}.{field} cannot be null")
            return operand
        if op not in ATOMIC_NUMBER_OPERATIONS or field not in self.spec.numeric_fields:
            raise QueryValidationError(f"{self.spec.name}.{field}: unsupported update operation {op!r}")
        column = self.spec.column(field)
        if op == "increment":
            return column + operand
        if op == "decrement":
            return column - operand
        if op == "multiply":
            return column * operand
        return column / operand

    @staticmethod
    def _predict(current: Any, value: Any) -> Any:
        """Value a field will hold after an update, for invariant checks."""
        if not isinstance(value, Mapping):
            return value
        ((op, operand),) = value.items()
        if op == "set":
            return operand
        if current is None:
            return None
        if isinstance(current, Decimal):
            operand = Decimal(str(operand))
        if op == "increment":
            return current + operand
        if op == "decrement":
            return current - operand
        if op == "multiply":
            return current * operand
        return current / operand

    def _validate_create(self, data: Mapping[str, Any]) -> None:
        if self.validator is not None:
            self.validator(data)

    def _validate_update(self, record: ModelT, data: Mapping[str, Any]) -> None:
        if self.immutable:
            raise InvariantViolationError(f"{self.spec.name} records are immutable")
        if self.validator is None:
            return
        merged = {
            field: getattr(record, field) for field in self.spec.fields if field not in self.spec.json_fields
        }
        for field, value in data.items():
            if field not in self.spec.json_fields:
                merged[field] = self._predict(merged.get(field), value)
        self.validator(merged)

    def _with_touch(self, values: dict[str, Any]) -> dict[str, Any]:
        if self.touch_updated_at and "updated_at" not in values:
            values["updated_at"] = utcnow()
        return values

    # -- reads ----------------------------------------------------------------

    def _select(
        self,
        *,
        where: Optional[Mapping[str, Any]],
        order_by: Any,
        cursor: Optional[Mapping[str, Any]],
        take: Optional[int],
    ) -> tuple[sa.Select, bool]:
        spec = self.spec
        reverse = take is not None and take < 0
        terms: list[OrderTerm] = normalize_order_by(spec, order_by)
        if terms or cursor is not None or reverse:
            terms = with_tiebreakers(spec, terms)
        if reverse:
            terms = [term.reversed() for term in terms]
        stmt = select(self.model).where(build_where(spec, where))
        if cursor is not None:
            cursor_row = self.find_unique(cursor)
            if cursor_row is None:
                stmt = stmt.where(sa.false())
            else:
                stmt = stmt.where(cursor_clause(spec, terms, cursor_row))
        if terms:
            stmt = stmt.order_by(*[order_clause(spec.column(term.field), term) for term in terms])
        return stmt, reverse

    def _query(
        self,
        *,
        where: Optional[Mapping[str, Any]] = None,
        order_by: Any = None,
        cursor: Optional[Mapping[str, Any]] = None,
        take: Optional[int] = None,
        skip: Optional[int] = None,
        distinct: Any = None,
    ) -> list[ModelT]:
        self._check_paging(take, skip)
        distinct_fields = self._distinct_fields(distinct) if distinct else None
        stmt, reverse = self._select(where=where, order_by=order_by, cursor=cursor, take=take)
        limit = abs(take) if take is not None else None
        if distinct_fields:
            seen: set[tuple[Any, ...]] = set()
            rows = []
            for row in self.session.scalars(stmt).all():
                marker = tuple(getattr(row, field) for field in distinct_fields)
                if marker in seen:
                    continue
                seen.add(marker)
                rows.append(row)
            rows = rows[skip or 0 :]
            if limit is not None:
                rows = rows[:limit]
        else:
            if skip:
                stmt = stmt.offset(skip)
            if limit is not None:
                stmt = stmt.limit(limit)
            rows = list(self.session.scalars(stmt).all())
        if reverse:
            rows.reverse()
        return rows

    def find_unique(self, where: Mapping[str, Any]) -> Optional[ModelT]:
        flat = self._unique_where(where)
        stmt = select(self.model).where(build_where(self.spec, flat))
        return self.session.scalars(stmt).first()

    def find_unique_or_throw(self, where: Mapping[str, Any]) -> ModelT:
        record = self.find_unique(where)
        if record is None:
            raise RecordNotFoundError(self.spec.name, dict(where))
        return record

    def find_first(
        self,
        *,
        where: Optional[Mapping[str, Any]] = None,
        order_by: Any = None,
        cursor: Optional[Mapping[str, Any]] = None,
        take: Optional[int] = None,
        skip: Optional[int] = None,
        distinct: Any = None,
    ) -> Optional[ModelT]:
        first_take = -1 if take is not None and take < 0 else 1
        rows = self._query(
            where=where, order_by=order_by, cursor=cursor, take=first_take, skip=skip, distinct=distinct
        )
        return rows[0] if rows else None

    def find_first_or_throw(self, **kwargs: Any) -> ModelT:
        record = self.find_first(**kwargs)
        if record is None:
            raise RecordNotFoundError(self.spec.name, dict(kwargs.get("where") or {}))
        return record

    def find_many(
        self,
        *,
        where: Optional[Mapping[str, Any]] = None,
        order_by: Any = None,
        cursor: Optional[Mapping[str, Any]] = None,
        take: Optional[int] = None,
        skip: Optional[int] = None,
        distinct: Any = None,
    ) -> list[ModelT]:
        return self._query(
            where=where, order_by=order_by, cursor=cursor, take=take, skip=skip, distinct=distinct
        )

    def count(
        self,
        *,
        where: Optional[Mapping[str, Any]] = None,
        order_by: Any = None,
        cursor: Optional[Mapping[str, Any]] = None,
        take: Optional[int] = None,
        skip: Optional[int] = None,
        select: Any = None,
    ):
        """Row count, or per-field non-null counts when ``select`` names fields."""
        if select is not None:
            result = self.aggregate(
                where=where, order_by=order_by, cursor=cursor, take=take, skip=skip, count=select
            )
            return result["_count"]
        if cursor is None and take is None and not skip:
            stmt = sa.select(func.count()).select_from(self.model).where(build_where(self.spec, where))
            return int(self.session.scalar(stmt) or 0)
        return len(self._query(where=where, order_by=order_by, cursor=cursor, take=take, skip=skip))

    # -- aggregates -----------------------------------------------------------

    def _check_aggregate_field(self, kind: str, field: str) -> None:
        spec = self.spec
        if kind == "_count" and field == "_all":
            return
        if field not in spec.fields:
            raise QueryValidationError(f"{kind}: unknown field {spec.name}.{field}")
        if kind in ("_avg", "_sum") and field not in spec.numeric_fields:
            raise QueryValidationError(f"{kind}: {spec.name}.{field} is not numeric")
        if kind in ("_min", "_max") and field in spec.json_fields:
            raise QueryValidationError(f"{kind}: {spec.name}.{field} is a JSON field")

    def _aggregate_expr(self, kind: str, field: str, source=None):
        if kind == "_count" and field == "_all":
            return func.count()
        column = self._source_column(field, source)
        if kind == "_count":
            return func.count(column)
        if kind == "_avg":
            return func.avg(column)
        if kind == "_sum":
            return func.sum(column)
        if kind == "_min":
            return func.min(column)
        return func.max(column)

    def _source_column(self, field: str, source=None):
        if source is None:
            return self.spec.column(field)
        return source.c[self.spec.column_names[field]]

    def _aggregate_columns(self, selections: Mapping[str, Any], source=None) -> tuple[list, list]:
        """Labeled select columns plus (kind, field) pairs to read them back."""
        columns = []
        plan = []
        for kind in AGGREGATE_KEYS:
            for field in _aggregate_fields(kind, selections.get(kind)):
                self._check_aggregate_field(kind, field)
                if kind == "_avg":
                    # Averages are sum / count in Decimal so no backend rounds through floats.
                    column = self._source_column(field, source)
                    columns.append(func.sum(column).label(f"_avg__{field}__sum"))
                    columns.append(func.count(column).label(f"_avg__{field}__count"))
                else:
                    columns.append(self._aggregate_expr(kind, field, source).label(f"{kind}__{field}"))
                plan.append((kind, field))
        return columns, plan

    def _read_aggregates(self, row: Mapping[str, Any], plan: Sequence[tuple[str, str]]) -> dict[str, Any]:
        result: dict[str, dict[str, Any]] = {}
        for kind, field in plan:
            bucket = result.setdefault(kind, {})
            if kind == "_count":
                bucket[field] = int(row[f"{kind}__{field}"] or 0)
            elif kind == "_avg":
                total, count = row[f"_avg__{field}__sum"], row[f"_avg__{field}__count"]
                if not count or total is None:
                    bucket[field] = None
                elif field in self.spec.decimal_fields:
                    bucket[field] = _to_decimal(total) / count
                else:
                    bucket[field] = float(total) / count
            else:
                value = row[f"{kind}__{field}"]
                if field in self.spec.decimal_fields:
                    value = _to_decimal(value)
                bucket[field] = value
        return result

    def aggregate(
        self,
        *,
        where: Optional[Mapping[str, Any]] = None,
        order_by: Any = None,
        cursor: Optional[Mapping[str, Any]] = None,
        take: Optional[int] = None,
        skip: Optional[int] = None,
        count: Any = None,
        avg: Any = None,
        sum: Any = None,
        min: Any = None,
        max: Any = None,
    ) -> dict[str, Any]:
        """``_count``/``_avg``/``_sum``/``_min``/``_max`` over the selected rows."""
        selections = {"_count": count, "_avg": avg, "_sum": sum, "_min": min, "_max": max}
        self._check_paging(take, skip)
        stmt, _ = self._select(where=where, order_by=order_by, cursor=cursor, take=take)
        if skip:
            stmt = stmt.offset(skip)
        if take is not None:
            stmt = stmt.limit(abs(take))
        source = stmt.subquery()
        columns, plan = self._aggregate_columns(selections, source)
        if not columns:
            raise QueryValidationError("aggregate needs at least one of count/avg/sum/min/max")
        row = self.session.execute(sa.select(*columns).select_from(source)).mappings().one()
        return self._read_aggregates(row, plan)

    def group_by(
        self,
        *,
        by: Sequence[str],
        where: Optional[Mapping[str, Any]] = None,
        having: Optional[Mapping[str, Any]] = None,
        order_by: Any = None,
        take: Optional[int] = None,
        skip: Optional[int] = None,
        count: Any = None,
        avg: Any = None,
        sum: Any = None,
        min: Any = None,
        max: Any = None,
    ) -> list[dict[str, Any]]:
        spec = self.spec
        by_fields = [by] if isinstance(by, str) else list(by or [])
        if not by_fields:
            raise QueryValidationError("group_by requires at least one field in by")
        for field in by_fields:
            if field not in spec.fields:
                raise QueryValidationError(f"group_by: unknown field {spec.name}.{field}")
            if field in spec.json_fields:
                raise QueryValidationError(f"group_by: cannot group by JSON field {spec.name}.{field}")
        self._check_paging(take, skip)
        if take is not None and take < 0:
            raise QueryValidationError("group_by take must be non-negative")
        if (take is not None or skip) and not order_by:
            raise QueryValidationError("group_by with take/skip requires order_by")

        selections = {"_count": count, "_avg": avg, "_sum": sum, "_min": min, "_max": max}
        agg_columns, plan = self._aggregate_columns(selections)
        order_clauses = self._group_order(order_by, by_fields)
        having_clause = self._having(having, by_fields) if having else None

        group_columns = [spec.column(field) for field in by_fields]
        stmt = (
            sa.select(*[column.label(field) for column, field in zip(group_columns, by_fields)], *agg_columns)
            .where(build_where(spec, where))
            .group_by(*group_columns)
        )
        if having_clause is not None:
            stmt = stmt.having(having_clause)
        if order_clauses:
            stmt = stmt.order_by(*order_clauses)
        if skip:
            stmt = stmt.offset(skip)
        if take is not None:
            stmt = stmt.limit(take)

        groups = []
        for row in self.session.execute(stmt).mappings().all():
            group: dict[str, Any] = {field: row[field] for field in by_fields}
            group.update(self._read_aggregates(row, plan))
            groups.append(group)
        return groups

    def _group_order(self, order_by: Any, by_fields: Sequence[str]) -> list:
        if not order_by:
            return []
        items = [order_by] if isinstance(order_by, Mapping) else list(order_by)
        clauses = []
        for item in items:
            for key, value in item.items():
                if key in AGGREGATE_KEYS:
                    if not isinstance(value, Mapping):
                        raise QueryValidationError(f"group_by order_by {key} expects {{field: direction}}")
                    for field, direction in value.items():
                        self._check_aggregate_field(key, field)
                        terms = normalize_order_by(self.spec, {field: direction}) if field != "_all" else None
                        term = terms[0] if terms else OrderTerm(field, direction == "desc")
                        clauses.append(order_clause(self._aggregate_expr(key, field), term))
                    continue
                if key not in by_fields:
                    raise QueryValidationError(
                        f"group_by: order_by field {key!r} must also appear in by"
                    )
                (term,) = normalize_order_by(self.spec, {key: value})
                clauses.append(order_clause(self.spec.column(key), term))
        return clauses

    def _having(self, having: Mapping[str, Any], by_fields: Sequence[str]):
        if not isinstance(having, Mapping):
            raise QueryValidationError("having must be a mapping")
        clauses = []
        for key, value in having.items():
            if key in ("AND", "OR", "NOT"):
                items = [value] if isinstance(value, Mapping) else list(value)
                nested = [self._having(item, by_fields) for item in items]
                if key == "AND":
                    clauses.append(sa.and_(sa.true(), *nested))
                elif key == "OR":
                    clauses.append(sa.or_(sa.false(), *nested))
                else:
                    clauses.append(sa.and_(sa.true(), *[sa.not_(clause) for clause in nested]))
                continue
            if key not in self.spec.fields:
                raise QueryValidationError(f"having: unknown field {self.spec.name}.{key}")
            if isinstance(value, Mapping) and value and set(value) <= set(AGGREGATE_KEYS):
                for kind, condition in value.items():
                    self._check_aggregate_field(kind, key)
                    expr = self._aggregate_expr(kind, key)
                    label = f"having {kind}({key})"
                    if isinstance(condition, Mapping):
                        clauses.append(operator_filter(expr, condition, label=label))
                    else:
                        clauses.append(expr == condition)
                continue
            if key not in by_fields:
                raise QueryValidationError(
                    f"having: field {key!r} must appear in by unless filtered through an aggregate"
                )
            clauses.append(field_filter(self.spec, key, value))
        return sa.and_(sa.true(), *clauses)

    # -- writes ---------------------------------------------------------------

    def create(self, data: Mapping[str, Any]) -> ModelT:
        values = self._prepare_values(data, creating=True)
        self._validate_create(data)
        record = self.model(**values)
        with self._write_scope():
            self.session.add(record)
            self.session.flush()
        self.session.refresh(record)
        logger.debug("Record created", extra={"model": self.spec.name})
        return record

    def create_many(self, data: Iterable[Mapping[str, Any]], *, skip_duplicates: bool = False) -> int:
        return len(self._create_many(data, skip_duplicates=skip_duplicates))

    def create_many_and_return(
        self, data: Iterable[Mapping[str, Any]], *, skip_duplicates: bool = False
    ) -> list[ModelT]:
        created = self._create_many(data, skip_duplicates=skip_duplicates)
        if not created:
            return []
        return self._reload(created)

    def _create_many(self, data: Iterable[Mapping[str, Any]], *, skip_duplicates: bool) -> list[tuple]:
        """Insert rows, returning primary key tuples of the rows actually written."""
        items = list(data)
        prepared = []
        for item in items:
            prepared.append(self._prepare_values(item, creating=True))
            self._validate_create(item)
        if not prepared:
            return []
        pk = self.spec.primary_key
        if not skip_duplicates:
            records = [self.model(**values) for values in prepared]
            with self._write_scope():
                self.session.add_all(records)
                self.session.flush()
                keys = [tuple(getattr(record, field) for field in pk) for record in records]
            return keys
        written = []
        with self._write_scope():
            for values in prepared:
                result = self.session.execute(self._insert_ignoring_conflicts(values))
                if result.rowcount:
                    written.append(tuple(values[field] for field in pk))
        return written

    def _insert_ignoring_conflicts(self, values: Mapping[str, Any]):
        dialect = self.session.get_bind().dialect.name
        table = self.model.__table__
        row = {self.spec.column_names[field]: value for field, value in values.items()}
        if dialect == "postgresql":
            return postgresql.insert(table).values(**row).on_conflict_do_nothing()
        if dialect == "sqlite":
            return sqlite.insert(table).values(**row).on_conflict_do_nothing()
        raise QueryValidationError(f"skip_duplicates is not supported on {dialect}")

    def _pk_clause(self, keys: Sequence[tuple]):
        columns = [self.spec.column(field) for field in self.spec.primary_key]
        if len(columns) == 1:
            return columns[0].in_([key[0] for key in keys])
        return sa.tuple_(*columns).in_(keys)

    def _reload(self, keys: Sequence[tuple]) -> list[ModelT]:
        stmt = select(self.model).where(self._pk_clause(keys)).execution_options(populate_existing=True)
        by_key = {
            _key_marker(tuple(getattr(row, field) for field in self.spec.primary_key)): row
            for row in self.session.scalars(stmt).all()
        }
        return [by_key[_key_marker(key)] for key in keys if _key_marker(key) in by_key]

    def update(self, *, where: Mapping[str, Any], data: Mapping[str, Any]) -> ModelT:
        record = self.find_unique(where)
        if record is None:
            raise RecordNotFoundError(self.spec.name, dict(where))
        values = self._prepare_values(data, creating=False)
        self._validate_update(record, data)
        with self._write_scope():
            for field, value in self._with_touch(values).items():
                setattr(record, field, value)
            self.session.flush()
        self.session.refresh(record)
        logger.debug("Record updated", extra={"model": self.spec.name, "fields": sorted(data)})
        return record

    def update_many(self, *, where: Optional[Mapping[str, Any]] = None, data: Mapping[str, Any]) -> int:
        return len(self._update_many(where=where, data=data))

    def update_many_and_return(
        self, *, where: Optional[Mapping[str, Any]] = None, data: Mapping[str, Any]
    ) -> list[ModelT]:
        keys = self._update_many(where=where, data=data)
        if not keys:
            return []
        return self._reload(keys)

    def _update_many(self, *, where: Optional[Mapping[str, Any]], data: Mapping[str, Any]) -> list[tuple]:
        values = self._prepare_values(data, creating=False)
        pk = self.spec.primary_key
        targets = list(self.session.scalars(select(self.model).where(build_where(self.spec, where))).all())
        if self.immutable and targets:
            raise InvariantViolationError(f"{self.spec.name} records are immutable")
        for record in targets:
            self._validate_update(record, data)
        if not targets:
            return []
        keys = [tuple(getattr(record, field) for field in pk) for record in targets]
        assignments = {self.spec.column(field): value for field, value in self._with_touch(values).items()}
        stmt = (
            update(self.model)
            .where(self._pk_clause(keys))
            .values(assignments)
            .execution_options(synchronize_session="fetch")
        )
        with self._write_scope():
            self.session.execute(stmt)
        return keys

    def upsert(
        self,
        *,
        where: Mapping[str, Any],
        create: Mapping[str, Any],
        update: Mapping[str, Any],
    ) -> ModelT:
        """Run exactly one of create/update, keyed on the unique filter."""
        flat = self._unique_where(where)
        if self.find_unique(flat) is not None:
            return self.update(where=flat, data=update)
        try:
            return self.create(create)
        except UniqueConstraintError:
            # Lost a race with a concurrent insert of the same key.
            if not self.autocommit or self.find_unique(flat) is None:
                raise
            return self.update(where=flat, data=update)

    def delete(self, where: Mapping[str, Any]) -> ModelT:
        record = self.find_unique(where)
        if record is None:
            raise RecordNotFoundError(self.spec.name, dict(where))
        keys = [tuple(getattr(record, field) for field in self.spec.primary_key)]
        # Detach first so the returned record keeps its loaded values after commit.
        self.session.expunge(record)
        with self._write_scope():
            self.session.execute(
                delete(self.model)
                .where(self._pk_clause(keys))
                .execution_options(synchronize_session="fetch")
            )
        logger.debug("Record deleted", extra={"model": self.spec.name})
        return record

    def delete_many(self, where: Optional[Mapping[str, Any]] = None) -> int:
        stmt = (
            delete(self.model)
            .where(build_where(self.spec, where))
            .execution_options(synchronize_session="fetch")
        )
        with self._write_scope():
            result = self.session.execute(stmt)
        return int(result.rowcount or 0)
