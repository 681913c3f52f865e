"""Domain invariants the column types alone do not enforce.

Each check receives the full post-write field values of one record (existing
values merged with the incoming change) and raises ``InvariantViolationError``.
"""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Mapping, Optional

from workspace_store.db.errors import InvariantViolationError

SCORE_MIN = Decimal("0")
SCORE_MAX = Decimal("1")


def as_utc(value: datetime) -> datetime:
    """SQLite hands back naive datetimes; they are stored as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _decimal(field: str, value: Any) -> Optional[Decimal]:
    if value is None:
        return None
    if isinstance(value, float):
        raise InvariantViolationError(f"{field} must be a Decimal, int or numeric string, not float")
    try:
        return Decimal(str(value))
    except InvalidOperation as exc:
        raise InvariantViolationError(f"{field} is not a valid decimal: {value!r}") from exc


def check_score(values: Mapping[str, Any], field: str) -> None:
    score = _decimal(field, values.get(field))
    if score is None:
        return
    if score < SCORE_MIN or score > SCORE_MAX:
        raise InvariantViolationError(f"{field} must be within [0, 1], got {score}")


def check_non_negative(values: Mapping[str, Any], field: str) -> None:
    amount = _decimal(field, values.get(field))
    if amount is not None and amount < 0:
        raise InvariantViolationError(f"{field} must not be negative, got {amount}")


def check_not_blank(values: Mapping[str, Any], field: str) -> None:
    value = values.get(field)
    if value is None or not str(value).strip():
        raise InvariantViolationError(f"{field} is required")


def validate_workspace(values: Mapping[str, Any]) -> None:
    ttl_hours = values.get("ttl_hours")
    if ttl_hours is not None and (not isinstance(ttl_hours, int) or ttl_hours <= 0):
        raise InvariantViolationError(f"ttl_hours must be a positive integer, got {ttl_hours!r}")
    check_not_blank(values, "tenant_id")


def validate_workspace_run(values: Mapping[str, Any]) -> None:
    check_score(values, "readiness_score")
    check_non_negative(values, "cost_usd")
    started_at, finished_at = values.get("started_at"), values.get("finished_at")
    if started_at is not None and finished_at is not None and as_utc(finished_at) < as_utc(started_at):
        raise InvariantViolationError("finished_at must not precede started_at")


def validate_audit_bundle(values: Mapping[str, Any]) -> None:
    # Every audit bundle is signed at creation.
    check_not_blank(values, "signature")
    check_not_blank(values, "signature_key_id")
    if values.get("signed_at") is None:
        raise InvariantViolationError("signed_at is required")


def validate_consent_record(values: Mapping[str, Any]) -> None:
    granted_at, expires_at = values.get("granted_at"), values.get("expires_at")
    if granted_at is not None and expires_at is not None and as_utc(expires_at) < as_utc(granted_at):
        raise InvariantViolationError("expires_at must not precede granted_at")


def validate_brand_twin(values: Mapping[str, Any]) -> None:
    check_score(values, "quality_score")


def validate_decision_card(values: Mapping[str, Any]) -> None:
    check_score(values, "readiness_score")
    approved_by, approved_at = values.get("approved_by"), values.get("approved_at")
    if (approved_by is None) != (approved_at is None):
        raise InvariantViolationError("approved_by and approved_at must be set together")


def validate_simulation_result(values: Mapping[str, Any]) -> None:
    for field in ("readiness_score", "policy_pass_pct", "citation_coverage", "duplication_risk"):
        check_score(values, field)
    check_non_negative(values, "cost_estimate_usd")


Validator = Callable[[Mapping[str, Any]], None]
