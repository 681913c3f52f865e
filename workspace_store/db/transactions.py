"""Retry and tenant-context helpers for multi-statement transactions."""

from __future__ import annotations

import logging
import time
from typing import Callable, Optional, TypeVar

from sqlalchemy import text
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from workspace_store.config import settings
from workspace_store.db.enums import IsolationLevelEnum
from workspace_store.db.errors import QueryValidationError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# SQLite only implements these two; stricter is the safe substitute.
SQLITE_ISOLATION_LEVELS = {
    IsolationLevelEnum.read_uncommitted: IsolationLevelEnum.read_uncommitted.value,
    IsolationLevelEnum.read_committed: IsolationLevelEnum.serializable.value,
    IsolationLevelEnum.repeatable_read: IsolationLevelEnum.serializable.value,
    IsolationLevelEnum.serializable: IsolationLevelEnum.serializable.value,
}


def resolve_isolation_level(dialect_name: str, level: str | IsolationLevelEnum) -> str:
    """Accept ``serializable`` or ``SERIALIZABLE`` style names and map them to the dialect."""
    if isinstance(level, IsolationLevelEnum):
        resolved = level
    else:
        try:
            resolved = IsolationLevelEnum[str(level).lower().replace(" ", "_")]
        except KeyError as exc:
            raise QueryValidationError(f"Unknown isolation level {level!r}") from exc
    if dialect_name == "sqlite":
        return SQLITE_ISOLATION_LEVELS[resolved]
    return resolved.value


def retry_transaction(
    operation: Callable[[], T],
    *,
    max_retries: Optional[int] = None,
    base_delay: Optional[float] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Run ``operation`` up to ``max_retries`` times on transient ``OperationalError``.

    Waits ``base_delay * 2 ** attempt`` between attempts. Constraint and
    validation errors are never retried.
    """
    attempts = max_retries if max_retries is not None else settings.TRANSACTION_MAX_RETRIES
    delay = base_delay if base_delay is not None else settings.TRANSACTION_RETRY_BASE_SECONDS
    if attempts < 1:
        raise QueryValidationError("max_retries must be at least 1")
    for attempt in range(1, attempts + 1):
        try:
            return operation()
        except OperationalError as exc:
            logger.warning(
                "Transaction attempt failed",
                extra={"attempt": attempt, "max_retries": attempts, "error": str(exc.orig or exc)},
            )
            if attempt == attempts:
                raise
            sleep(delay * (2 ** attempt))
    raise RuntimeError("unreachable")


def set_tenant_context(session: Session, tenant_id: str) -> bool:
    """Set ``app.current_tenant_id`` for row-level security policies.

    Scoped to the current transaction. Returns False on dialects without
    ``set_config`` (the setting only exists on PostgreSQL).
    """
    if not tenant_id or not tenant_id.strip():
        raise QueryValidationError("Tenant ID is required for database operations")
    if session.get_bind().dialect.name != "postgresql":
        return False
    session.execute(
        text("SELECT set_config('app.current_tenant_id', :tenant_id, true)"),
        {"tenant_id": tenant_id},
    )
    logger.debug("Tenant context set", extra={"tenant_id": tenant_id})
    return True


def clear_tenant_context(session: Session) -> None:
    if session.get_bind().dialect.name != "postgresql":
        return
    session.execute(text("SELECT set_config('app.current_tenant_id', NULL, true)"))


def get_current_tenant_context(session: Session) -> Optional[str]:
    if session.get_bind().dialect.name != "postgresql":
        return None
    value = session.execute(text("SELECT current_setting('app.current_tenant_id', true)")).scalar()
    return value or None
