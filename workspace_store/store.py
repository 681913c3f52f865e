from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Callable, Iterator, Optional, TypeVar

from sqlalchemy.orm import Session

from workspace_store.db.enums import IsolationLevelEnum
from workspace_store.db.errors import QueryValidationError
from workspace_store.db.repositories import (
    AssetFingerprintsRepository,
    AuditBundlesRepository,
    BrandTwinsRepository,
    ConnectorsRepository,
    ConsentRecordsRepository,
    DecisionCardsRepository,
    SimulationResultsRepository,
    WorkspaceRunsRepository,
    WorkspacesRepository,
)
from workspace_store.db.transactions import resolve_isolation_level, retry_transaction, set_tenant_context

logger = logging.getLogger(__name__)

T = TypeVar("T")


class WorkspaceStore:
    """One session plus a repository per entity.

    Outside ``transaction()`` every repository write commits on its own.
    Inside it the repositories share one transaction that commits when the
    block exits and rolls back if it raises.
    """

    def __init__(self, session: Session, *, autocommit: bool = True) -> None:
        self.session = session
        self.autocommit = autocommit
        self.workspaces = WorkspacesRepository(session, autocommit=autocommit)
        self.runs = WorkspaceRunsRepository(session, autocommit=autocommit)
        self.audit_bundles = AuditBundlesRepository(session, autocommit=autocommit)
        self.connectors = ConnectorsRepository(session, autocommit=autocommit)
        self.consent_records = ConsentRecordsRepository(session, autocommit=autocommit)
        self.brand_twins = BrandTwinsRepository(session, autocommit=autocommit)
        self.decision_cards = DecisionCardsRepository(session, autocommit=autocommit)
        self.simulation_results = SimulationResultsRepository(session, autocommit=autocommit)
        self.asset_fingerprints = AssetFingerprintsRepository(session, autocommit=autocommit)

    @contextmanager
    def transaction(
        self,
        isolation_level: Optional[str | IsolationLevelEnum] = None,
        *,
        tenant_id: Optional[str] = None,
    ) -> Iterator["WorkspaceStore"]:
        if not self.autocommit:
            raise QueryValidationError("Nested transactions are not supported")
        session = self.session
        if session.new or session.dirty or session.deleted:
            raise QueryValidationError("Session has pending changes; commit or roll back first")
        # Start from a fresh transaction so the isolation level applies to all of it.
        if session.in_transaction():
            session.commit()
        if isolation_level is not None:
            level = resolve_isolation_level(session.get_bind().dialect.name, isolation_level)
            session.connection(execution_options={"isolation_level": level})
        if tenant_id is not None:
            set_tenant_context(session, tenant_id)
        scoped = WorkspaceStore(session, autocommit=False)
        try:
            yield scoped
            session.commit()
        except Exception:
            session.rollback()
            logger.debug("Transaction rolled back")
            raise

    def run_in_transaction(
        self,
        fn: Callable[["WorkspaceStore"], T],
        *,
        max_retries: Optional[int] = None,
        isolation_level: Optional[str | IsolationLevelEnum] = None,
        tenant_id: Optional[str] = None,
        sleep: Optional[Callable[[float], None]] = None,
    ) -> T:
        """Run ``fn`` in a transaction, retrying transient database failures."""

        def attempt() -> T:
            with self.transaction(isolation_level, tenant_id=tenant_id) as tx:
                return fn(tx)

        kwargs = {"sleep": sleep} if sleep is not None else {}
        return retry_transaction(attempt, max_retries=max_retries, **kwargs)
