from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Mapping, Optional, Sequence

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError

from workspace_store.db.enums import ARCHIVED_LIFECYCLES, WorkspaceLifecycleEnum
from workspace_store.db.errors import InvariantViolationError, QueryValidationError, WorkspaceStoreError
from workspace_store.db.models import (
    WORKSPACE_CHILD_RELATIONS,
    SimulationResult,
    Workspace,
    WorkspaceRun,
)
from workspace_store.db.repositories.asset_fingerprints import AssetFingerprintsRepository
from workspace_store.db.repositories.audit_bundles import AuditBundlesRepository
from workspace_store.db.repositories.base import Repository
from workspace_store.db.repositories.brand_twins import BrandTwinsRepository
from workspace_store.db.repositories.connectors import ConnectorsRepository
from workspace_store.db.repositories.consent_records import ConsentRecordsRepository
from workspace_store.db.repositories.decision_cards import DecisionCardsRepository
from workspace_store.db.repositories.simulation_results import SimulationResultsRepository
from workspace_store.db.repositories.workspace_runs import WorkspaceRunsRepository
from workspace_store.db.validation import as_utc, validate_workspace

logger = logging.getLogger(__name__)

CHILD_REPOSITORIES: Mapping[str, type[Repository]] = {
    "runs": WorkspaceRunsRepository,
    "audit_bundles": AuditBundlesRepository,
    "connectors": ConnectorsRepository,
    "consent_records": ConsentRecordsRepository,
    "brand_twins": BrandTwinsRepository,
    "decision_cards": DecisionCardsRepository,
    "simulation_results": SimulationResultsRepository,
    "asset_fingerprints": AssetFingerprintsRepository,
}

RECENT_RUNS_LIMIT = 10
RECENT_SIMULATIONS_LIMIT = 5


@dataclass
class WorkspaceWithChildren:
    workspace: Workspace
    runs: list[WorkspaceRun] = field(default_factory=list)
    simulation_results: list[SimulationResult] = field(default_factory=list)


def is_expired(workspace: Workspace, now: datetime) -> bool:
    """TTL expiry: ``created_at + ttl_hours`` lies strictly before ``now``."""
    return as_utc(workspace.created_at) + timedelta(hours=workspace.ttl_hours) < as_utc(now)


class WorkspacesRepository(Repository[Workspace]):
    model = Workspace
    validator = staticmethod(validate_workspace)
    touch_updated_at = True

    def create_workspace_with_children(
        self,
        data: Mapping[str, Any],
        children: Optional[Mapping[str, Sequence[Mapping[str, Any]]]] = None,
    ) -> Workspace:
        """Create a workspace and nested child records as one unit.

        ``children`` maps a collection name (``runs``, ``connectors``, ...) to
        child data without ``workspace_id``. Any failure rolls back the
        workspace and every child written before it.
        """
        children = children or {}
        unknown = set(children) - set(CHILD_REPOSITORIES)
        if unknown:
            raise QueryValidationError(f"Unknown workspace collections {sorted(unknown)}")

        nested = WorkspacesRepository(self.session, autocommit=False)
        try:
            workspace = nested.create(data)
            for relation, rows in children.items():
                repo = CHILD_REPOSITORIES[relation](self.session, autocommit=False)
                for row in rows:
                    repo.create({**row, "workspace_id": workspace.workspace_id})
            if self.autocommit:
                self.session.commit()
        except (WorkspaceStoreError, SQLAlchemyError):
            if self.autocommit:
                self.session.rollback()
            raise

        self.session.refresh(workspace)
        logger.info(
            "Workspace created",
            extra={
                "workspace_id": workspace.workspace_id,
                "tenant_id": workspace.tenant_id,
                "created_by": workspace.created_by,
                "child_counts": {relation: len(rows) for relation, rows in children.items()},
            },
        )
        return workspace

    def list_for_tenant(
        self, tenant_id: str, *, limit: int = 50, offset: int = 0
    ) -> tuple[list[Workspace], int]:
        rows = self.find_many(
            where={"tenant_id": tenant_id},
            order_by=[{"created_at": "desc"}, {"workspace_id": "asc"}],
            take=limit,
            skip=offset,
        )
        total = self.count(where={"tenant_id": tenant_id})
        return rows, total

    def update_lifecycle(self, workspace_id: str, lifecycle: str | WorkspaceLifecycleEnum) -> Workspace:
        try:
            value = WorkspaceLifecycleEnum(lifecycle).value
        except ValueError as exc:
            raise InvariantViolationError(f"Unknown workspace lifecycle {lifecycle!r}") from exc
        workspace = self.update(where={"workspace_id": workspace_id}, data={"lifecycle": value})
        logger.info(
            "Workspace lifecycle updated",
            extra={"workspace_id": workspace_id, "lifecycle": value},
        )
        return workspace

    def get_with_children(self, workspace_id: str) -> Optional[WorkspaceWithChildren]:
        workspace = self.find_unique({"workspace_id": workspace_id})
        if workspace is None:
            return None
        runs = self.session.scalars(
            select(WorkspaceRun)
            .where(WorkspaceRun.workspace_id == workspace_id)
            .order_by(WorkspaceRun.started_at.desc(), WorkspaceRun.run_id)
            .limit(RECENT_RUNS_LIMIT)
        ).all()
        simulations = self.session.scalars(
            select(SimulationResult)
            .where(SimulationResult.workspace_id == workspace_id)
            .order_by(SimulationResult.created_at.desc(), SimulationResult.simulation_id)
            .limit(RECENT_SIMULATIONS_LIMIT)
        ).all()
        return WorkspaceWithChildren(
            workspace=workspace, runs=list(runs), simulation_results=list(simulations)
        )

    def count_children(self, workspace_id: str) -> dict[str, int]:
        counts: dict[str, int] = {}
        for relation, model in WORKSPACE_CHILD_RELATIONS.items():
            stmt = select(func.count()).select_from(model).where(model.workspace_id == workspace_id)
            counts[relation] = int(self.session.scalar(stmt) or 0)
        return counts

    def _expired(self, now: datetime, *, include_archived: bool) -> list[Workspace]:
        # The earliest possible expiry is one hour after creation.
        stmt = select(Workspace).where(Workspace.created_at < as_utc(now) - timedelta(hours=1))
        if not include_archived:
            stmt = stmt.where(Workspace.lifecycle.not_in(ARCHIVED_LIFECYCLES))
        stmt = stmt.order_by(Workspace.created_at, Workspace.workspace_id)
        return [workspace for workspace in self.session.scalars(stmt).all() if is_expired(workspace, now)]

    def find_expired(self, now: datetime) -> list[Workspace]:
        return self._expired(now, include_archived=False)

    def delete_expired(self, now: datetime) -> int:
        expired_ids = [workspace.workspace_id for workspace in self._expired(now, include_archived=True)]
        if not expired_ids:
            return 0
        deleted = self.delete_many({"workspace_id": {"in": expired_ids}})
        logger.info("Cleaned up expired workspaces", extra={"count": deleted})
        return deleted

    def delete_workspace(self, workspace_id: str) -> Workspace:
        workspace = self.delete({"workspace_id": workspace_id})
        logger.info(
            "Workspace deleted",
            extra={"workspace_id": workspace_id, "tenant_id": workspace.tenant_id},
        )
        return workspace
