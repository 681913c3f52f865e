from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from workspace_store.db.enums import WorkspaceRunStatusEnum
from workspace_store.db.errors import InvariantViolationError
from workspace_store.db.json_fields import JsonNull
from workspace_store.db.models import WorkspaceRun, utcnow
from workspace_store.db.repositories.base import Repository
from workspace_store.db.validation import validate_workspace_run

FINISHED_STATUSES = (
    WorkspaceRunStatusEnum.completed.value,
    WorkspaceRunStatusEnum.failed.value,
    WorkspaceRunStatusEnum.cancelled.value,
)


class WorkspaceRunsRepository(Repository[WorkspaceRun]):
    model = WorkspaceRun
    validator = staticmethod(validate_workspace_run)

    def finish_run(
        self,
        run_id: str,
        *,
        status: str = WorkspaceRunStatusEnum.completed.value,
        finished_at: Optional[datetime] = None,
        cost_usd: Optional[Decimal] = None,
        readiness_score: Optional[Decimal] = None,
        results: Any = None,
    ) -> WorkspaceRun:
        status = WorkspaceRunStatusEnum(status).value
        if status not in FINISHED_STATUSES:
            raise InvariantViolationError(f"finish_run expects a terminal status, got {status!r}")
        data: dict[str, Any] = {"status": status, "finished_at": finished_at or utcnow()}
        if cost_usd is not None:
            data["cost_usd"] = cost_usd
        if readiness_score is not None:
            data["readiness_score"] = readiness_score
        if results is not None:
            data["results"] = results
        return self.update(where={"run_id": run_id}, data=data)

    def list_for_workspace(self, workspace_id: str, *, limit: int = 10) -> list[WorkspaceRun]:
        return self.find_many(
            where={"workspace_id": workspace_id},
            order_by=[{"started_at": "desc"}, {"run_id": "asc"}],
            take=limit,
        )
