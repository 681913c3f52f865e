from __future__ import annotations

from typing import Optional

from workspace_store.db.models import SimulationResult
from workspace_store.db.repositories.base import Repository
from workspace_store.db.validation import validate_simulation_result


class SimulationResultsRepository(Repository[SimulationResult]):
    model = SimulationResult
    validator = staticmethod(validate_simulation_result)

    def latest_for_workspace(self, workspace_id: str) -> Optional[SimulationResult]:
        return self.find_first(
            where={"workspace_id": workspace_id},
            order_by=[{"created_at": "desc"}, {"simulation_id": "desc"}],
        )

    def recent_for_workspace(self, workspace_id: str, *, limit: int = 10) -> list[SimulationResult]:
        return self.find_many(
            where={"workspace_id": workspace_id},
            order_by=[{"created_at": "desc"}, {"simulation_id": "desc"}],
            take=limit,
        )
