from __future__ import annotations

from typing import Optional

from workspace_store.db.models import BrandTwin
from workspace_store.db.repositories.base import Repository
from workspace_store.db.validation import validate_brand_twin

SNAPSHOT_KEY = "brand_id_snapshot_at"


class BrandTwinsRepository(Repository[BrandTwin]):
    """Brand snapshots keyed by ``(brand_id, snapshot_at)``."""

    model = BrandTwin
    compound_keys = {SNAPSHOT_KEY: ("brand_id", "snapshot_at")}
    validator = staticmethod(validate_brand_twin)

    def latest_snapshot(self, brand_id: str, *, workspace_id: Optional[str] = None) -> Optional[BrandTwin]:
        where = {"brand_id": brand_id}
        if workspace_id:
            where["workspace_id"] = workspace_id
        return self.find_first(where=where, order_by={"snapshot_at": "desc"})
