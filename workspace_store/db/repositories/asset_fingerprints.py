from __future__ import annotations

from typing import Optional

from workspace_store.db.models import AssetFingerprint
from workspace_store.db.repositories.base import Repository


class AssetFingerprintsRepository(Repository[AssetFingerprint]):
    """The ``metadata`` column is mapped as ``metadata_json``; writes and filters use that name."""

    model = AssetFingerprint

    def find_by_fingerprint(
        self, fingerprint: str, *, workspace_id: Optional[str] = None
    ) -> list[AssetFingerprint]:
        where = {"fingerprint": fingerprint}
        if workspace_id:
            where["workspace_id"] = workspace_id
        return self.find_many(where=where, order_by=[{"created_at": "asc"}, {"asset_id": "asc"}])
