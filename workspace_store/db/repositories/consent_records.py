from __future__ import annotations

from datetime import datetime
from typing import Optional

from workspace_store.db.models import ConsentRecord, utcnow
from workspace_store.db.repositories.base import Repository
from workspace_store.db.validation import as_utc, validate_consent_record


class ConsentRecordsRepository(Repository[ConsentRecord]):
    model = ConsentRecord
    validator = staticmethod(validate_consent_record)

    def list_active(
        self,
        now: Optional[datetime] = None,
        *,
        workspace_id: Optional[str] = None,
        consent_type: Optional[str] = None,
    ) -> list[ConsentRecord]:
        """Consents already granted and not yet expired at ``now``."""
        now = as_utc(now or utcnow())
        where = {"granted_at": {"lte": now}, "expires_at": {"gt": now}}
        if workspace_id:
            where["workspace_id"] = workspace_id
        if consent_type:
            where["consent_type"] = consent_type
        return self.find_many(where=where, order_by=[{"expires_at": "asc"}, {"consent_id": "asc"}])
