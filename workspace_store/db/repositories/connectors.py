from __future__ import annotations

from datetime import datetime
from typing import Optional

from workspace_store.db.enums import ConnectorStatusEnum
from workspace_store.db.models import Connector, utcnow
from workspace_store.db.repositories.base import Repository

PLATFORM_ACCOUNT_KEY = "workspace_id_platform_account_id"


class ConnectorsRepository(Repository[Connector]):
    model = Connector
    compound_keys = {PLATFORM_ACCOUNT_KEY: ("workspace_id", "platform", "account_id")}
    touch_updated_at = True

    def get_by_platform_account(
        self, workspace_id: str, platform: str, account_id: str
    ) -> Optional[Connector]:
        return self.find_unique(
            {
                PLATFORM_ACCOUNT_KEY: {
                    "workspace_id": workspace_id,
                    "platform": platform,
                    "account_id": account_id,
                }
            }
        )

    def mark_connected(
        self,
        connector_id: str,
        *,
        scopes: Optional[list[str]] = None,
        connected_at: Optional[datetime] = None,
    ) -> Connector:
        data = {
            "status": ConnectorStatusEnum.connected.value,
            "last_connected_at": connected_at or utcnow(),
        }
        if scopes is not None:
            data["scopes"] = scopes
        return self.update(where={"connector_id": connector_id}, data=data)

    def list_for_workspace(self, workspace_id: str, *, status: Optional[str] = None) -> list[Connector]:
        where = {"workspace_id": workspace_id}
        if status:
            where["status"] = ConnectorStatusEnum(status).value
        return self.find_many(where=where, order_by=[{"platform": "asc"}, {"account_id": "asc"}])
