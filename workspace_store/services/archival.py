"""TTL archival: export expired workspaces, mark them archived and strip personal data."""

from __future__ import annotations

import hashlib
import json
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Optional

from botocore.exceptions import BotoCoreError, ClientError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from workspace_store.config import settings
from workspace_store.db.enums import WorkspaceLifecycleEnum
from workspace_store.db.errors import WorkspaceStoreError
from workspace_store.db.models import Workspace, utcnow
from workspace_store.schemas.records import (
    AssetFingerprintSnapshot,
    AuditBundleSnapshot,
    BrandTwinSnapshot,
    ConnectorSnapshot,
    ConsentRecordSnapshot,
    DecisionCardSnapshot,
    SimulationResultSnapshot,
    WorkspaceArchive,
    WorkspaceRunSnapshot,
    WorkspaceSnapshot,
)
from workspace_store.services.archive_storage import ArchiveStorage
from workspace_store.store import WorkspaceStore

logger = logging.getLogger(__name__)

ANONYMIZED = "ANONYMIZED"
DATABASE_LOCATION = "database"


@dataclass
class ArchivedWorkspace:
    workspace_id: str
    tenant_id: str
    archived_at: datetime
    data_hash: str
    archive_location: str


@dataclass
class ArchivalSummary:
    archived: int = 0
    failed: int = 0
    dry_run: bool = False
    workspaces: list[ArchivedWorkspace] = field(default_factory=list)
    failures: dict[str, str] = field(default_factory=dict)


def collect_workspace_archive(store: WorkspaceStore, workspace: Workspace) -> WorkspaceArchive:
    where = {"workspace_id": workspace.workspace_id}
    return WorkspaceArchive(
        workspace=WorkspaceSnapshot.model_validate(workspace),
        runs=[WorkspaceRunSnapshot.model_validate(r) for r in store.runs.find_many(where=where)],
        audit_bundles=[AuditBundleSnapshot.model_validate(r) for r in store.audit_bundles.find_many(where=where)],
        connectors=[ConnectorSnapshot.from_record(r) for r in store.connectors.find_many(where=where)],
        consent_records=[
            ConsentRecordSnapshot.model_validate(r) for r in store.consent_records.find_many(where=where)
        ],
        brand_twins=[BrandTwinSnapshot.model_validate(r) for r in store.brand_twins.find_many(where=where)],
        decision_cards=[
            DecisionCardSnapshot.model_validate(r) for r in store.decision_cards.find_many(where=where)
        ],
        simulation_results=[
            SimulationResultSnapshot.model_validate(r) for r in store.simulation_results.find_many(where=where)
        ],
        asset_fingerprints=[
            AssetFingerprintSnapshot.model_validate(r) for r in store.asset_fingerprints.find_many(where=where)
        ],
    )


def canonical_json(archive: WorkspaceArchive) -> bytes:
    return json.dumps(archive.to_json_dict(), sort_keys=True, separators=(",", ":")).encode("utf-8")


def data_hash(payload: bytes) -> str:
    return hashlib.sha256(payload).hexdigest()


def _with_flag(value, key: str, flag) -> dict:
    merged = dict(value) if isinstance(value, dict) else {}
    merged[key] = flag
    return merged


def anonymize_workspace(store: WorkspaceStore, workspace_id: str) -> None:
    """Replace personal fields with markers; audit bundles stay untouched."""
    where = {"workspace_id": workspace_id}
    workspace = store.workspaces.find_unique_or_throw(where)
    store.workspaces.update(
        where=where,
        data={
            "created_by": ANONYMIZED,
            "contract_data": _with_flag(workspace.contract_data, "anonymized", True),
        },
    )
    store.runs.update_many(where=where, data={"results": {"anonymized": True}})
    # account_id stays unique per (workspace, platform).
    for connector in store.connectors.find_many(where=where):
        store.connectors.update(
            where={"connector_id": connector.connector_id},
            data={
                "account_id": f"{ANONYMIZED}-{connector.connector_id}",
                "display_name": ANONYMIZED,
                "owner_contact": ANONYMIZED,
                "credentials_ref": None,
            },
        )
    store.consent_records.update_many(
        where=where, data={"granted_by": ANONYMIZED, "document_ref": ANONYMIZED}
    )
    for twin in store.brand_twins.find_many(where=where):
        store.brand_twins.update(
            where={"brand_id": twin.brand_id, "snapshot_at": twin.snapshot_at},
            data={"brand_data": _with_flag(twin.brand_data, "anonymized", True)},
        )
    # Only approved cards carry an approver; keep approver and timestamp paired.
    store.decision_cards.update_many(
        where={**where, "approved_by": {"not": None}}, data={"approved_by": ANONYMIZED}
    )
    for card in store.decision_cards.find_many(where=where):
        store.decision_cards.update(
            where={"action_id": card.action_id},
            data={"card_data": _with_flag(card.card_data, "anonymized", True)},
        )


class TTLArchivalJob:
    def __init__(
        self,
        session_factory: Callable[[], Session],
        *,
        storage: Optional[ArchiveStorage] = None,
        batch_size: Optional[int] = None,
        dry_run: Optional[bool] = None,
        batch_pause_seconds: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.session_factory = session_factory
        self.storage = storage
        self.batch_size = batch_size or settings.ARCHIVE_BATCH_SIZE
        self.dry_run = settings.ARCHIVE_DRY_RUN if dry_run is None else dry_run
        self.batch_pause_seconds = batch_pause_seconds
        self.sleep = sleep

    def find_expired(self, now: datetime) -> list[tuple[str, str]]:
        session = self.session_factory()
        try:
            expired = WorkspaceStore(session).workspaces.find_expired(now)
            limit = self.batch_size * 10
            return [(workspace.workspace_id, workspace.tenant_id) for workspace in expired[:limit]]
        finally:
            session.close()

    def run(self, now: Optional[datetime] = None) -> ArchivalSummary:
        now = now or utcnow()
        started = time.monotonic()
        summary = ArchivalSummary(dry_run=self.dry_run)
        logger.info(
            "Starting TTL archival job",
            extra={"batch_size": self.batch_size, "dry_run": self.dry_run},
        )
        expired = self.find_expired(now)
        logger.info("Found expired workspaces", extra={"count": len(expired)})

        batches = [expired[i : i + self.batch_size] for i in range(0, len(expired), self.batch_size)]
        for index, batch in enumerate(batches):
            for workspace_id, tenant_id in batch:
                try:
                    summary.workspaces.append(self.archive_workspace(workspace_id, tenant_id, now))
                    summary.archived += 1
                except (WorkspaceStoreError, SQLAlchemyError, BotoCoreError, ClientError, OSError) as exc:
                    summary.failed += 1
                    summary.failures[workspace_id] = str(exc)
                    logger.error(
                        "Failed to archive workspace",
                        extra={"workspace_id": workspace_id, "tenant_id": tenant_id, "error": str(exc)},
                    )
            if index < len(batches) - 1 and self.batch_pause_seconds:
                self.sleep(self.batch_pause_seconds)

        logger.info(
            "TTL archival job completed",
            extra={
                "archived": summary.archived,
                "failed": summary.failed,
                "dry_run": self.dry_run,
                "duration_ms": int((time.monotonic() - started) * 1000),
            },
        )
        return summary

    def archive_workspace(self, workspace_id: str, tenant_id: str, now: datetime) -> ArchivedWorkspace:
        logger.info("Archiving workspace", extra={"workspace_id": workspace_id, "tenant_id": tenant_id})
        session = self.session_factory()
        try:
            store = WorkspaceStore(session)
            with store.transaction(tenant_id=tenant_id) as tx:
                workspace = tx.workspaces.find_unique_or_throw({"workspace_id": workspace_id})
                payload = canonical_json(collect_workspace_archive(tx, workspace))
                digest = data_hash(payload)
                location = DATABASE_LOCATION
                if not self.dry_run:
                    if self.storage is not None:
                        location = self.storage.upload_archive(
                            workspace_id=workspace_id, payload=payload, archived_at=now, data_hash=digest
                        )
                    contract_data = dict(workspace.contract_data or {})
                    contract_data["archived"] = {
                        "archived_at": now.isoformat(),
                        "data_hash": digest,
                        "archive_location": location,
                    }
                    tx.workspaces.update(
                        where={"workspace_id": workspace_id},
                        data={
                            "lifecycle": WorkspaceLifecycleEnum.archived.value,
                            "contract_data": contract_data,
                        },
                    )
                    anonymize_workspace(tx, workspace_id)
        finally:
            session.close()
        return ArchivedWorkspace(
            workspace_id=workspace_id,
            tenant_id=tenant_id,
            archived_at=now,
            data_hash=digest,
            archive_location=location,
        )
