"""Serializable snapshots of stored records.

Used by the archival job to export a workspace with camelCase keys.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class RecordSnapshot(BaseModel):
    model_config = ConfigDict(from_attributes=True, alias_generator=to_camel, populate_by_name=True)

    def to_json_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class WorkspaceRunSnapshot(RecordSnapshot):
    run_id: str
    workspace_id: str
    status: str
    started_at: datetime
    finished_at: Optional[datetime] = None
    cost_usd: Optional[Decimal] = None
    readiness_score: Optional[Decimal] = None
    results: Any = None
    created_at: datetime


class AuditBundleSnapshot(RecordSnapshot):
    bundle_id: str
    workspace_id: str
    bundle_data: Any
    signature_key_id: str
    signature: str
    signed_at: datetime
    created_at: datetime


class ConnectorSnapshot(RecordSnapshot):
    connector_id: str
    workspace_id: str
    platform: str
    account_id: str
    display_name: str
    status: str
    scopes: Any = None
    last_connected_at: Optional[datetime] = None
    owner_contact: Optional[str] = None
    # Credentials stay out of exports; only whether a reference existed.
    has_credentials: bool = False
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_record(cls, record) -> "ConnectorSnapshot":
        snapshot = cls.model_validate(record)
        return snapshot.model_copy(update={"has_credentials": bool(record.credentials_ref)})


class ConsentRecordSnapshot(RecordSnapshot):
    consent_id: str
    workspace_id: str
    consent_type: str
    granted_by: str
    granted_at: datetime
    expires_at: datetime
    document_ref: Optional[str] = None
    verifier_signature: Optional[str] = None
    created_at: datetime


class BrandTwinSnapshot(RecordSnapshot):
    brand_id: str
    snapshot_at: datetime
    workspace_id: str
    brand_data: Any
    quality_score: Optional[Decimal] = None
    created_at: datetime


class DecisionCardSnapshot(RecordSnapshot):
    action_id: str
    workspace_id: str
    title: str
    one_line: str
    readiness_score: Decimal
    expires_at: datetime
    status: str
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None
    card_data: Any
    created_at: datetime


class SimulationResultSnapshot(RecordSnapshot):
    simulation_id: str
    workspace_id: str
    readiness_score: Decimal
    policy_pass_pct: Decimal
    citation_coverage: Decimal
    duplication_risk: Decimal
    cost_estimate_usd: Decimal
    traces: Any = None
    simulation_data: Any
    created_at: datetime


class AssetFingerprintSnapshot(RecordSnapshot):
    asset_id: str
    workspace_id: str
    asset_type: str
    fingerprint: str
    license: str
    url: Optional[str] = None
    metadata_json: Any = Field(default=None, serialization_alias="metadata")
    created_at: datetime


class WorkspaceSnapshot(RecordSnapshot):
    workspace_id: str
    tenant_id: str
    created_by: str
    created_at: datetime
    updated_at: datetime
    lifecycle: str
    contract_version: str
    goals: Any
    primary_channels: Any
    budget: Any
    approval_policy: Any
    risk_profile: str
    data_retention: Any
    ttl_hours: int
    policy_bundle_ref: str
    policy_bundle_checksum: str
    contract_data: Any


class WorkspaceArchive(RecordSnapshot):
    """A workspace with every child collection, as written to the archive."""

    workspace: WorkspaceSnapshot
    runs: List[WorkspaceRunSnapshot] = Field(default_factory=list)
    audit_bundles: List[AuditBundleSnapshot] = Field(default_factory=list)
    connectors: List[ConnectorSnapshot] = Field(default_factory=list)
    consent_records: List[ConsentRecordSnapshot] = Field(default_factory=list)
    brand_twins: List[BrandTwinSnapshot] = Field(default_factory=list)
    decision_cards: List[DecisionCardSnapshot] = Field(default_factory=list)
    simulation_results: List[SimulationResultSnapshot] = Field(default_factory=list)
    asset_fingerprints: List[AssetFingerprintSnapshot] = Field(default_factory=list)
