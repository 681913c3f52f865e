from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional

import sqlalchemy as sa
from sqlalchemy import DateTime, ForeignKey, Integer, Numeric, String, Text, TypeDecorator, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from workspace_store.db.base import Base
from workspace_store.db.enums import (
    ConnectorStatusEnum,
    DecisionCardStatusEnum,
    WorkspaceLifecycleEnum,
)
from workspace_store.db.json_fields import JsonColumn
from workspace_store.db.validation import as_utc

# DECIMAL(3,2) holds scores and ratios in [0, 1]; DECIMAL(10,2) holds USD amounts.
Score = Numeric(precision=3, scale=2, asdecimal=True)
Money = Numeric(precision=10, scale=2, asdecimal=True)


class UTCDateTime(TypeDecorator):
    """Timestamp bound and loaded as UTC.

    SQLite keeps only the wall-clock part of a datetime, so offsets are
    converted before binding and naive results are read back as UTC.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if isinstance(value, datetime):
            return as_utc(value)
        return value

    def process_result_value(self, value, dialect):
        if isinstance(value, datetime):
            return as_utc(value)
        return value


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _workspace_fk() -> Mapped[str]:
    return mapped_column(
        String(length=255),
        ForeignKey("workspaces.workspace_id", ondelete="CASCADE"),
        nullable=False,
    )


def _created_at() -> Mapped[datetime]:
    return mapped_column(
        UTCDateTime(), default=utcnow, server_default=func.now(), nullable=False
    )


def _children(target: str) -> Any:
    return relationship(
        target,
        back_populates="workspace",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


class Workspace(Base):
    __tablename__ = "workspaces"
    __table_args__ = (
        sa.Index("idx_workspace_tenant", "tenant_id"),
        sa.Index("idx_workspace_lifecycle", "lifecycle"),
        sa.Index("idx_workspace_created", "created_at"),
        sa.Index("idx_workspace_ttl", "created_at", "ttl_hours"),
    )

    workspace_id: Mapped[str] = mapped_column(String(length=255), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(length=255), nullable=False)
    created_by: Mapped[str] = mapped_column(String(length=255), nullable=False)
    created_at: Mapped[datetime] = _created_at()
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), default=utcnow, server_default=func.now(), nullable=False
    )
    lifecycle: Mapped[str] = mapped_column(
        String(length=50),
        default=WorkspaceLifecycleEnum.draft.value,
        server_default=WorkspaceLifecycleEnum.draft.value,
        nullable=False,
    )
    contract_version: Mapped[str] = mapped_column(String(length=50), nullable=False)
    goals: Mapped[Any] = mapped_column(JsonColumn, nullable=False)
    primary_channels: Mapped[Any] = mapped_column(JsonColumn, nullable=False)
    budget: Mapped[Any] = mapped_column(JsonColumn, nullable=False)
    approval_policy: Mapped[Any] = mapped_column(JsonColumn, nullable=False)
    risk_profile: Mapped[str] = mapped_column(String(length=50), nullable=False)
    data_retention: Mapped[Any] = mapped_column(JsonColumn, nullable=False)
    ttl_hours: Mapped[int] = mapped_column(Integer, nullable=False)
    policy_bundle_ref: Mapped[str] = mapped_column(String(length=255), nullable=False)
    policy_bundle_checksum: Mapped[str] = mapped_column(String(length=64), nullable=False)
    contract_data: Mapped[Any] = mapped_column(JsonColumn, nullable=False)

    runs: Mapped[list["WorkspaceRun"]] = _children("WorkspaceRun")
    audit_bundles: Mapped[list["AuditBundle"]] = _children("AuditBundle")
    connectors: Mapped[list["Connector"]] = _children("Connector")
    consent_records: Mapped[list["ConsentRecord"]] = _children("ConsentRecord")
    brand_twins: Mapped[list["BrandTwin"]] = _children("BrandTwin")
    decision_cards: Mapped[list["DecisionCard"]] = _children("DecisionCard")
    simulation_results: Mapped[list["SimulationResult"]] = _children("SimulationResult")
    asset_fingerprints: Mapped[list["AssetFingerprint"]] = _children("AssetFingerprint")


class WorkspaceRun(Base):
    __tablename__ = "workspace_runs"
    __table_args__ = (
        sa.Index("idx_run_workspace", "workspace_id"),
        sa.Index("idx_run_status", "status"),
        sa.Index("idx_run_started", "started_at"),
    )

    run_id: Mapped[str] = mapped_column(String(length=255), primary_key=True)
    workspace_id: Mapped[str] = _workspace_fk()
    status: Mapped[str] = mapped_column(String(length=50), nullable=False)
    started_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    finished_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    cost_usd: Mapped[Optional[Decimal]] = mapped_column(Money, nullable=True)
    readiness_score: Mapped[Optional[Decimal]] = mapped_column(Score, nullable=True)
    results: Mapped[Optional[Any]] = mapped_column(JsonColumn, nullable=True)
    created_at: Mapped[datetime] = _created_at()

    workspace: Mapped[Workspace] = relationship(back_populates="runs")


class AuditBundle(Base):
    __tablename__ = "audit_bundles"
    __table_args__ = (
        sa.Index("idx_bundle_workspace", "workspace_id"),
        sa.Index("idx_bundle_signed", "signed_at"),
    )

    bundle_id: Mapped[str] = mapped_column(String(length=255), primary_key=True)
    workspace_id: Mapped[str] = _workspace_fk()
    bundle_data: Mapped[Any] = mapped_column(JsonColumn, nullable=False)
    signature_key_id: Mapped[str] = mapped_column(String(length=255), nullable=False)
    signature: Mapped[str] = mapped_column(String(length=1024), nullable=False)
    signed_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    created_at: Mapped[datetime] = _created_at()

    workspace: Mapped[Workspace] = relationship(back_populates="audit_bundles")


class Connector(Base):
    __tablename__ = "connectors"
    __table_args__ = (
        UniqueConstraint(
            "workspace_id", "platform", "account_id", name="uq_connectors_workspace_platform_account"
        ),
        sa.Index("idx_connector_workspace", "workspace_id"),
        sa.Index("idx_connector_platform", "platform"),
        sa.Index("idx_connector_status", "status"),
    )

    connector_id: Mapped[str] = mapped_column(String(length=255), primary_key=True)
    workspace_id: Mapped[str] = _workspace_fk()
    platform: Mapped[str] = mapped_column(String(length=50), nullable=False)
    account_id: Mapped[str] = mapped_column(String(length=255), nullable=False)
    display_name: Mapped[str] = mapped_column(String(length=255), nullable=False)
    status: Mapped[str] = mapped_column(
        String(length=50),
        default=ConnectorStatusEnum.unconnected.value,
        server_default=ConnectorStatusEnum.unconnected.value,
        nullable=False,
    )
    scopes: Mapped[Optional[Any]] = mapped_column(JsonColumn, nullable=True)
    last_connected_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    owner_contact: Mapped[Optional[str]] = mapped_column(String(length=255), nullable=True)
    credentials_ref: Mapped[Optional[str]] = mapped_column(String(length=255), nullable=True)
    created_at: Mapped[datetime] = _created_at()
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), default=utcnow, server_default=func.now(), nullable=False
    )

    workspace: Mapped[Workspace] = relationship(back_populates="connectors")


class ConsentRecord(Base):
    __tablename__ = "consent_records"
    __table_args__ = (
        sa.Index("idx_consent_workspace", "workspace_id"),
        sa.Index("idx_consent_type", "consent_type"),
        sa.Index("idx_consent_expires", "expires_at"),
        sa.Index("idx_consent_granted_by", "granted_by"),
    )

    consent_id: Mapped[str] = mapped_column(String(length=255), primary_key=True)
    workspace_id: Mapped[str] = _workspace_fk()
    consent_type: Mapped[str] = mapped_column(String(length=50), nullable=False)
    granted_by: Mapped[str] = mapped_column(String(length=255), nullable=False)
    granted_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    document_ref: Mapped[Optional[str]] = mapped_column(String(length=500), nullable=True)
    verifier_signature: Mapped[Optional[str]] = mapped_column(String(length=1024), nullable=True)
    created_at: Mapped[datetime] = _created_at()

    workspace: Mapped[Workspace] = relationship(back_populates="consent_records")


class BrandTwin(Base):
    __tablename__ = "brand_twins"
    __table_args__ = (
        sa.Index("idx_brand_workspace", "workspace_id"),
        sa.Index("idx_brand_snapshot", "snapshot_at"),
        sa.Index("idx_brand_quality", "quality_score"),
    )

    brand_id: Mapped[str] = mapped_column(String(length=255), primary_key=True)
    snapshot_at: Mapped[datetime] = mapped_column(UTCDateTime(), primary_key=True)
    workspace_id: Mapped[str] = _workspace_fk()
    brand_data: Mapped[Any] = mapped_column(JsonColumn, nullable=False)
    quality_score: Mapped[Optional[Decimal]] = mapped_column(Score, nullable=True)
    created_at: Mapped[datetime] = _created_at()

    workspace: Mapped[Workspace] = relationship(back_populates="brand_twins")


class DecisionCard(Base):
    __tablename__ = "decision_cards"
    __table_args__ = (
        sa.Index("idx_decision_workspace", "workspace_id"),
        sa.Index("idx_decision_status", "status"),
        sa.Index("idx_decision_expires", "expires_at"),
        sa.Index("idx_decision_readiness", "readiness_score"),
    )

    action_id: Mapped[str] = mapped_column(String(length=255), primary_key=True)
    workspace_id: Mapped[str] = _workspace_fk()
    title: Mapped[str] = mapped_column(String(length=500), nullable=False)
    one_line: Mapped[str] = mapped_column(Text, nullable=False)
    readiness_score: Mapped[Decimal] = mapped_column(Score, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    status: Mapped[str] = mapped_column(
        String(length=50),
        default=DecisionCardStatusEnum.pending.value,
        server_default=DecisionCardStatusEnum.pending.value,
        nullable=False,
    )
    approved_by: Mapped[Optional[str]] = mapped_column(String(length=255), nullable=True)
    approved_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    card_data: Mapped[Any] = mapped_column(JsonColumn, nullable=False)
    created_at: Mapped[datetime] = _created_at()

    workspace: Mapped[Workspace] = relationship(back_populates="decision_cards")


class SimulationResult(Base):
    __tablename__ = "simulation_results"
    __table_args__ = (
        sa.Index("idx_simulation_workspace", "workspace_id"),
        sa.Index("idx_simulation_score", "readiness_score"),
        sa.Index("idx_simulation_created", "created_at"),
    )

    simulation_id: Mapped[str] = mapped_column(String(length=255), primary_key=True)
    workspace_id: Mapped[str] = _workspace_fk()
    readiness_score: Mapped[Decimal] = mapped_column(Score, nullable=False)
    policy_pass_pct: Mapped[Decimal] = mapped_column(Score, nullable=False)
    citation_coverage: Mapped[Decimal] = mapped_column(Score, nullable=False)
    duplication_risk: Mapped[Decimal] = mapped_column(Score, nullable=False)
    cost_estimate_usd: Mapped[Decimal] = mapped_column(Money, nullable=False)
    traces: Mapped[Optional[Any]] = mapped_column(JsonColumn, nullable=True)
    simulation_data: Mapped[Any] = mapped_column(JsonColumn, nullable=False)
    created_at: Mapped[datetime] = _created_at()

    workspace: Mapped[Workspace] = relationship(back_populates="simulation_results")


class AssetFingerprint(Base):
    __tablename__ = "asset_fingerprints"
    __table_args__ = (
        sa.Index("idx_asset_workspace", "workspace_id"),
        sa.Index("idx_asset_type", "asset_type"),
        sa.Index("idx_asset_fingerprint", "fingerprint"),
    )

    asset_id: Mapped[str] = mapped_column(String(length=255), primary_key=True)
    workspace_id: Mapped[str] = _workspace_fk()
    asset_type: Mapped[str] = mapped_column(String(length=50), nullable=False)
    fingerprint: Mapped[str] = mapped_column(String(length=64), nullable=False)
    license: Mapped[str] = mapped_column(String(length=50), nullable=False)
    url: Mapped[Optional[str]] = mapped_column(String(length=1000), nullable=True)
    # "metadata" is reserved on declarative classes.
    metadata_json: Mapped[Optional[Any]] = mapped_column("metadata", JsonColumn, nullable=True)
    created_at: Mapped[datetime] = _created_at()

    workspace: Mapped[Workspace] = relationship(back_populates="asset_fingerprints")


WORKSPACE_CHILD_MODELS = (
    WorkspaceRun,
    AuditBundle,
    Connector,
    ConsentRecord,
    BrandTwin,
    DecisionCard,
    SimulationResult,
    AssetFingerprint,
)

WORKSPACE_CHILD_RELATIONS = {
    "runs": WorkspaceRun,
    "audit_bundles": AuditBundle,
    "connectors": Connector,
    "consent_records": ConsentRecord,
    "brand_twins": BrandTwin,
    "decision_cards": DecisionCard,
    "simulation_results": SimulationResult,
    "asset_fingerprints": AssetFingerprint,
}
