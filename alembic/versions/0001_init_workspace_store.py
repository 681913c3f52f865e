"""Workspace aggregate schema: workspaces and their eight child tables"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "0001_init_workspace_store"
down_revision = None
branch_labels = None
depends_on = None


def _workspace_fk() -> sa.Column:
    return sa.Column(
        "workspace_id",
        sa.String(length=255),
        sa.ForeignKey("workspaces.workspace_id", ondelete="CASCADE"),
        nullable=False,
    )


def _created_at() -> sa.Column:
    return sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("NOW()"), nullable=False)


def upgrade() -> None:
    jsonb = postgresql.JSONB(astext_type=sa.Text())
    score = sa.Numeric(precision=3, scale=2)
    money = sa.Numeric(precision=10, scale=2)

    op.create_table(
        "workspaces",
        sa.Column("workspace_id", sa.String(length=255), primary_key=True),
        sa.Column("tenant_id", sa.String(length=255), nullable=False),
        sa.Column("created_by", sa.String(length=255), nullable=False),
        _created_at(),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("NOW()"), nullable=False),
        sa.Column("lifecycle", sa.String(length=50), nullable=False, server_default=sa.text("'draft'")),
        sa.Column("contract_version", sa.String(length=50), nullable=False),
        sa.Column("goals", jsonb, nullable=False),
        sa.Column("primary_channels", jsonb, nullable=False),
        sa.Column("budget", jsonb, nullable=False),
        sa.Column("approval_policy", jsonb, nullable=False),
        sa.Column("risk_profile", sa.String(length=50), nullable=False),
        sa.Column("data_retention", jsonb, nullable=False),
        sa.Column("ttl_hours", sa.Integer(), nullable=False),
        sa.Column("policy_bundle_ref", sa.String(length=255), nullable=False),
        sa.Column("policy_bundle_checksum", sa.String(length=64), nullable=False),
        sa.Column("contract_data", jsonb, nullable=False),
    )
    op.create_index("idx_workspace_tenant", "workspaces", ["tenant_id"])
    op.create_index("idx_workspace_lifecycle", "workspaces", ["lifecycle"])
    op.create_index("idx_workspace_created", "workspaces", ["created_at"])
    op.create_index("idx_workspace_ttl", "workspaces", ["created_at", "ttl_hours"])

    op.create_table(
        "workspace_runs",
        sa.Column("run_id", sa.String(length=255), primary_key=True),
        _workspace_fk(),
        sa.Column("status", sa.String(length=50), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cost_usd", money, nullable=True),
        sa.Column("readiness_score", score, nullable=True),
        sa.Column("results", jsonb, nullable=True),
        _created_at(),
    )
    op.create_index("idx_run_workspace", "workspace_runs", ["workspace_id"])
    op.create_index("idx_run_status", "workspace_runs", ["status"])
    op.create_index("idx_run_started", "workspace_runs", ["started_at"])

    op.create_table(
        "audit_bundles",
        sa.Column("bundle_id", sa.String(length=255), primary_key=True),
        _workspace_fk(),
        sa.Column("bundle_data", jsonb, nullable=False),
        sa.Column("signature_key_id", sa.String(length=255), nullable=False),
        sa.Column("signature", sa.String(length=1024), nullable=False),
        sa.Column("signed_at", sa.DateTime(timezone=True), nullable=False),
        _created_at(),
    )
    op.create_index("idx_bundle_workspace", "audit_bundles", ["workspace_id"])
    op.create_index("idx_bundle_signed", "audit_bundles", ["signed_at"])

    op.create_table(
        "connectors",
        sa.Column("connector_id", sa.String(length=255), primary_key=True),
        _workspace_fk(),
        sa.Column("platform", sa.String(length=50), nullable=False),
        sa.Column("account_id", sa.String(length=255), nullable=False),
        sa.Column("display_name", sa.String(length=255), nullable=False),
        sa.Column("status", sa.String(length=50), nullable=False, server_default=sa.text("'unconnected'")),
        sa.Column("scopes", jsonb, nullable=True),
        sa.Column("last_connected_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("owner_contact", sa.String(length=255), nullable=True),
        sa.Column("credentials_ref", sa.String(length=255), nullable=True),
        _created_at(),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("NOW()"), nullable=False),
        sa.UniqueConstraint(
            "workspace_id", "platform", "account_id", name="uq_connectors_workspace_platform_account"
        ),
    )
    op.create_index("idx_connector_workspace", "connectors", ["workspace_id"])
    op.create_index("idx_connector_platform", "connectors", ["platform"])
    op.create_index("idx_connector_status", "connectors", ["status"])

    op.create_table(
        "consent_records",
        sa.Column("consent_id", sa.String(length=255), primary_key=True),
        _workspace_fk(),
        sa.Column("consent_type", sa.String(length=50), nullable=False),
        sa.Column("granted_by", sa.String(length=255), nullable=False),
        sa.Column("granted_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("document_ref", sa.String(length=500), nullable=True),
        sa.Column("verifier_signature", sa.String(length=1024), nullable=True),
        _created_at(),
    )
    op.create_index("idx_consent_workspace", "consent_records", ["workspace_id"])
    op.create_index("idx_consent_type", "consent_records", ["consent_type"])
    op.create_index("idx_consent_expires", "consent_records", ["expires_at"])
    op.create_index("idx_consent_granted_by", "consent_records", ["granted_by"])

    op.create_table(
        "brand_twins",
        sa.Column("brand_id", sa.String(length=255), nullable=False),
        sa.Column("snapshot_at", sa.DateTime(timezone=True), nullable=False),
        _workspace_fk(),
        sa.Column("brand_data", jsonb, nullable=False),
        sa.Column("quality_score", score, nullable=True),
        _created_at(),
        sa.PrimaryKeyConstraint("brand_id", "snapshot_at"),
    )
    op.create_index("idx_brand_workspace", "brand_twins", ["workspace_id"])
    op.create_index("idx_brand_snapshot", "brand_twins", ["snapshot_at"])
    op.create_index("idx_brand_quality", "brand_twins", ["quality_score"])

    op.create_table(
        "decision_cards",
        sa.Column("action_id", sa.String(length=255), primary_key=True),
        _workspace_fk(),
        sa.Column("title", sa.String(length=500), nullable=False),
        sa.Column("one_line", sa.Text(), nullable=False),
        sa.Column("readiness_score", score, nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", sa.String(length=50), nullable=False, server_default=sa.text("'pending'")),
        sa.Column("approved_by", sa.String(length=255), nullable=True),
        sa.Column("approved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("card_data", jsonb, nullable=False),
        _created_at(),
    )
    op.create_index("idx_decision_workspace", "decision_cards", ["workspace_id"])
    op.create_index("idx_decision_status", "decision_cards", ["status"])
    op.create_index("idx_decision_expires", "decision_cards", ["expires_at"])
    op.create_index("idx_decision_readiness", "decision_cards", ["readiness_score"])

    op.create_table(
        "simulation_results",
        sa.Column("simulation_id", sa.String(length=255), primary_key=True),
        _workspace_fk(),
        sa.Column("readiness_score", score, nullable=False),
        sa.Column("policy_pass_pct", score, nullable=False),
        sa.Column("citation_coverage", score, nullable=False),
        sa.Column("duplication_risk", score, nullable=False),
        sa.Column("cost_estimate_usd", money, nullable=False),
        sa.Column("traces", jsonb, nullable=True),
        sa.Column("simulation_data", jsonb, nullable=False),
        _created_at(),
    )
    op.create_index("idx_simulation_workspace", "simulation_results", ["workspace_id"])
    op.create_index("idx_simulation_score", "simulation_results", ["readiness_score"])
    op.create_index("idx_simulation_created", "simulation_results", ["created_at"])

    op.create_table(
        "asset_fingerprints",
        sa.Column("asset_id", sa.String(length=255), primary_key=True),
        _workspace_fk(),
        sa.Column("asset_type", sa.String(length=50), nullable=False),
        sa.Column("fingerprint", sa.String(length=64), nullable=False),
        sa.Column("license", sa.String(length=50), nullable=False),
        sa.Column("url", sa.String(length=1000), nullable=True),
        sa.Column("metadata", jsonb, nullable=True),
        _created_at(),
    )
    op.create_index("idx_asset_workspace", "asset_fingerprints", ["workspace_id"])
    op.create_index("idx_asset_type", "asset_fingerprints", ["asset_type"])
    op.create_index("idx_asset_fingerprint", "asset_fingerprints", ["fingerprint"])


def downgrade() -> None:
    for table in (
        "asset_fingerprints",
        "simulation_results",
        "decision_cards",
        "brand_twins",
        "consent_records",
        "connectors",
        "audit_bundles",
        "workspace_runs",
    ):
        op.drop_table(table)
    op.drop_index("idx_workspace_ttl", table_name="workspaces")
    op.drop_index("idx_workspace_created", table_name="workspaces")
    op.drop_index("idx_workspace_lifecycle", table_name="workspaces")
    op.drop_index("idx_workspace_tenant", table_name="workspaces")
    op.drop_table("workspaces")
