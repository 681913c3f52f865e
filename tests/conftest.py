import os
import sys
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path

import pytest
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

ROOT_DIR = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT_DIR))

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("ARCHIVE_DRY_RUN", "false")

from workspace_store.db import models  # noqa: E402,F401
from workspace_store.db.base import build_engine, init_db  # noqa: E402
from workspace_store.store import WorkspaceStore  # noqa: E402

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture()
def engine():
    engine = build_engine("sqlite://", poolclass=StaticPool)
    init_db(engine)
    try:
        yield engine
    finally:
        engine.dispose()


@pytest.fixture()
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, future=True)


@pytest.fixture()
def db_session(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def store(db_session) -> WorkspaceStore:
    return WorkspaceStore(db_session)


def workspace_data(workspace_id: str = "ws-1", **overrides):
    data = {
        "workspace_id": workspace_id,
        "tenant_id": "tenant-a",
        "created_by": "owner@example.com",
        "contract_version": "v1.0",
        "goals": [{"key": "awareness", "weight": 0.6}],
        "primary_channels": ["meta", "linkedin"],
        "budget": {"currency": "USD", "weekly_cap": 500},
        "approval_policy": {"auto_approve_below": 0.8},
        "risk_profile": "medium",
        "data_retention": {"days": 30},
        "ttl_hours": 72,
        "policy_bundle_ref": "policy/v1",
        "policy_bundle_checksum": "a" * 64,
        "contract_data": {"signed": True},
    }
    data.update(overrides)
    return data


class Factory:
    """Creates records through the store so every write passes validation."""

    def __init__(self, store: WorkspaceStore) -> None:
        self.store = store

    def workspace(self, workspace_id: str = "ws-1", **overrides):
        return self.store.workspaces.create(workspace_data(workspace_id, **overrides))

    def run(self, run_id: str = "run-1", workspace_id: str = "ws-1", **overrides):
        data = {
            "run_id": run_id,
            "workspace_id": workspace_id,
            "status": "running",
            "started_at": NOW,
        }
        data.update(overrides)
        return self.store.runs.create(data)

    def audit_bundle(self, bundle_id: str = "bundle-1", workspace_id: str = "ws-1", **overrides):
        data = {
            "bundle_id": bundle_id,
            "workspace_id": workspace_id,
            "bundle_data": {"events": 3},
            "signature_key_id": "kms-key-1",
            "signature": "sig-abc",
            "signed_at": NOW,
        }
        data.update(overrides)
        return self.store.audit_bundles.create(data)

    def connector(
        self,
        connector_id: str = "conn-1",
        workspace_id: str = "ws-1",
        platform: str = "meta",
        account_id: str = "acct1",
        **overrides,
    ):
        data = {
            "connector_id": connector_id,
            "workspace_id": workspace_id,
            "platform": platform,
            "account_id": account_id,
            "display_name": "Brand Page",
        }
        data.update(overrides)
        return self.store.connectors.create(data)

    def consent(self, consent_id: str = "consent-1", workspace_id: str = "ws-1", **overrides):
        data = {
            "consent_id": consent_id,
            "workspace_id": workspace_id,
            "consent_type": "voice_likeness",
            "granted_by": "talent@example.com",
            "granted_at": NOW - timedelta(days=1),
            "expires_at": NOW + timedelta(days=30),
        }
        data.update(overrides)
        return self.store.consent_records.create(data)

    def brand_twin(self, brand_id: str = "brand-1", workspace_id: str = "ws-1", **overrides):
        data = {
            "brand_id": brand_id,
            "snapshot_at": NOW,
            "workspace_id": workspace_id,
            "brand_data": {"voice": "friendly"},
            "quality_score": Decimal("0.80"),
        }
        data.update(overrides)
        return self.store.brand_twins.create(data)

    def decision_card(self, action_id: str = "action-1", workspace_id: str = "ws-1", **overrides):
        data = {
            "action_id": action_id,
            "workspace_id": workspace_id,
            "title": "Launch spring campaign",
            "one_line": "Post three creatives on Meta",
            "readiness_score": Decimal("0.75"),
            "expires_at": NOW + timedelta(days=2),
            "card_data": {"channel": "meta"},
        }
        data.update(overrides)
        return self.store.decision_cards.create(data)

    def simulation(self, simulation_id: str = "sim-1", workspace_id: str = "ws-1", **overrides):
        data = {
            "simulation_id": simulation_id,
            "workspace_id": workspace_id,
            "readiness_score": Decimal("0.70"),
            "policy_pass_pct": Decimal("0.95"),
            "citation_coverage": Decimal("0.60"),
            "duplication_risk": Decimal("0.10"),
            "cost_estimate_usd": Decimal("12.50"),
            "simulation_data": {"iterations": 100},
        }
        data.update(overrides)
        return self.store.simulation_results.create(data)

    def asset(self, asset_id: str = "asset-1", workspace_id: str = "ws-1", **overrides):
        data = {
            "asset_id": asset_id,
            "workspace_id": workspace_id,
            "asset_type": "image",
            "fingerprint": "f" * 64,
            "license": "owned",
        }
        data.update(overrides)
        return self.store.asset_fingerprints.create(data)


@pytest.fixture()
def factory(store) -> Factory:
    return Factory(store)
