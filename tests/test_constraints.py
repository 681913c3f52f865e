from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from conftest import NOW
from workspace_store.db.errors import (
    ForeignKeyConstraintError,
    InvariantViolationError,
    UniqueConstraintError,
)


def test_duplicate_connector_triple_is_rejected(store, factory):
    factory.workspace("w1")
    factory.connector("conn-1", workspace_id="w1", platform="meta", account_id="acct1")

    with pytest.raises(UniqueConstraintError) as excinfo:
        factory.connector("conn-2", workspace_id="w1", platform="meta", account_id="acct1")

    assert excinfo.value.fields == ("workspace_id", "platform", "account_id")
    assert store.connectors.count() == 1


def test_same_account_on_another_platform_is_allowed(store, factory):
    factory.workspace("w1")
    factory.connector("conn-1", workspace_id="w1", platform="meta", account_id="acct1")
    factory.connector("conn-2", workspace_id="w1", platform="linkedin", account_id="acct1")

    assert store.connectors.count(where={"account_id": "acct1"}) == 2


def test_duplicate_connector_id_reports_primary_key(factory):
    factory.workspace()
    factory.connector("conn-1", account_id="acct1")

    with pytest.raises(UniqueConstraintError) as excinfo:
        factory.connector("conn-1", account_id="acct2")

    assert excinfo.value.fields == ("connector_id",)


def test_duplicate_brand_twin_snapshot_is_rejected(store, factory):
    factory.workspace()
    factory.brand_twin("brand-1", snapshot_at=NOW)
    factory.brand_twin("brand-1", snapshot_at=NOW + timedelta(hours=1))

    with pytest.raises(UniqueConstraintError) as excinfo:
        factory.brand_twin("brand-1", snapshot_at=NOW)

    assert excinfo.value.fields == ("brand_id", "snapshot_at")
    assert store.brand_twins.count() == 2


def test_brand_twin_snapshot_key_compares_instants_across_offsets(store, factory):
    plus_two = timezone(timedelta(hours=2))
    same_instant = datetime(2026, 3, 1, 14, 0, tzinfo=plus_two)
    factory.workspace()
    factory.brand_twin("brand-1", snapshot_at=NOW)

    with pytest.raises(UniqueConstraintError):
        factory.brand_twin("brand-1", snapshot_at=same_instant)

    assert store.brand_twins.count() == 1
    found = store.brand_twins.find_unique({"brand_id": "brand-1", "snapshot_at": same_instant})
    assert found is not None
    assert found.snapshot_at == NOW


def test_create_many_and_return_keeps_rows_written_with_offsets(store, factory):
    minus_five = timezone(timedelta(hours=-5))
    factory.workspace()

    twins = store.brand_twins.create_many_and_return(
        [
            {
                "brand_id": "brand-1",
                "snapshot_at": datetime(2026, 3, 1, 8, 0, tzinfo=minus_five),
                "workspace_id": "ws-1",
                "brand_data": {"n": 1},
            },
            {"brand_id": "brand-1", "snapshot_at": NOW, "workspace_id": "ws-1", "brand_data": {"n": 2}},
        ]
    )

    assert [twin.brand_data["n"] for twin in twins] == [1, 2]
    assert twins[0].snapshot_at == NOW + timedelta(hours=1)


def test_child_with_missing_workspace_fails_foreign_key(store, factory):
    with pytest.raises(ForeignKeyConstraintError):
        factory.run(workspace_id="does-not-exist")

    assert store.runs.count() == 0


def test_approval_requires_approver_and_timestamp_together(store, factory):
    factory.workspace()
    factory.decision_card("action-1")

    with pytest.raises(InvariantViolationError):
        store.decision_cards.update(where={"action_id": "action-1"}, data={"approved_by": "alice"})

    card = store.decision_cards.find_unique_or_throw({"action_id": "action-1"})
    assert card.approved_by is None
    assert card.approved_at is None

    with pytest.raises(InvariantViolationError):
        factory.decision_card("action-2", approved_at=NOW)


def test_consent_cannot_expire_before_it_is_granted(store, factory):
    factory.workspace()

    with pytest.raises(InvariantViolationError):
        factory.consent(granted_at=NOW, expires_at=NOW - timedelta(seconds=1))

    record = factory.consent(granted_at=NOW, expires_at=NOW)
    with pytest.raises(InvariantViolationError):
        store.consent_records.update(
            where={"consent_id": record.consent_id}, data={"expires_at": NOW - timedelta(days=1)}
        )


def test_consent_timestamps_with_offsets_keep_their_order(db_session, store, factory):
    minus_five = timezone(timedelta(hours=-5))
    factory.workspace()
    # 06:00-05:00 is 11:00Z, an hour after the grant.
    factory.consent(granted_at=NOW - timedelta(hours=2), expires_at=datetime(2026, 3, 1, 6, 0, tzinfo=minus_five))
    db_session.expire_all()

    record = store.consent_records.find_unique_or_throw({"consent_id": "consent-1"})

    assert record.granted_at == NOW - timedelta(hours=2)
    assert record.expires_at == NOW - timedelta(hours=1)
    assert record.expires_at >= record.granted_at
    assert store.consent_records.count(where={"expires_at": {"gt": NOW - timedelta(minutes=90)}}) == 1
    plus_one = timezone(timedelta(hours=1))
    assert store.consent_records.count(where={"expires_at": datetime(2026, 3, 1, 12, 0, tzinfo=plus_one)}) == 1


def test_scores_and_costs_are_range_checked(store, factory):
    factory.workspace()

    with pytest.raises(InvariantViolationError):
        factory.simulation(readiness_score=Decimal("1.20"))
    with pytest.raises(InvariantViolationError):
        factory.simulation(cost_estimate_usd=Decimal("-1.00"))
    with pytest.raises(InvariantViolationError):
        factory.brand_twin(quality_score=Decimal("-0.01"))
    with pytest.raises(InvariantViolationError):
        factory.run(readiness_score=0.5)

    factory.simulation(readiness_score=Decimal("1.00"), duplication_risk=Decimal("0"))
    with pytest.raises(InvariantViolationError):
        store.simulation_results.update(
            where={"simulation_id": "sim-1"}, data={"policy_pass_pct": {"increment": Decimal("0.10")}}
        )


def test_run_cannot_finish_before_it_starts(factory):
    factory.workspace()

    with pytest.raises(InvariantViolationError):
        factory.run(started_at=NOW, finished_at=NOW - timedelta(minutes=1))


def test_workspace_ttl_must_be_positive(factory):
    with pytest.raises(InvariantViolationError):
        factory.workspace(ttl_hours=0)


def test_audit_bundles_are_signed_and_immutable(store, factory):
    factory.workspace()

    with pytest.raises(InvariantViolationError):
        factory.audit_bundle(signature="  ")

    factory.audit_bundle("bundle-1")
    with pytest.raises(InvariantViolationError):
        store.audit_bundles.update(where={"bundle_id": "bundle-1"}, data={"signature": "forged"})
    with pytest.raises(InvariantViolationError):
        store.audit_bundles.update_many(where={"workspace_id": "ws-1"}, data={"signature": "forged"})

    assert store.audit_bundles.find_unique_or_throw({"bundle_id": "bundle-1"}).signature == "sig-abc"


def test_deleting_workspace_removes_every_child_collection(store, factory):
    factory.workspace("ws-1")
    factory.workspace("ws-2")
    for workspace_id in ("ws-1", "ws-2"):
        suffix = workspace_id[-1]
        factory.run(f"run-{suffix}", workspace_id=workspace_id)
        factory.audit_bundle(f"bundle-{suffix}", workspace_id=workspace_id)
        factory.connector(f"conn-{suffix}", workspace_id=workspace_id)
        factory.consent(f"consent-{suffix}", workspace_id=workspace_id)
        factory.brand_twin(f"brand-{suffix}", workspace_id=workspace_id)
        factory.decision_card(f"action-{suffix}", workspace_id=workspace_id)
        factory.simulation(f"sim-{suffix}", workspace_id=workspace_id)
        factory.asset(f"asset-{suffix}", workspace_id=workspace_id)

    store.workspaces.delete_workspace("ws-1")

    assert all(count == 0 for count in store.workspaces.count_children("ws-1").values())
    assert all(count == 1 for count in store.workspaces.count_children("ws-2").values())
