from datetime import timedelta
from decimal import Decimal

import pytest

from conftest import NOW
from workspace_store.db.errors import QueryValidationError


@pytest.fixture()
def seeded_runs(factory):
    factory.workspace("ws-1")
    factory.workspace("ws-2", tenant_id="tenant-b")
    statuses = ["pending", "running", "completed", "failed", "completed"]
    for i, status in enumerate(statuses):
        factory.run(
            f"run-{i}",
            status=status,
            started_at=NOW + timedelta(minutes=i),
            readiness_score=Decimal("0.10") * (i + 1) if i != 3 else None,
        )
    factory.run("run-other", workspace_id="ws-2", status="completed", started_at=NOW)


def _ids(rows):
    return [row.run_id for row in rows]


def test_scalar_operators(store, seeded_runs):
    runs = store.runs

    assert _ids(runs.find_many(where={"status": {"in": ["pending", "failed"]}}, order_by={"run_id": "asc"})) == [
        "run-0",
        "run-3",
    ]
    assert runs.count(where={"status": {"not_in": ["completed"]}}) == 3
    assert runs.count(where={"readiness_score": {"gte": Decimal("0.30")}}) == 2
    assert runs.count(where={"readiness_score": {"lt": Decimal("0.30"), "gt": Decimal("0.10")}}) == 1
    assert runs.count(where={"readiness_score": None}) == 2
    assert runs.count(where={"status": {"not": "completed"}}) == 3
    assert runs.count(where={"run_id": {"starts_with": "run-"}, "workspace_id": "ws-1"}) == 5
    assert runs.count(where={"run_id": {"ends_with": "other"}}) == 1


def test_string_filters_support_insensitive_mode(store, factory):
    factory.workspace()
    factory.connector("conn-1", account_id="acct1", display_name="Spring Launch Page")
    factory.connector("conn-2", account_id="acct2", display_name="winter page")

    assert store.connectors.count(where={"display_name": {"contains": "launch"}}) == 0
    assert store.connectors.count(where={"display_name": {"contains": "launch", "mode": "insensitive"}}) == 1
    assert store.connectors.count(where={"display_name": {"equals": "WINTER PAGE", "mode": "insensitive"}}) == 1
    # LIKE wildcards in the operand are matched literally.
    assert store.connectors.count(where={"display_name": {"contains": "%"}}) == 0


def test_logical_operators(store, seeded_runs):
    rows = store.runs.find_many(
        where={
            "workspace_id": "ws-1",
            "OR": [{"status": "pending"}, {"status": "failed"}],
            "NOT": {"run_id": "run-3"},
        }
    )
    assert _ids(rows) == ["run-0"]

    rows = store.runs.find_many(
        where={"AND": [{"status": "completed"}, {"workspace_id": "ws-1"}]}, order_by={"run_id": "asc"}
    )
    assert _ids(rows) == ["run-2", "run-4"]


def test_unknown_fields_and_operators_are_rejected(store, seeded_runs):
    with pytest.raises(QueryValidationError):
        store.runs.find_many(where={"colour": "red"})
    with pytest.raises(QueryValidationError):
        store.runs.find_many(where={"status": {"like": "pend%"}})
    with pytest.raises(QueryValidationError):
        store.runs.find_many(order_by={"status": "sideways"})
    with pytest.raises(QueryValidationError):
        store.runs.find_many(skip=-1)


def test_relation_filters(store, factory):
    factory.workspace("ws-1")
    factory.workspace("ws-2", tenant_id="tenant-b")
    factory.workspace("ws-3")
    factory.run("run-1", workspace_id="ws-1", status="completed")
    factory.run("run-2", workspace_id="ws-1", status="failed")
    factory.run("run-3", workspace_id="ws-2", status="completed")

    def ids(where):
        return sorted(workspace.workspace_id for workspace in store.workspaces.find_many(where=where))

    assert ids({"runs": {"some": {"status": "failed"}}}) == ["ws-1"]
    assert ids({"runs": {"none": {"status": "failed"}}}) == ["ws-2", "ws-3"]
    assert ids({"runs": {"every": {"status": "completed"}}}) == ["ws-2", "ws-3"]

    child_ids = sorted(
        run.run_id for run in store.runs.find_many(where={"workspace": {"is": {"tenant_id": "tenant-b"}}})
    )
    assert child_ids == ["run-3"]
    assert store.runs.count(where={"workspace": {"is_not": {"tenant_id": "tenant-b"}}}) == 2


def test_order_by_with_nulls_placement(store, seeded_runs):
    rows = store.runs.find_many(
        where={"workspace_id": "ws-1"},
        order_by={"readiness_score": {"sort": "asc", "nulls": "first"}},
    )
    assert _ids(rows)[0] == "run-3"

    rows = store.runs.find_many(
        where={"workspace_id": "ws-1"},
        order_by={"readiness_score": {"sort": "desc", "nulls": "last"}},
    )
    assert _ids(rows) == ["run-4", "run-2", "run-1", "run-0", "run-3"]


def test_skip_and_take(store, seeded_runs):
    rows = store.runs.find_many(where={"workspace_id": "ws-1"}, order_by={"started_at": "asc"}, skip=1, take=2)
    assert _ids(rows) == ["run-1", "run-2"]


def test_cursor_pagination_is_inclusive(store, seeded_runs):
    page = store.runs.find_many(
        where={"workspace_id": "ws-1"}, order_by={"started_at": "asc"}, cursor={"run_id": "run-2"}, take=2
    )
    assert _ids(page) == ["run-2", "run-3"]

    # Skipping the cursor row itself yields the next page.
    page = store.runs.find_many(
        where={"workspace_id": "ws-1"},
        order_by={"started_at": "asc"},
        cursor={"run_id": "run-3"},
        skip=1,
        take=2,
    )
    assert _ids(page) == ["run-4"]


def test_negative_take_pages_backwards_from_cursor(store, seeded_runs):
    page = store.runs.find_many(
        where={"workspace_id": "ws-1"}, order_by={"started_at": "asc"}, cursor={"run_id": "run-3"}, take=-2
    )
    assert _ids(page) == ["run-2", "run-3"]

    last_two = store.runs.find_many(where={"workspace_id": "ws-1"}, order_by={"started_at": "asc"}, take=-2)
    assert _ids(last_two) == ["run-3", "run-4"]


def test_cursor_with_duplicate_sort_values_uses_primary_key(store, factory):
    factory.workspace()
    for i in range(4):
        factory.run(f"run-{i}", status="pending", started_at=NOW)

    first = store.runs.find_many(order_by={"started_at": "asc"}, take=2)
    rest = store.runs.find_many(order_by={"started_at": "asc"}, cursor={"run_id": first[-1].run_id}, skip=1)

    assert _ids(first) + _ids(rest) == ["run-0", "run-1", "run-2", "run-3"]


def test_missing_cursor_row_returns_empty_page(store, seeded_runs):
    assert store.runs.find_many(cursor={"run_id": "nope"}, take=3) == []


def test_distinct_keeps_first_row_per_value(store, seeded_runs):
    rows = store.runs.find_many(
        where={"workspace_id": "ws-1"}, order_by={"started_at": "desc"}, distinct=["status"]
    )
    assert _ids(rows) == ["run-4", "run-3", "run-1", "run-0"]

    rows = store.runs.find_many(
        where={"workspace_id": "ws-1"}, order_by={"started_at": "desc"}, distinct="status", skip=1, take=2
    )
    assert _ids(rows) == ["run-3", "run-1"]


def test_compound_key_lookup_by_name_or_flat_fields(store, factory):
    factory.workspace()
    factory.brand_twin("brand-1", snapshot_at=NOW)

    by_name = store.brand_twins.find_unique({"brand_id_snapshot_at": {"brand_id": "brand-1", "snapshot_at": NOW}})
    flat = store.brand_twins.find_unique({"brand_id": "brand-1", "snapshot_at": NOW})

    assert by_name is not None
    assert by_name is flat
    with pytest.raises(QueryValidationError):
        store.brand_twins.find_unique({"brand_id_snapshot_at": {"brand_id": "brand-1"}})


def test_count_with_field_selection(store, seeded_runs):
    counts = store.runs.count(where={"workspace_id": "ws-1"}, select={"_all": True, "readiness_score": True})

    assert counts == {"_all": 5, "readiness_score": 4}
