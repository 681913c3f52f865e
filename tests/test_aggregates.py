from decimal import Decimal

import pytest
from sqlalchemy import event

from workspace_store.db.errors import QueryValidationError


@pytest.fixture()
def seeded_simulations(factory):
    factory.workspace("ws-1")
    factory.workspace("ws-2")
    rows = [
        ("sim-1", "ws-1", "0.60", "10.00"),
        ("sim-2", "ws-1", "0.90", "20.50"),
        ("sim-3", "ws-1", "0.75", "5.25"),
        ("sim-4", "ws-2", "0.40", "8.00"),
    ]
    for simulation_id, workspace_id, score, cost in rows:
        factory.simulation(
            simulation_id,
            workspace_id=workspace_id,
            readiness_score=Decimal(score),
            cost_estimate_usd=Decimal(cost),
        )


@pytest.fixture()
def statement_log(engine):
    statements = []

    def record(conn, cursor, statement, parameters, context, executemany):
        statements.append(statement)

    event.listen(engine, "before_cursor_execute", record)
    try:
        yield statements
    finally:
        event.remove(engine, "before_cursor_execute", record)


def test_aggregate_returns_decimals(store, seeded_simulations):
    result = store.simulation_results.aggregate(
        where={"workspace_id": "ws-1"},
        count=True,
        avg=["readiness_score"],
        sum=["cost_estimate_usd"],
        min=["readiness_score"],
        max={"cost_estimate_usd": True},
    )

    assert result["_count"] == {"_all": 3}
    assert result["_avg"]["readiness_score"] == Decimal("0.75")
    assert isinstance(result["_avg"]["readiness_score"], Decimal)
    assert result["_sum"]["cost_estimate_usd"] == Decimal("35.75")
    assert isinstance(result["_sum"]["cost_estimate_usd"], Decimal)
    assert result["_min"]["readiness_score"] == Decimal("0.60")
    assert result["_max"]["cost_estimate_usd"] == Decimal("20.50")


def test_aggregate_over_empty_selection(store, seeded_simulations):
    result = store.simulation_results.aggregate(
        where={"workspace_id": "nope"}, count=True, avg=["readiness_score"], sum=["cost_estimate_usd"]
    )

    assert result["_count"] == {"_all": 0}
    assert result["_avg"]["readiness_score"] is None
    assert result["_sum"]["cost_estimate_usd"] is None


def test_aggregate_respects_order_and_take(store, seeded_simulations):
    result = store.simulation_results.aggregate(
        order_by={"readiness_score": "desc"}, take=2, sum=["readiness_score"]
    )

    assert result["_sum"]["readiness_score"] == Decimal("1.65")


def test_aggregate_rejects_non_numeric_average(store, seeded_simulations):
    with pytest.raises(QueryValidationError):
        store.simulation_results.aggregate(avg=["workspace_id"])
    with pytest.raises(QueryValidationError):
        store.simulation_results.aggregate()


def test_integer_average_is_a_float(store, factory):
    factory.workspace("ws-1", ttl_hours=24)
    factory.workspace("ws-2", ttl_hours=25)

    result = store.workspaces.aggregate(avg=["ttl_hours"])

    assert result["_avg"]["ttl_hours"] == 24.5


def test_group_by_with_aggregates_and_ordering(store, seeded_simulations):
    groups = store.simulation_results.group_by(
        by=["workspace_id"],
        count=True,
        avg=["readiness_score"],
        sum=["cost_estimate_usd"],
        order_by={"_avg": {"readiness_score": "desc"}},
    )

    assert [group["workspace_id"] for group in groups] == ["ws-1", "ws-2"]
    assert groups[0]["_count"] == {"_all": 3}
    assert groups[0]["_avg"]["readiness_score"] == Decimal("0.75")
    assert groups[0]["_sum"]["cost_estimate_usd"] == Decimal("35.75")
    assert groups[1]["_avg"]["readiness_score"] == Decimal("0.40")


def test_group_by_having_on_aggregate_of_field_outside_by(store, seeded_simulations):
    groups = store.simulation_results.group_by(
        by=["workspace_id"],
        having={"cost_estimate_usd": {"_sum": {"gt": Decimal("10.00")}}},
        count=True,
    )

    assert [group["workspace_id"] for group in groups] == ["ws-1"]


def test_group_by_having_scalar_filter_on_by_field(store, seeded_simulations):
    groups = store.simulation_results.group_by(
        by=["workspace_id"],
        having={"workspace_id": {"in": ["ws-2"]}},
        max=["readiness_score"],
    )

    assert groups == [{"workspace_id": "ws-2", "_max": {"readiness_score": Decimal("0.40")}}]


def test_group_by_take_and_skip(store, seeded_simulations):
    groups = store.simulation_results.group_by(
        by=["workspace_id"], order_by={"workspace_id": "asc"}, skip=1, take=1, count=True
    )

    assert [group["workspace_id"] for group in groups] == ["ws-2"]


@pytest.mark.parametrize(
    "kwargs",
    [
        {"by": []},
        {"by": ["workspace_id"], "order_by": {"readiness_score": "asc"}},
        {"by": ["workspace_id"], "having": {"readiness_score": {"gt": Decimal("0.5")}}},
        {"by": ["workspace_id"], "take": 1},
        {"by": ["workspace_id"], "skip": 1},
        {"by": ["workspace_id"], "order_by": {"workspace_id": "asc"}, "take": -1},
        {"by": ["simulation_data"]},
        {"by": ["workspace_id"], "avg": ["workspace_id"]},
    ],
)
def test_group_by_validation_happens_before_execution(store, seeded_simulations, statement_log, kwargs):
    with pytest.raises(QueryValidationError):
        store.simulation_results.group_by(**kwargs)

    assert statement_log == []
