import pytest
from sqlalchemy.exc import OperationalError

from conftest import NOW, workspace_data
from workspace_store.db.enums import IsolationLevelEnum
from workspace_store.db.errors import QueryValidationError, UniqueConstraintError
from workspace_store.db.transactions import (
    clear_tenant_context,
    get_current_tenant_context,
    resolve_isolation_level,
    retry_transaction,
    set_tenant_context,
)


def _transient_error() -> OperationalError:
    return OperationalError("UPDATE workspaces", {}, Exception("database is locked"))


def test_transaction_commits_all_writes_together(store):
    with store.transaction() as tx:
        tx.workspaces.create(workspace_data("ws-1"))
        tx.runs.create({"run_id": "run-1", "workspace_id": "ws-1", "status": "pending", "started_at": NOW})

    assert store.workspaces.count() == 1
    assert store.runs.count() == 1


def test_transaction_rolls_back_everything_on_error(store, factory):
    factory.workspace("ws-1")

    with pytest.raises(UniqueConstraintError):
        with store.transaction() as tx:
            tx.workspaces.create(workspace_data("ws-2"))
            tx.connectors.create(
                {
                    "connector_id": "conn-1",
                    "workspace_id": "ws-2",
                    "platform": "meta",
                    "account_id": "acct1",
                    "display_name": "Page",
                }
            )
            tx.workspaces.create(workspace_data("ws-1"))

    assert store.workspaces.find_unique({"workspace_id": "ws-2"}) is None
    assert store.connectors.count() == 0


def test_transaction_rolls_back_on_application_error(store):
    with pytest.raises(RuntimeError):
        with store.transaction(IsolationLevelEnum.serializable) as tx:
            tx.workspaces.create(workspace_data("ws-1"))
            raise RuntimeError("abort")

    assert store.workspaces.count() == 0


def test_nested_transactions_are_rejected(store):
    with store.transaction() as tx:
        with pytest.raises(QueryValidationError):
            with tx.transaction():
                pass


def test_run_in_transaction_retries_transient_errors(store):
    attempts = []
    delays = []

    def work(tx):
        attempts.append(len(attempts))
        tx.workspaces.create(workspace_data(f"ws-{len(attempts)}"))
        if len(attempts) < 3:
            raise _transient_error()
        return "done"

    result = store.run_in_transaction(work, max_retries=3, sleep=delays.append)

    assert result == "done"
    assert len(attempts) == 3
    assert delays == [2.0, 4.0]
    # Failed attempts were rolled back; only the last write survives.
    assert [workspace.workspace_id for workspace in store.workspaces.find_many()] == ["ws-3"]


def test_run_in_transaction_gives_up_after_max_retries(store):
    def work(tx):
        raise _transient_error()

    with pytest.raises(OperationalError):
        store.run_in_transaction(work, max_retries=2, sleep=lambda _delay: None)


def test_constraint_errors_are_not_retried():
    calls = []

    def operation():
        calls.append(1)
        raise UniqueConstraintError("Connector", ("workspace_id", "platform", "account_id"))

    with pytest.raises(UniqueConstraintError):
        retry_transaction(operation, max_retries=3, sleep=lambda _delay: None)
    assert len(calls) == 1


def test_resolve_isolation_level():
    assert resolve_isolation_level("postgresql", "repeatable_read") == "REPEATABLE READ"
    assert resolve_isolation_level("postgresql", "READ COMMITTED") == "READ COMMITTED"
    assert resolve_isolation_level("sqlite", IsolationLevelEnum.read_committed) == "SERIALIZABLE"
    with pytest.raises(QueryValidationError):
        resolve_isolation_level("postgresql", "snapshot")


def test_tenant_context_is_postgres_only(db_session):
    assert set_tenant_context(db_session, "tenant-a") is False
    assert get_current_tenant_context(db_session) is None
    with pytest.raises(QueryValidationError):
        set_tenant_context(db_session, "  ")
    clear_tenant_context(db_session)
    assert get_current_tenant_context(db_session) is None
