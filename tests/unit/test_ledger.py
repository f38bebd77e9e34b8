"""
Unit tests for the divergence ledger.

InMemoryLedger is tested directly; CassandraLedger against a mocked session.
"""

from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
from cassandra import DriverException

from src.index_rebuild.errors import InvalidStateTransitionError, LedgerError
from src.index_rebuild.ledger import CassandraLedger, InMemoryLedger, validate_transition
from src.index_rebuild.models import DivergenceCause, DivergenceMarker, IndexDescriptor, IndexState

BLOCKING_1000 = DivergenceMarker(1000, DivergenceCause.BLOCKING)
STALE_1000 = DivergenceMarker(1000, DivergenceCause.STALE_SERVING)
CLEAR = DivergenceMarker.clear()


class TestValidateTransition:
    """Test lifecycle rules."""

    @pytest.mark.parametrize("current,new,marker", [
        (IndexState.DISABLED, IndexState.INACTIVE, BLOCKING_1000),
        (IndexState.INACTIVE, IndexState.INACTIVE, BLOCKING_1000),
        (IndexState.INACTIVE, IndexState.ACTIVE, CLEAR),
        (IndexState.ACTIVE, IndexState.INACTIVE, STALE_1000),
        (IndexState.INACTIVE, IndexState.DISABLED, CLEAR),
        (IndexState.ACTIVE, IndexState.DISABLED, CLEAR),
        (IndexState.DISABLED, IndexState.DISABLED, BLOCKING_1000),
    ])
    def test_allowed(self, current, new, marker):
        validate_transition("app.i", current, new, marker)

    def test_disabled_cannot_become_active(self):
        with pytest.raises(InvalidStateTransitionError, match="currentState=DISABLED, requestedState=ACTIVE"):
            validate_transition("app.i", IndexState.DISABLED, IndexState.ACTIVE, CLEAR)

    def test_active_requires_clear_marker(self):
        with pytest.raises(InvalidStateTransitionError, match="has to be 0"):
            validate_transition("app.i", IndexState.INACTIVE, IndexState.ACTIVE, BLOCKING_1000)

    def test_rebuild_cannot_disable_with_marker(self):
        with pytest.raises(InvalidStateTransitionError):
            validate_transition("app.i", IndexState.INACTIVE, IndexState.DISABLED, BLOCKING_1000)

    def test_inactive_keeps_marker(self):
        with pytest.raises(InvalidStateTransitionError):
            validate_transition("app.i", IndexState.INACTIVE, IndexState.INACTIVE, CLEAR)

    def test_error_carries_states(self):
        with pytest.raises(InvalidStateTransitionError) as exc_info:
            validate_transition("app.i", IndexState.DISABLED, IndexState.ACTIVE, CLEAR)

        assert exc_info.value.index_name == "app.i"
        assert exc_info.value.current_state == "DISABLED"
        assert exc_info.value.requested_state == "ACTIVE"


class TestInMemoryLedger:
    """Test suite for InMemoryLedger."""

    def test_register_index_is_active_and_clear(self, ledger, make_index):
        assert ledger.register_index(make_index(state=IndexState.INACTIVE, marker=-5)) is True

        index = ledger.get_index("app.idx1")
        assert index.state is IndexState.ACTIVE
        assert index.is_diverged is False

    def test_register_existing_index(self, ledger, make_index):
        ledger.register_index(make_index())

        assert ledger.register_index(make_index()) is False

    def test_get_unknown_index(self, ledger):
        assert ledger.get_index("app.missing") is None

    def test_list_diverged(self, ledger, make_index):
        ledger.put(make_index(name="app.a", state=IndexState.ACTIVE, marker=0))
        ledger.put(make_index(name="app.b", marker=-1000))
        ledger.put(make_index(name="app.c", state=IndexState.DISABLED, marker=0))

        assert [i.name for i in ledger.list_diverged()] == ["app.b"]
        assert len(ledger.list_indexes()) == 3

    def test_mark_diverged(self, ledger, make_index):
        ledger.register_index(make_index())

        ledger.mark_diverged("app.idx1", IndexState.DISABLED, BLOCKING_1000)

        index = ledger.get_index("app.idx1")
        assert index.state is IndexState.DISABLED
        assert index.marker == BLOCKING_1000

    def test_mark_diverged_rejects_active(self, ledger, make_index):
        ledger.register_index(make_index())

        with pytest.raises(InvalidStateTransitionError):
            ledger.mark_diverged("app.idx1", IndexState.ACTIVE, BLOCKING_1000)

    def test_mark_diverged_rejects_clear_marker(self, ledger, make_index):
        ledger.register_index(make_index())

        with pytest.raises(InvalidStateTransitionError):
            ledger.mark_diverged("app.idx1", IndexState.INACTIVE, CLEAR)

    def test_mark_diverged_unknown_index(self, ledger):
        with pytest.raises(LedgerError, match="not found"):
            ledger.mark_diverged("app.missing", IndexState.INACTIVE, STALE_1000)

    def test_compare_and_set_applies(self, ledger, make_index):
        ledger.put(make_index(marker=-1000))

        applied = ledger.compare_and_set_state(
            "app.idx1", IndexState.INACTIVE, IndexState.ACTIVE, CLEAR
        )

        assert applied is True
        assert ledger.get_index("app.idx1").state is IndexState.ACTIVE

    def test_compare_and_set_state_mismatch(self, ledger, make_index):
        ledger.put(make_index(state=IndexState.DISABLED, marker=-1000))

        applied = ledger.compare_and_set_state(
            "app.idx1", IndexState.INACTIVE, IndexState.ACTIVE, CLEAR
        )

        assert applied is False
        assert ledger.get_index("app.idx1").state is IndexState.DISABLED

    def test_compare_and_set_marker_mismatch(self, ledger, make_index):
        ledger.put(make_index(marker=-1200))

        applied = ledger.compare_and_set_state(
            "app.idx1", IndexState.INACTIVE, IndexState.ACTIVE, CLEAR, expected_marker=BLOCKING_1000
        )

        assert applied is False

    def test_compare_and_set_missing_index(self, ledger):
        assert ledger.compare_and_set_state(
            "app.missing", IndexState.INACTIVE, IndexState.ACTIVE, CLEAR
        ) is False

    def test_compare_and_set_validates_first(self, ledger, make_index):
        ledger.put(make_index(state=IndexState.DISABLED, marker=-1000))

        with pytest.raises(InvalidStateTransitionError):
            ledger.compare_and_set_state("app.idx1", IndexState.DISABLED, IndexState.ACTIVE, CLEAR)

        assert ledger.get_index("app.idx1").state is IndexState.DISABLED


def _row(name="app.idx1", data_table="app.t1", state="INACTIVE", marker=-1000, columns=None):
    return SimpleNamespace(
        index_name=name,
        data_table=data_table,
        index_state=state,
        disable_timestamp=marker,
        indexed_columns=columns if columns is not None else ["email"],
    )


class TestCassandraLedger:
    """Test suite for CassandraLedger with a mocked session."""

    @pytest.fixture
    def session(self):
        session = MagicMock()
        session.prepare.side_effect = lambda query: MagicMock(query_string=query)
        return session

    @pytest.fixture
    def cassandra_ledger(self, session):
        return CassandraLedger(session, keyspace="rebuild", table="ledger")

    def test_table_ref(self, cassandra_ledger):
        assert cassandra_ledger.table_ref == "rebuild.ledger"

    def test_list_indexes_decodes_rows(self, cassandra_ledger, session):
        session.execute.return_value = [
            _row(),
            _row(name="app.idx2", state="ACTIVE", marker=0, columns=[]),
        ]

        indexes = cassandra_ledger.list_indexes()

        assert indexes[0] == IndexDescriptor(
            "app.idx1", "app.t1", IndexState.INACTIVE, BLOCKING_1000, ("email",)
        )
        assert indexes[1].state is IndexState.ACTIVE
        assert indexes[1].is_diverged is False

    def test_list_diverged_filters_clear_markers(self, cassandra_ledger, session):
        session.execute.return_value = [_row(), _row(name="app.idx2", state="ACTIVE", marker=0)]

        assert [i.name for i in cassandra_ledger.list_diverged()] == ["app.idx1"]

    def test_incomplete_and_unknown_rows_skipped(self, cassandra_ledger, session):
        session.execute.return_value = [
            _row(data_table=None),
            _row(state=None),
            _row(state="BUILDING"),
            _row(name="app.ok", marker=None),
        ]

        indexes = cassandra_ledger.list_indexes()

        assert [i.name for i in indexes] == ["app.ok"]
        assert indexes[0].is_diverged is False

    def test_get_index(self, cassandra_ledger, session):
        session.execute.return_value.one.return_value = _row(marker=1000)

        index = cassandra_ledger.get_index("app.idx1")

        assert index.marker == STALE_1000
        statement, params = session.execute.call_args[0]
        assert "WHERE index_name = ?" in statement.query_string
        assert params == ("app.idx1",)

    def test_get_missing_index(self, cassandra_ledger, session):
        session.execute.return_value.one.return_value = None

        assert cassandra_ledger.get_index("app.missing") is None

    def test_register_index(self, cassandra_ledger, session, make_index):
        session.execute.return_value.was_applied = True

        assert cassandra_ledger.register_index(make_index()) is True

        statement, params = session.execute.call_args[0]
        assert statement.query_string.endswith("IF NOT EXISTS")
        assert params[:5] == ("app.idx1", "app.t1", "ACTIVE", 0, ["email"])

    def test_compare_and_set_uses_lightweight_transaction(self, cassandra_ledger, session):
        session.execute.return_value.was_applied = True

        applied = cassandra_ledger.compare_and_set_state(
            "app.idx1", IndexState.INACTIVE, IndexState.INACTIVE,
            DivergenceMarker(1400, DivergenceCause.BLOCKING)
        )

        assert applied is True
        statement, params = session.execute.call_args[0]
        assert statement.query_string.endswith("IF index_state = ?")
        assert params[0] == "INACTIVE"
        assert params[1] == -1400
        assert params[3:] == ("app.idx1", "INACTIVE")

    def test_compare_and_set_with_expected_marker(self, cassandra_ledger, session):
        session.execute.return_value.was_applied = False

        applied = cassandra_ledger.compare_and_set_state(
            "app.idx1", IndexState.INACTIVE, IndexState.ACTIVE, CLEAR, expected_marker=BLOCKING_1000
        )

        assert applied is False
        statement, params = session.execute.call_args[0]
        assert statement.query_string.endswith("IF index_state = ? AND disable_timestamp = ?")
        assert params[1] == 0
        assert params[-1] == -1000

    def test_statements_prepared_once(self, cassandra_ledger, session):
        session.execute.return_value.was_applied = True

        for _ in range(3):
            cassandra_ledger.compare_and_set_state(
                "app.idx1", IndexState.INACTIVE, IndexState.ACTIVE, CLEAR
            )

        assert session.prepare.call_count == 1

    def test_mark_diverged(self, cassandra_ledger, session):
        session.execute.return_value.was_applied = True

        cassandra_ledger.mark_diverged("app.idx1", IndexState.DISABLED, BLOCKING_1000)

        statement, params = session.execute.call_args[0]
        assert statement.query_string.endswith("IF EXISTS")
        assert params[:2] == ("DISABLED", -1000)

    def test_mark_diverged_missing_row(self, cassandra_ledger, session):
        session.execute.return_value.was_applied = False

        with pytest.raises(LedgerError, match="not found"):
            cassandra_ledger.mark_diverged("app.idx1", IndexState.INACTIVE, STALE_1000)

    def test_driver_errors_become_ledger_errors(self, cassandra_ledger, session):
        session.execute.side_effect = DriverException("timeout")

        with pytest.raises(LedgerError, match="timeout"):
            cassandra_ledger.list_indexes()

    def test_prepare_errors_become_ledger_errors(self, cassandra_ledger, session):
        session.prepare.side_effect = DriverException("unavailable")

        with pytest.raises(LedgerError):
            cassandra_ledger.get_index("app.idx1")

    def test_ensure_schema(self, cassandra_ledger, session):
        cassandra_ledger.ensure_schema(replication_factor=1)

        queries = [c[0][0] for c in session.execute.call_args_list]
        assert "CREATE KEYSPACE IF NOT EXISTS rebuild" in queries[0]
        assert "'replication_factor': 1" in queries[0]
        assert "CREATE TABLE IF NOT EXISTS rebuild.ledger" in queries[1]
        assert "disable_timestamp bigint" in queries[1]
