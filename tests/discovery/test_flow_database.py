"""
Tests for the PostgreSQL flow store (psycopg2 mocked).
"""

from unittest.mock import MagicMock, patch

import numpy as np
import pytest

from src.discovery.database import FlowDatabase
from src.discovery.store import FlowStore


@pytest.fixture
def mock_connection():
    with patch("src.core.database.psycopg2.connect") as connect:
        connection = MagicMock()
        connect.return_value = connection
        yield connection


@pytest.fixture
def cursor(mock_connection):
    cursor = mock_connection.cursor.return_value
    cursor.description = [("state_id",), ("flow_count",)]
    cursor.fetchall.return_value = [(0, 10), (1, 5)]
    return cursor


@pytest.fixture
def db(mock_connection, discovery_config):
    return FlowDatabase(discovery_config)


def executed_query(cursor, index=0):
    """repr() of the composed SQL passed to cursor.execute"""
    return repr(cursor.execute.call_args_list[index].args[0])


class TestFlowDatabase:
    """Tests for FlowDatabase initialization."""

    def test_connects_with_config(self, discovery_config):
        with patch("src.core.database.psycopg2.connect") as connect:
            FlowDatabase(discovery_config)

        connect.assert_called_once_with(
            host="localhost",
            port=5432,
            database="test_db",
            user="test_user",
            password="test_password",
            connect_timeout=10,
        )

    def test_is_a_flow_store(self, db):
        assert isinstance(db, FlowStore)

    def test_ensure_hmm_state_column(self, db, cursor, mock_connection):
        db.ensure_hmm_state_column()

        query = executed_query(cursor)
        assert "Identifier('flows')" in query
        assert "ADD COLUMN IF NOT EXISTS hmm_state INTEGER" in query
        mock_connection.commit.assert_called_once()


class TestExtractFeatures:
    """Tests for sampling raw flow rows."""

    def test_sampled_query(self, db, cursor):
        df = db.extract_features(1000)

        query = executed_query(cursor)
        assert "ORDER BY random()" in query
        assert "Literal(1000)" in query
        assert "AS row_id" in query
        assert "AS group_id" in query
        assert "LAG(flow_start_milliseconds)" in query
        assert list(df.columns) == ["state_id", "flow_count"]

    def test_unsampled_query(self, db, cursor):
        db.extract_features(None)
        assert "Literal" not in executed_query(cursor)

    def test_custom_table(self, mock_connection, cursor, discovery_config):
        discovery_config.flow_table = "flows_2024"
        FlowDatabase(discovery_config).extract_features(10)
        assert "Identifier('flows_2024')" in executed_query(cursor)


class TestWriteStateAssignments:
    """Tests for writing state labels back."""

    def test_clears_then_batches_updates(self, db, cursor, mock_connection):
        with patch("src.discovery.database.psycopg2.extras.execute_values") as execute_values:
            db.write_state_assignments({101: 0, 102: np.int64(1), 103: 1})

        assert "SET hmm_state = NULL" in executed_query(cursor)
        args, kwargs = execute_values.call_args
        assert args[0] is cursor
        assert "FROM (VALUES %s)" in repr(args[1])
        assert args[2] == [(101, 0), (102, 1), (103, 1)]
        assert all(type(state) is int for _, state in args[2])
        assert kwargs["page_size"] == 50
        mock_connection.commit.assert_called_once()

    def test_keep_previous_labels(self, db, cursor):
        with patch("src.discovery.database.psycopg2.extras.execute_values") as execute_values:
            db.write_state_assignments({1: 0}, replace=False)

        cursor.execute.assert_not_called()
        execute_values.assert_called_once()

    def test_empty_assignments(self, db, cursor, mock_connection):
        with patch("src.discovery.database.psycopg2.extras.execute_values") as execute_values:
            db.write_state_assignments({})

        execute_values.assert_not_called()
        mock_connection.commit.assert_not_called()

    def test_failure_rolls_back(self, db, mock_connection):
        with patch(
            "src.discovery.database.psycopg2.extras.execute_values",
            side_effect=Exception("deadlock detected"),
        ):
            with pytest.raises(Exception, match="deadlock detected"):
                db.write_state_assignments({1: 0})

        mock_connection.rollback.assert_called_once()
        mock_connection.commit.assert_not_called()


class TestSignaturesAndDrillDown:
    """Tests for aggregate and per-state queries."""

    def test_state_signatures(self, db, cursor):
        df = db.get_state_signatures()

        query = executed_query(cursor)
        assert "GROUP BY hmm_state" in query
        assert "WHERE hmm_state IS NOT NULL" in query
        assert "AS avg_inter_flow_gap_ms" in query
        assert df["flow_count"].tolist() == [10, 5]

    def test_sample_flows(self, db, cursor):
        db.get_sample_flows(3)
        assert cursor.execute.call_args.args[1] == (3, 20)

    def test_state_top_hosts(self, db, cursor):
        hosts = db.get_state_top_hosts(2, limit=3)

        assert set(hosts) == {"src_hosts", "dst_hosts"}
        assert cursor.execute.call_count == 2
        assert "Identifier('ipv4_src_addr')" in executed_query(cursor, 0)
        assert "Identifier('ipv4_dst_addr')" in executed_query(cursor, 1)
        assert cursor.execute.call_args.args[1] == (2, 3)

    def test_state_timeline(self, db, cursor):
        db.get_state_timeline(1, bucket_minutes=5)
        assert cursor.execute.call_args.args[1] == (300_000, 300_000, 1)

    def test_state_conn_states(self, db, cursor):
        db.get_state_conn_states(4)
        assert cursor.execute.call_args.args[1] == (4, 10)

    def test_update_state_tactic_is_parameterised(self, db, cursor):
        cursor.rowcount = 12

        updated = db.update_state_tactic(2, "Reconnaissance'; DROP TABLE flows; --")

        assert updated == 12
        assert cursor.execute.call_args.args[1] == ("Reconnaissance'; DROP TABLE flows; --", 2)
        assert "DROP TABLE" not in executed_query(cursor)

    def test_query_failure_propagates(self, db, cursor, mock_connection):
        cursor.execute.side_effect = Exception("relation \"flows\" does not exist")

        with pytest.raises(Exception, match="does not exist"):
            db.get_state_signatures()
        mock_connection.rollback.assert_called_once()
