"""
Unit tests -- Postgres client against a mocked SQLAlchemy engine.
"""
import datetime
from collections import namedtuple
from unittest.mock import MagicMock, PropertyMock

import pytest
from sqlalchemy.exc import OperationalError, ProgrammingError, ResourceClosedError

from src.core.errors import WarehouseConnectionError, WarehouseQueryError
from src.semantic.explore import Metric
from src.semantic.types import DimensionType, MetricType, WeekDay
from src.warehouses.base import QueryState
from src.warehouses.postgres import PostgresTypes, PostgresWarehouseClient, convert_type_oid, map_field_type


# ── Type mapping ─────────────────────────────────────────

def test_every_native_type_maps():
    for pg_type in PostgresTypes:
        assert isinstance(map_field_type(pg_type.value), DimensionType)


@pytest.mark.parametrize("native,expected", [
    ("integer", DimensionType.NUMBER),
    ("double precision", DimensionType.NUMBER),
    ("money", DimensionType.NUMBER),
    ("date", DimensionType.DATE),
    ("timestamp without time zone", DimensionType.TIMESTAMP),
    ("timestamp with time zone", DimensionType.TIMESTAMP),
    ("time with time zone", DimensionType.TIMESTAMP),
    ("boolean", DimensionType.BOOLEAN),
    ("character varying", DimensionType.STRING),
    ("jsonb", DimensionType.STRING),
])
def test_native_types(native, expected):
    assert map_field_type(native) == expected


def test_type_modifiers_and_case_ignored():
    assert map_field_type("NUMERIC(10,2)") == DimensionType.NUMBER
    assert map_field_type("character varying(255)") == DimensionType.STRING
    assert map_field_type("TIMESTAMP(3) WITH TIME ZONE") == DimensionType.TIMESTAMP


def test_unknown_types_are_strings():
    assert map_field_type("tsvector") == DimensionType.STRING
    assert map_field_type("") == DimensionType.STRING
    assert map_field_type(None) == DimensionType.STRING


def test_type_oids():
    assert convert_type_oid(23) == DimensionType.NUMBER
    assert convert_type_oid(1082) == DimensionType.DATE
    assert convert_type_oid(1184) == DimensionType.TIMESTAMP
    assert convert_type_oid(16) == DimensionType.BOOLEAN
    assert convert_type_oid(25) == DimensionType.STRING
    assert convert_type_oid(None) == DimensionType.STRING


# ── SQL conventions ──────────────────────────────────────

def test_quote_chars(pg_client):
    quotes = pg_client.quote_chars()
    assert (quotes.field, quotes.string, quotes.escape) == ('"', "'", "'")


def test_start_of_week_defaults_to_monday(pg_client):
    assert pg_client.get_start_of_week() == WeekDay.MONDAY


def test_start_of_week_from_credentials(monkeypatch, pg_credentials):
    monkeypatch.setattr("src.warehouses.postgres.create_engine", MagicMock())
    client = PostgresWarehouseClient(pg_credentials.model_copy(update={"start_of_week": WeekDay.SUNDAY}))
    assert client.get_start_of_week() == WeekDay.SUNDAY


def test_percentile_sql(pg_client):
    p25 = Metric(name="p", table="t", type=MetricType.PERCENTILE, sql="t.x", percentile=25)
    median = Metric(name="m", table="t", type=MetricType.MEDIAN, sql="t.x")
    total = Metric(name="s", table="t", type=MetricType.SUM, sql="t.x")
    assert pg_client.metric_expression("t.x", p25) == "PERCENTILE_CONT(0.25) WITHIN GROUP (ORDER BY t.x)"
    assert pg_client.metric_expression("t.x", median) == "PERCENTILE_CONT(0.5) WITHIN GROUP (ORDER BY t.x)"
    assert pg_client.metric_expression("t.x", total) == "SUM(t.x)"


# ── Execution ────────────────────────────────────────────

def _wire(pg_client, description, rows):
    conn = MagicMock(name="connection")
    pg_client.engine.connect.return_value = conn
    result = conn.execution_options.return_value.exec_driver_sql.return_value
    result.cursor.description = description
    result.mappings.return_value = iter(rows)
    return conn, result


def test_engine_built_from_credentials(pg_client):
    from src.warehouses import postgres as postgres_module

    url = postgres_module.create_engine.call_args.args[0]
    assert url.drivername == "postgresql+psycopg2"
    assert url.host == "warehouse.internal"
    assert url.database == "analytics"
    assert postgres_module.create_engine.call_args.kwargs["connect_args"] == {"sslmode": "prefer"}


def test_run_query_streams_normalised_rows(pg_client):
    conn, result = _wire(
        pg_client,
        [("orders_status", 25, None, None, None, None, None),
         ("orders_created_date", 1082, None, None, None, None, None),
         ("orders_count", 20, None, None, None, None, None)],
        [{"orders_status": "complete", "orders_created_date": datetime.date(2024, 1, 1), "orders_count": 3}],
    )
    with pg_client.run_query('SELECT 1') as qr:
        assert qr.fields == {
            "orders_status": DimensionType.STRING,
            "orders_created_date": DimensionType.DATE,
            "orders_count": DimensionType.NUMBER,
        }
        rows = list(qr.rows)
    assert rows == [{
        "orders_status": "complete",
        "orders_created_date": datetime.datetime(2024, 1, 1, tzinfo=datetime.timezone.utc),
        "orders_count": 3,
    }]
    assert qr.state == QueryState.COMPLETED
    conn.execution_options.assert_called_once_with(stream_results=True, yield_per=pg_client.settings.query_page_size)
    conn.execution_options.return_value.exec_driver_sql.assert_called_once_with("SELECT 1")
    result.close.assert_called_once()
    conn.close.assert_called_once()


def test_run_query_read_only_with_timeout(pg_client):
    conn, _ = _wire(pg_client, [], [])
    pg_client.run_query("SELECT 1").close()
    statements = [str(c.args[0]) for c in conn.execute.call_args_list]
    assert statements[0] == "SET TRANSACTION READ ONLY"
    expected_ms = pg_client.settings.default_query_timeout_seconds * 1000
    assert statements[1] == f"SET LOCAL statement_timeout = {expected_ms}"


def test_early_close_releases_cursor(pg_client):
    conn, result = _wire(pg_client, [("n", 23)], [{"n": i} for i in range(100)])
    qr = pg_client.run_query("SELECT n FROM big")
    assert next(iter(qr))["n"] == 0
    qr.close()
    assert qr.state == QueryState.CANCELLED
    result.close.assert_called_once()
    conn.close.assert_called_once()


def test_statement_error_raises_query_error(pg_client):
    conn = MagicMock(name="connection")
    pg_client.engine.connect.return_value = conn
    conn.execution_options.return_value.exec_driver_sql.side_effect = ProgrammingError(
        "SELECT nope", {}, Exception('column "nope" does not exist')
    )
    with pytest.raises(WarehouseQueryError, match='column "nope" does not exist'):
        pg_client.run_query("SELECT nope")
    conn.close.assert_called_once()


def test_non_driver_error_still_returns_connection(pg_client):
    conn = MagicMock(name="connection")
    pg_client.engine.connect.return_value = conn
    conn.execution_options.return_value.exec_driver_sql.side_effect = ResourceClosedError(
        "This Connection is closed"
    )
    with pytest.raises(WarehouseQueryError, match="This Connection is closed"):
        pg_client.run_query("SELECT 1")
    conn.close.assert_called_once()


def test_unexpected_error_closes_connection_and_propagates(pg_client):
    conn, result = _wire(pg_client, [], [])
    type(result).cursor = PropertyMock(side_effect=RuntimeError("cursor gone"))
    with pytest.raises(RuntimeError, match="cursor gone"):
        pg_client.run_query("SELECT 1")
    conn.close.assert_called_once()


def test_connect_failure_raises_connection_error(pg_client):
    pg_client.engine.connect.side_effect = OperationalError(
        "connect", {}, Exception("could not translate host name")
    )
    with pytest.raises(WarehouseConnectionError, match="warehouse.internal:5432/analytics"):
        pg_client.run_query("SELECT 1")


def test_close_disposes_engine(pg_client):
    pg_client.close()
    pg_client.engine.dispose.assert_called_once()


# ── Catalog ──────────────────────────────────────────────

Column = namedtuple("Column", ["column_name", "data_type"])


def _wire_catalog(pg_client, tables):
    conn = MagicMock(name="connection")
    conn.__enter__.return_value = conn
    pg_client.engine.connect.return_value = conn

    def execute(statement, params):
        rows = tables.get((params["database"], params["schema"], params["table"]), [])
        return MagicMock(all=MagicMock(return_value=rows))

    conn.execute.side_effect = execute
    return conn


def test_catalog_from_information_schema(pg_client):
    _wire_catalog(pg_client, {
        ("analytics", "public", "orders"): [
            Column("order_id", "integer"),
            Column("created_at", "timestamp with time zone"),
            Column("status", "text"),
        ],
    })
    catalog = pg_client.get_catalog([("analytics", "public", "orders"), ("analytics", "public", "ghost")])
    assert catalog == {
        "analytics": {"public": {"orders": {
            "order_id": DimensionType.NUMBER,
            "created_at": DimensionType.TIMESTAMP,
            "status": DimensionType.STRING,
        }}},
    }


def test_catalog_only_missing_tables(pg_client):
    _wire_catalog(pg_client, {})
    assert pg_client.get_catalog([("a", "s", "t")]) == {}


def test_catalog_query_failure_names_table(pg_client):
    conn = _wire_catalog(pg_client, {})
    conn.execute.side_effect = ProgrammingError("SELECT", {}, Exception("permission denied for schema s"))
    with pytest.raises(WarehouseConnectionError, match=r"'analytics\.s\.t'.*permission denied"):
        pg_client.get_catalog([("analytics", "s", "t")])
