"""
Unit tests -- cell normalisation, the streamed QueryResult, portable metric SQL.
"""
import datetime
import decimal

import pytest

from src.core.errors import WarehouseQueryError
from src.semantic.explore import Metric
from src.semantic.types import DimensionType, MetricType
from src.warehouses.base import QueryResult, QueryState, get_default_metric_sql, parse_cell, parse_row

UTC = datetime.timezone.utc


# ── Cell normalisation ───────────────────────────────────

@pytest.mark.parametrize("value", [None, True, 0, 3.5, decimal.Decimal("1.10")])
def test_scalars_pass_through(value):
    assert parse_cell(value) is value


def test_naive_datetime_is_treated_as_utc():
    assert parse_cell(datetime.datetime(2024, 1, 2, 3, 4, 5)) == datetime.datetime(
        2024, 1, 2, 3, 4, 5, tzinfo=UTC
    )


def test_aware_datetime_converted_to_utc():
    cet = datetime.timezone(datetime.timedelta(hours=1))
    value = parse_cell(datetime.datetime(2024, 1, 2, 3, 0, tzinfo=cet))
    assert value == datetime.datetime(2024, 1, 2, 2, 0, tzinfo=UTC)
    assert value.tzinfo == UTC


def test_date_becomes_midnight_utc():
    assert parse_cell(datetime.date(2024, 2, 29)) == datetime.datetime(2024, 2, 29, tzinfo=UTC)


def test_time_anchored_on_epoch():
    assert parse_cell(datetime.time(13, 30)) == datetime.datetime(1970, 1, 1, 13, 30, tzinfo=UTC)


def test_other_values_stringified():
    assert parse_cell({"a": 1}) == "{'a': 1}"
    assert parse_cell(b"ab") == "b'ab'"


def test_parse_row_keeps_column_order():
    row = parse_row({"b": datetime.date(2024, 1, 1), "a": 1})
    assert list(row) == ["b", "a"]
    assert row["b"].tzinfo == UTC


# ── QueryResult ──────────────────────────────────────────

class _Source:
    """Row source that counts how many rows have been pulled."""

    def __init__(self, n: int, fail_at: int | None = None):
        self.n = n
        self.fail_at = fail_at
        self.pulled = 0

    def __iter__(self):
        for i in range(self.n):
            if i == self.fail_at:
                raise RuntimeError("connection reset")
            self.pulled += 1
            yield {"id": i}


class _Release:
    def __init__(self):
        self.calls: list[bool] = []

    def __call__(self, cancelled: bool) -> None:
        self.calls.append(cancelled)


def _result(source, release):
    result = QueryResult(query_id="q1")
    with result.executing():
        fields = {"id": DimensionType.NUMBER}
    return result.attach(fields, iter(source), release)


def test_new_result_is_idle():
    result = QueryResult(query_id="q1")
    assert result.state == QueryState.IDLE
    assert result.fields == {}


def test_executing_then_attached():
    result = QueryResult(query_id="q1")
    with result.executing():
        assert result.state == QueryState.EXECUTING
    result.attach({"id": DimensionType.NUMBER}, iter([{"id": 1}]), _Release())
    assert result.state == QueryState.EXECUTING
    assert list(result) == [{"id": 1}]
    assert result.state == QueryState.COMPLETED


def test_error_while_executing_marks_failed():
    result = QueryResult(query_id="q1")
    with pytest.raises(WarehouseQueryError):
        with result.executing():
            raise WarehouseQueryError("relation does not exist")
    assert result.state == QueryState.FAILED


def test_close_without_attached_source_releases_nothing():
    result = QueryResult(query_id="q1")
    result.close()
    assert result.state == QueryState.IDLE


def test_fields_known_before_first_row():
    source, release = _Source(3), _Release()
    result = _result(source, release)
    assert result.fields == {"id": DimensionType.NUMBER}
    assert result.state == QueryState.EXECUTING
    assert source.pulled == 0


def test_full_iteration_completes_and_releases_once():
    source, release = _Source(3), _Release()
    result = _result(source, release)
    assert [r["id"] for r in result.rows] == [0, 1, 2]
    assert result.state == QueryState.COMPLETED
    assert result.row_count == 3
    result.close()
    assert release.calls == [False]


def test_empty_result():
    release = _Release()
    result = _result(_Source(0), release)
    assert list(result) == []
    assert result.state == QueryState.COMPLETED
    assert release.calls == [False]


def test_rows_pulled_on_demand():
    source, release = _Source(10_000), _Release()
    result = _result(source, release)
    it = iter(result)
    next(it)
    next(it)
    assert source.pulled == 2
    assert result.state == QueryState.STREAMING
    result.close()


def test_early_close_cancels_and_releases():
    source, release = _Source(100), _Release()
    with _result(source, release) as result:
        for row in result.rows:
            if row["id"] == 4:
                break
    assert result.state == QueryState.CANCELLED
    assert release.calls == [True]
    assert source.pulled == 5
    assert list(result.rows) == []


def test_close_before_iteration_cancels():
    release = _Release()
    result = _result(_Source(5), release)
    result.close()
    assert result.state == QueryState.CANCELLED
    assert release.calls == [True]


def test_mid_stream_failure_wrapped():
    release = _Release()
    result = _result(_Source(5, fail_at=2), release)
    seen = []
    with pytest.raises(WarehouseQueryError, match="connection reset"):
        for row in result:
            seen.append(row["id"])
    assert seen == [0, 1]
    assert result.state == QueryState.FAILED
    assert release.calls == [False]


def test_warehouse_errors_not_rewrapped():
    def source():
        yield {"id": 1}
        raise WarehouseQueryError("division by zero")

    result = QueryResult().attach({}, source(), _Release())
    with pytest.raises(WarehouseQueryError, match="^division by zero$"):
        list(result)
    assert result.state == QueryState.FAILED


# ── Portable metric SQL ──────────────────────────────────

def _metric(kind: MetricType) -> Metric:
    return Metric(name="m", table="t", type=kind, sql="t.x")


@pytest.mark.parametrize("kind,expected", [
    (MetricType.AVERAGE, "AVG(t.x)"),
    (MetricType.COUNT, "COUNT(t.x)"),
    (MetricType.COUNT_DISTINCT, "COUNT(DISTINCT t.x)"),
    (MetricType.SUM, "SUM(t.x)"),
    (MetricType.MIN, "MIN(t.x)"),
    (MetricType.MAX, "MAX(t.x)"),
    (MetricType.NUMBER, "t.x"),
    (MetricType.BOOLEAN, "t.x"),
])
def test_default_metric_sql(kind, expected):
    assert get_default_metric_sql("t.x", _metric(kind)) == expected


@pytest.mark.parametrize("kind", [MetricType.PERCENTILE, MetricType.MEDIAN])
def test_percentiles_have_no_portable_sql(kind):
    with pytest.raises(ValueError, match=kind.value):
        get_default_metric_sql("t.x", _metric(kind))
