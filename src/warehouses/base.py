"""
Warehouse client interface shared by every dialect.

A client knows three things about its backend:
  1. SQL conventions   -- quote characters, start of week, aggregate syntax
  2. Query execution   -- `run_query` returns a lazily streamed `QueryResult`
  3. Introspection     -- `get_catalog` maps native column types into
                          the canonical `DimensionType`

Rows are streamed page by page through a generator pipeline
(backend page -> cell normalisation -> caller), so memory held by the client
is bounded by the page size, never by the size of the result set.
"""
from __future__ import annotations

import datetime
import decimal
from abc import ABC, abstractmethod
from concurrent.futures import FIRST_EXCEPTION, ThreadPoolExecutor, wait
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Generic, Iterable, Iterator, Mapping, TypeVar

from src.core.config import get_settings
from src.core.errors import WarehouseConnectionError, WarehouseError, WarehouseQueryError
from src.core.logging import bind, get_logger
from src.core.utils import table_ref
from src.semantic.explore import Metric
from src.semantic.types import DimensionType, MetricType, WeekDay
from src.warehouses.catalog import TableRef, TableSchemaResult, WarehouseCatalog, merge_catalog

logger = get_logger(__name__)

CredentialsT = TypeVar("CredentialsT")


# ── Cell normalisation ───────────────────────────────────

_EPOCH = datetime.date(1970, 1, 1)


def parse_cell(value: Any) -> Any:
    """Normalise one backend value.

    Temporal values of any flavour become timezone-aware UTC datetimes;
    None, booleans and numbers pass through; anything else is stringified.
    """
    if value is None or isinstance(value, (bool, int, float, decimal.Decimal)):
        return value
    if isinstance(value, datetime.datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=datetime.timezone.utc)
        return value.astimezone(datetime.timezone.utc)
    if isinstance(value, datetime.date):
        return datetime.datetime(value.year, value.month, value.day, tzinfo=datetime.timezone.utc)
    if isinstance(value, datetime.time):
        return parse_cell(datetime.datetime.combine(_EPOCH, value))
    return f"{value}"


def parse_row(row: Mapping[str, Any]) -> dict[str, Any]:
    return {name: parse_cell(value) for name, value in row.items()}


# ── Query result ─────────────────────────────────────────

class QueryState(str, Enum):
    IDLE = "idle"
    EXECUTING = "executing"
    STREAMING = "streaming"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class QueryResult:
    """Column types plus a forward-only, non-restartable stream of rows.

    Lifecycle: a result starts IDLE, is EXECUTING inside `executing()` while
    the dialect submits the statement, and gets its column types and row
    source from `attach()`.  `fields` is therefore known before the first row
    is pulled.  Iterating `rows` pulls pages from the backend on demand.
    Closing the result (or leaving its ``with`` block) before exhaustion
    releases the backend cursor / job.
    """

    def __init__(self, query_id: str = ""):
        self.query_id = query_id
        self.state = QueryState.IDLE
        self.fields: dict[str, DimensionType] = {}
        self.row_count = 0
        self._raw_rows: Iterator[Mapping[str, Any]] = iter(())
        self._release: Callable[[bool], None] | None = None
        self._released = False
        self._rows: Iterator[dict[str, Any]] = self._stream()
        self._log = bind(logger, query=query_id)

    @contextmanager
    def executing(self) -> Iterator[QueryResult]:
        """Mark the statement as submitted; an escaping error marks it FAILED."""
        self.state = QueryState.EXECUTING
        try:
            yield self
        except Exception as exc:
            self.state = QueryState.FAILED
            self._log.warning("Query failed before streaming: %s", exc)
            raise

    def attach(
        self,
        fields: dict[str, DimensionType],
        raw_rows: Iterator[Mapping[str, Any]],
        release: Callable[[bool], None],
    ) -> QueryResult:
        """Hand over the executed statement's column types and row source."""
        if self.state == QueryState.IDLE:
            self.state = QueryState.EXECUTING
        self.fields = fields
        self._raw_rows = raw_rows
        self._release = release
        self._rows = self._stream()
        return self

    @property
    def rows(self) -> Iterator[dict[str, Any]]:
        return self._rows

    def __iter__(self) -> Iterator[dict[str, Any]]:
        return self._rows

    def __enter__(self) -> QueryResult:
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def close(self) -> None:
        """Stop streaming; releases the backend side if rows are still pending."""
        if self.state in (QueryState.EXECUTING, QueryState.STREAMING):
            self.state = QueryState.CANCELLED
            self._log.info("Query cancelled by consumer after %d rows", self.row_count)
        self._rows.close()
        self._finish()

    def _finish(self) -> None:
        if not self._released and self._release is not None:
            self._released = True
            self._release(self.state == QueryState.CANCELLED)

    def _stream(self) -> Iterator[dict[str, Any]]:
        try:
            for raw in self._raw_rows:
                if self.state == QueryState.EXECUTING:
                    self.state = QueryState.STREAMING
                self.row_count += 1
                yield parse_row(raw)
        except WarehouseError:
            self.state = QueryState.FAILED
            raise
        except Exception as exc:
            self.state = QueryState.FAILED
            raise WarehouseQueryError(str(exc)) from exc
        else:
            self.state = QueryState.COMPLETED
            self._log.info("Query completed  rows=%d", self.row_count)
        finally:
            self._finish()


# ── Metric SQL ───────────────────────────────────────────

_AGGREGATE_TEMPLATES = {
    MetricType.AVERAGE: "AVG({})",
    MetricType.COUNT: "COUNT({})",
    MetricType.COUNT_DISTINCT: "COUNT(DISTINCT {})",
    MetricType.SUM: "SUM({})",
    MetricType.MIN: "MIN({})",
    MetricType.MAX: "MAX({})",
    MetricType.NUMBER: "{}",
    MetricType.STRING: "{}",
    MetricType.DATE: "{}",
    MetricType.BOOLEAN: "{}",
}


def get_default_metric_sql(sql: str, metric: Metric) -> str:
    """Portable SQL for the generic aggregate kinds.

    Percentile-family metrics have no portable syntax; dialects override
    `WarehouseClient.metric_expression` for them.
    """
    template = _AGGREGATE_TEMPLATES.get(metric.type)
    if template is None:
        raise ValueError(f"No portable SQL for metric type '{metric.type.value}'")
    return template.format(sql)


def _table_ref_from_request(request: Any) -> TableRef:
    if isinstance(request, TableRef):
        return request
    if isinstance(request, Mapping):
        try:
            return TableRef(request["database"], request["schema"], request["table"])
        except KeyError as exc:
            raise ValueError(f"Catalog request {request!r} is missing key {exc}") from exc
    if isinstance(request, (str, bytes)) or not isinstance(request, Iterable):
        raise TypeError(f"Catalog request must be a (database, schema, table) triple, got {request!r}")
    parts = tuple(request)
    if len(parts) != 3:
        raise ValueError(f"Catalog request must have 3 parts, got {request!r}")
    return TableRef(*parts)


@dataclass(frozen=True)
class QuoteChars:
    field: str
    string: str
    escape: str


# ── Client interface ─────────────────────────────────────

class WarehouseClient(ABC, Generic[CredentialsT]):
    """Base class for one warehouse dialect."""

    warehouse_type: str = "unknown"

    def __init__(self, credentials: CredentialsT):
        self.credentials = credentials
        self.settings = get_settings()

    # ── SQL conventions ──────────────────────────────

    @abstractmethod
    def get_field_quote_char(self) -> str: ...

    @abstractmethod
    def get_string_quote_char(self) -> str: ...

    @abstractmethod
    def get_escape_string_quote_char(self) -> str: ...

    def quote_chars(self) -> QuoteChars:
        return QuoteChars(
            field=self.get_field_quote_char(),
            string=self.get_string_quote_char(),
            escape=self.get_escape_string_quote_char(),
        )

    def get_start_of_week(self) -> WeekDay:
        start = getattr(self.credentials, "start_of_week", None)
        return WeekDay(start) if start is not None else WeekDay.MONDAY

    def metric_expression(self, sql: str, metric: Metric) -> str:
        return get_default_metric_sql(sql, metric)

    # ── Execution ────────────────────────────────────

    @abstractmethod
    def run_query(self, sql: str) -> QueryResult:
        """Execute *sql*; column types are known on return, rows stream lazily."""

    def test(self) -> None:
        """Raise WarehouseConnectionError / WarehouseQueryError if unusable."""
        with self.run_query("SELECT 1") as result:
            for _ in result.rows:
                pass

    def close(self) -> None:
        """Release pooled connections / clients owned by this instance."""

    # ── Introspection ────────────────────────────────

    @staticmethod
    @abstractmethod
    def map_field_type(native_type: str | None) -> DimensionType: ...

    @abstractmethod
    def _open_catalog_session(self, database: str) -> Any:
        """Open the session shared by all table fetches of one database."""

    def _close_catalog_session(self, session: Any) -> None:
        pass

    @abstractmethod
    def _fetch_table_columns(self, session: Any, ref: TableRef) -> list[tuple[str, str]] | None:
        """Return ``(column, native_type)`` pairs, or None if the table doesn't exist."""

    def is_not_found(self, exc: Exception) -> bool:
        return False

    def is_session_error(self, exc: BaseException | None) -> bool:
        """True when *exc* means the shared session itself is unusable."""
        return False

    def get_catalog(
        self,
        requests: Iterable[TableRef | tuple[str, str, str] | Mapping[str, str]],
    ) -> WarehouseCatalog:
        """Fetch column types for every requested table.

        A request is a ``(database, schema, table)`` triple or a mapping with
        those three keys.  Missing tables are dropped silently.  Any other
        failure raises WarehouseConnectionError naming the table, once sibling
        fetches finish.
        """
        by_database: dict[str, list[TableRef]] = {}
        for r in requests:
            ref = _table_ref_from_request(r)
            by_database.setdefault(ref.database, []).append(ref)
        if not by_database:
            return {}

        log = bind(logger, warehouse=self.warehouse_type)
        log.info("Fetching catalog  tables=%d  databases=%d",
                 sum(len(v) for v in by_database.values()), len(by_database))

        workers = min(len(by_database), self.settings.catalog_max_databases)
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="catalog-db") as pool:
            futures = [pool.submit(self._fetch_database, db, refs) for db, refs in by_database.items()]
            wait(futures)

        results: list[TableSchemaResult | None] = []
        errors: list[BaseException] = []
        for f in futures:
            exc = f.exception()
            if exc is not None:
                errors.append(exc)
            else:
                results.extend(f.result())
        if errors:
            raise errors[0]

        catalog = merge_catalog(results)
        log.info("Catalog fetched  found=%d  dropped=%d",
                 sum(r is not None for r in results), sum(r is None for r in results))
        return catalog

    def _fetch_database(self, database: str, refs: list[TableRef]) -> list[TableSchemaResult | None]:
        log = bind(logger, warehouse=self.warehouse_type, database=database)
        try:
            session = self._open_catalog_session(database)
        except WarehouseConnectionError:
            raise
        except Exception as exc:
            raise WarehouseConnectionError(
                f"Failed to open a catalog session for database '{database}'. {exc}"
            ) from exc

        try:
            workers = min(len(refs), self.settings.catalog_max_workers_per_database)
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="catalog-table") as pool:
                futures = [pool.submit(self._fetch_table, session, ref) for ref in refs]
                done, pending = wait(futures, return_when=FIRST_EXCEPTION)
                lost = [
                    f for f in done
                    if f.exception() is not None and self.is_session_error(f.exception().__cause__)
                ]
                if lost:
                    log.warning("Catalog session lost -- cancelling %d pending fetches", len(pending))
                    for f in pending:
                        f.cancel()
                    raise lost[0].exception()
                wait(pending)
        finally:
            self._close_catalog_session(session)

        errors = [f.exception() for f in futures if f.exception() is not None]
        if errors:
            raise errors[0]
        return [f.result() for f in futures]

    def _fetch_table(self, session: Any, ref: TableRef) -> TableSchemaResult | None:
        try:
            columns = self._fetch_table_columns(session, ref)
        except Exception as exc:
            if not self.is_not_found(exc):
                raise WarehouseConnectionError(
                    f"Failed to fetch table metadata for "
                    f"'{table_ref(*ref)}'. {exc}"
                ) from exc
            columns = None
        if columns is None:
            logger.info("Table %s not found -- dropped from catalog", table_ref(*ref))
            return None
        return TableSchemaResult(
            database=ref.database,
            schema=ref.schema,
            table=ref.table,
            columns={name: self.map_field_type(native) for name, native in columns},
        )
