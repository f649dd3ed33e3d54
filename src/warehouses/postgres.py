"""
Postgres warehouse client (SQLAlchemy engine over psycopg2).

Queries run in a READ ONLY transaction with a per-query statement_timeout,
through a server-side cursor so rows are fetched `query_page_size` at a time.
Column types come from the cursor description (type OIDs); catalog column
types come from information_schema.columns.
"""
from __future__ import annotations

import re
from enum import Enum
from typing import Any, Iterator, Mapping

from sqlalchemy import create_engine, text
from sqlalchemy.engine import URL, Connection, Engine
from sqlalchemy.exc import DBAPIError, DisconnectionError, OperationalError, SQLAlchemyError

from src.core.errors import WarehouseConnectionError, WarehouseQueryError
from src.core.logging import bind, get_logger
from src.core.utils import short_id, timer
from src.semantic.explore import Metric
from src.semantic.types import DimensionType, MetricType
from src.warehouses.base import QueryResult, WarehouseClient
from src.warehouses.catalog import TableRef
from src.warehouses.credentials import PostgresCredentials

logger = get_logger(__name__)


class PostgresTypes(str, Enum):
    INTEGER = "integer"
    INT = "int"
    INT2 = "int2"
    INT4 = "int4"
    INT8 = "int8"
    MONEY = "money"
    SMALLSERIAL = "smallserial"
    SERIAL = "serial"
    SERIAL2 = "serial2"
    SERIAL4 = "serial4"
    SERIAL8 = "serial8"
    BIGSERIAL = "bigserial"
    BIGINT = "bigint"
    SMALLINT = "smallint"
    BOOLEAN = "boolean"
    BOOL = "bool"
    DATE = "date"
    DOUBLE_PRECISION = "double precision"
    FLOAT = "float"
    FLOAT4 = "float4"
    FLOAT8 = "float8"
    JSON = "json"
    JSONB = "jsonb"
    NUMERIC = "numeric"
    DECIMAL = "decimal"
    REAL = "real"
    CHAR = "char"
    CHARACTER = "character"
    NCHAR = "nchar"
    BPCHAR = "bpchar"
    VARCHAR = "varchar"
    CHARACTER_VARYING = "character varying"
    NVARCHAR = "nvarchar"
    TEXT = "text"
    TIME = "time"
    TIME_TZ = "timetz"
    TIME_WITH_TIME_ZONE = "time with time zone"
    TIME_WITHOUT_TIME_ZONE = "time without time zone"
    TIMESTAMP = "timestamp"
    TIMESTAMP_TZ = "timestamptz"
    TIMESTAMP_WITH_TIME_ZONE = "timestamp with time zone"
    TIMESTAMP_WITHOUT_TIME_ZONE = "timestamp without time zone"


_NUMBER_TYPES = {
    PostgresTypes.DECIMAL, PostgresTypes.NUMERIC, PostgresTypes.INTEGER, PostgresTypes.INT,
    PostgresTypes.MONEY, PostgresTypes.SMALLSERIAL, PostgresTypes.SERIAL, PostgresTypes.SERIAL2,
    PostgresTypes.SERIAL4, PostgresTypes.SERIAL8, PostgresTypes.BIGSERIAL, PostgresTypes.INT2,
    PostgresTypes.INT4, PostgresTypes.INT8, PostgresTypes.BIGINT, PostgresTypes.SMALLINT,
    PostgresTypes.FLOAT, PostgresTypes.FLOAT4, PostgresTypes.FLOAT8,
    PostgresTypes.DOUBLE_PRECISION, PostgresTypes.REAL,
}
_TIMESTAMP_TYPES = {
    PostgresTypes.TIME, PostgresTypes.TIME_TZ, PostgresTypes.TIME_WITH_TIME_ZONE,
    PostgresTypes.TIME_WITHOUT_TIME_ZONE, PostgresTypes.TIMESTAMP, PostgresTypes.TIMESTAMP_TZ,
    PostgresTypes.TIMESTAMP_WITH_TIME_ZONE, PostgresTypes.TIMESTAMP_WITHOUT_TIME_ZONE,
}
_BOOLEAN_TYPES = {PostgresTypes.BOOLEAN, PostgresTypes.BOOL}

_TYPE_MODIFIER_RE = re.compile(r"\(.*?\)")


def map_field_type(native_type: str | None) -> DimensionType:
    """information_schema data_type -> DimensionType (unknown -> STRING)."""
    if not native_type:
        return DimensionType.STRING
    name = " ".join(_TYPE_MODIFIER_RE.sub("", native_type).lower().split())
    try:
        pg_type = PostgresTypes(name)
    except ValueError:
        return DimensionType.STRING
    if pg_type in _NUMBER_TYPES:
        return DimensionType.NUMBER
    if pg_type == PostgresTypes.DATE:
        return DimensionType.DATE
    if pg_type in _TIMESTAMP_TYPES:
        return DimensionType.TIMESTAMP
    if pg_type in _BOOLEAN_TYPES:
        return DimensionType.BOOLEAN
    return DimensionType.STRING


# Built-in type OIDs reported in cursor.description
_OID_TYPES: dict[int, DimensionType] = {
    1700: DimensionType.NUMBER,     # numeric
    790: DimensionType.NUMBER,      # money
    21: DimensionType.NUMBER,       # int2
    23: DimensionType.NUMBER,       # int4
    20: DimensionType.NUMBER,       # int8
    700: DimensionType.NUMBER,      # float4
    701: DimensionType.NUMBER,      # float8
    1082: DimensionType.DATE,       # date
    1083: DimensionType.TIMESTAMP,  # time
    1266: DimensionType.TIMESTAMP,  # timetz
    1114: DimensionType.TIMESTAMP,  # timestamp
    1184: DimensionType.TIMESTAMP,  # timestamptz
    16: DimensionType.BOOLEAN,      # bool
}


def convert_type_oid(oid: int | None) -> DimensionType:
    return _OID_TYPES.get(oid, DimensionType.STRING) if oid is not None else DimensionType.STRING


_COLUMNS_SQL = text(
    """
    SELECT column_name, data_type
    FROM information_schema.columns
    WHERE table_catalog = :database
      AND table_schema = :schema
      AND table_name = :table
    ORDER BY ordinal_position
    """
)


class PostgresWarehouseClient(WarehouseClient[PostgresCredentials]):
    warehouse_type = "postgres"

    def __init__(self, credentials: PostgresCredentials):
        super().__init__(credentials)
        connect_args: dict[str, Any] = {"sslmode": credentials.sslmode}
        if credentials.keepalives_idle is not None:
            connect_args["keepalives_idle"] = credentials.keepalives_idle
        try:
            self.engine: Engine = create_engine(
                URL.create(
                    "postgresql+psycopg2",
                    username=credentials.user,
                    password=credentials.password,
                    host=credentials.host,
                    port=credentials.port,
                    database=credentials.dbname,
                ),
                connect_args=connect_args,
                pool_pre_ping=True,
                pool_size=5,
                max_overflow=10,
            )
        except (SQLAlchemyError, ImportError) as exc:
            raise WarehouseConnectionError(
                f"Failed connection to {self._identity()}. {exc}"
            ) from exc

    def _identity(self) -> str:
        c = self.credentials
        return f"{c.host}:{c.port}/{c.dbname}"

    def _connect(self) -> Connection:
        try:
            return self.engine.connect()
        except DBAPIError as exc:
            raise WarehouseConnectionError(
                f"Failed connection to {self._identity()}. {exc.orig or exc}"
            ) from exc

    def close(self) -> None:
        self.engine.dispose()

    # ── SQL conventions ──────────────────────────────

    def get_field_quote_char(self) -> str:
        return '"'

    def get_string_quote_char(self) -> str:
        return "'"

    def get_escape_string_quote_char(self) -> str:
        return "'"

    def metric_expression(self, sql: str, metric: Metric) -> str:
        if metric.type == MetricType.PERCENTILE:
            percentile = metric.percentile if metric.percentile is not None else 50
            return f"PERCENTILE_CONT({percentile / 100}) WITHIN GROUP (ORDER BY {sql})"
        if metric.type == MetricType.MEDIAN:
            return f"PERCENTILE_CONT(0.5) WITHIN GROUP (ORDER BY {sql})"
        return super().metric_expression(sql, metric)

    # ── Execution ────────────────────────────────────

    def run_query(self, sql: str) -> QueryResult:
        query_id = short_id()
        log = bind(logger, warehouse=self.warehouse_type, query=query_id)
        log.info("Executing SQL (%d chars)", len(sql))

        timeout_s = self.credentials.timeout_seconds or self.settings.default_query_timeout_seconds
        query_result = QueryResult(query_id)
        with query_result.executing():
            conn = self._connect()
            try:
                conn.execute(text("SET TRANSACTION READ ONLY"))
                conn.execute(text(f"SET LOCAL statement_timeout = {int(timeout_s) * 1000}"))
                # exec_driver_sql: the compiled SQL is final, no bind-param parsing
                with timer() as t:
                    result = conn.execution_options(
                        stream_results=True, yield_per=self.settings.query_page_size
                    ).exec_driver_sql(sql)
                fields = {
                    col[0]: convert_type_oid(col[1]) for col in (result.cursor.description or [])
                }
            except DBAPIError as exc:
                conn.close()
                raise WarehouseQueryError(str(exc.orig or exc)) from exc
            except SQLAlchemyError as exc:
                conn.close()
                raise WarehouseQueryError(str(exc)) from exc
            except Exception:
                conn.close()
                raise
        log.info("Cursor open  columns=%d  elapsed_ms=%d", len(fields), t["elapsed_ms"])

        def raw_rows() -> Iterator[Mapping[str, Any]]:
            yield from result.mappings()

        def release(cancelled: bool) -> None:
            if cancelled:
                log.info("Closing server-side cursor early")
            try:
                result.close()
            finally:
                conn.close()

        return query_result.attach(fields, raw_rows(), release)

    # ── Introspection ────────────────────────────────

    @staticmethod
    def map_field_type(native_type: str | None) -> DimensionType:
        return map_field_type(native_type)

    def _open_catalog_session(self, database: str) -> Engine:
        # information_schema only lists the connected database; other
        # databases simply come back empty and are dropped.
        return self.engine

    def _fetch_table_columns(self, session: Engine, ref: TableRef) -> list[tuple[str, str]] | None:
        with self._connect() as conn:
            rows = conn.execute(
                _COLUMNS_SQL,
                {"database": ref.database, "schema": ref.schema, "table": ref.table},
            ).all()
        if not rows:
            return None
        return [(row.column_name, row.data_type) for row in rows]

    def is_session_error(self, exc: BaseException | None) -> bool:
        return isinstance(exc, (WarehouseConnectionError, OperationalError, DisconnectionError))
