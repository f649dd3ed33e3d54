"""
BigQuery warehouse client (google-cloud-bigquery).

Each `run_query` creates one standard-SQL query job.  Column types come from
the result schema, available as soon as the job finishes; rows are then
pulled page by page (`page_size=query_page_size`) only as the caller
iterates.  The job is cancelled if it times out or if the caller abandons
the stream while the job is still running.

Catalog fetches open one client per project (database) and call
`get_table` per table; tables reported NotFound are dropped.
"""
from __future__ import annotations

import concurrent.futures
from enum import Enum
from typing import Any, Iterator, Mapping

from google.api_core import exceptions as google_exceptions
from google.auth import exceptions as auth_exceptions
from google.cloud import bigquery
from google.oauth2 import service_account

from src.core.errors import WarehouseConnectionError, WarehouseQueryError
from src.core.logging import bind, get_logger
from src.core.utils import short_id, timer
from src.semantic.explore import Metric
from src.semantic.types import DimensionType, MetricType
from src.warehouses.base import QueryResult, WarehouseClient
from src.warehouses.catalog import TableRef
from src.warehouses.credentials import BigqueryCredentials

logger = get_logger(__name__)


class BigqueryFieldType(str, Enum):
    STRING = "STRING"
    INTEGER = "INTEGER"
    BYTES = "BYTES"
    INT64 = "INT64"
    FLOAT = "FLOAT"
    FLOAT64 = "FLOAT64"
    BOOLEAN = "BOOLEAN"
    BOOL = "BOOL"
    TIMESTAMP = "TIMESTAMP"
    DATE = "DATE"
    TIME = "TIME"
    DATETIME = "DATETIME"
    GEOGRAPHY = "GEOGRAPHY"
    NUMERIC = "NUMERIC"
    BIGNUMERIC = "BIGNUMERIC"
    RECORD = "RECORD"
    STRUCT = "STRUCT"
    ARRAY = "ARRAY"
    JSON = "JSON"


_FIELD_TYPES: dict[BigqueryFieldType, DimensionType] = {
    BigqueryFieldType.DATE: DimensionType.DATE,
    BigqueryFieldType.DATETIME: DimensionType.TIMESTAMP,
    BigqueryFieldType.TIMESTAMP: DimensionType.TIMESTAMP,
    BigqueryFieldType.TIME: DimensionType.TIMESTAMP,
    BigqueryFieldType.INTEGER: DimensionType.NUMBER,
    BigqueryFieldType.INT64: DimensionType.NUMBER,
    BigqueryFieldType.FLOAT: DimensionType.NUMBER,
    BigqueryFieldType.FLOAT64: DimensionType.NUMBER,
    BigqueryFieldType.NUMERIC: DimensionType.NUMBER,
    BigqueryFieldType.BIGNUMERIC: DimensionType.NUMBER,
    BigqueryFieldType.BOOL: DimensionType.BOOLEAN,
    BigqueryFieldType.BOOLEAN: DimensionType.BOOLEAN,
}


def map_field_type(native_type: str | None) -> DimensionType:
    """BigQuery field type -> DimensionType (unknown -> STRING)."""
    try:
        return _FIELD_TYPES.get(BigqueryFieldType((native_type or "").upper()), DimensionType.STRING)
    except ValueError:
        return DimensionType.STRING


# Job-insertion failures worth retrying (the job never started)
_TRANSIENT_ERRORS = (
    google_exceptions.ServiceUnavailable,
    google_exceptions.TooManyRequests,
    google_exceptions.InternalServerError,
    google_exceptions.BadGateway,
)
_AUTH_ERRORS = (
    auth_exceptions.RefreshError,
    auth_exceptions.DefaultCredentialsError,
    auth_exceptions.TransportError,
    google_exceptions.Unauthorized,
)
# Raised at job insertion when the project itself is unusable (ACL, billing, missing)
_PROJECT_ERRORS = (
    google_exceptions.Forbidden,
    google_exceptions.NotFound,
)


def _api_message(exc: google_exceptions.GoogleAPICallError) -> str:
    return getattr(exc, "message", None) or str(exc)


class BigqueryWarehouseClient(WarehouseClient[BigqueryCredentials]):
    warehouse_type = "bigquery"

    def __init__(self, credentials: BigqueryCredentials):
        super().__init__(credentials)
        try:
            self.client = self._create_client(credentials.project)
        except (ValueError, *_AUTH_ERRORS) as exc:
            raise WarehouseConnectionError(f"Failed connection to {self._identity()}. {exc}") from exc

    def _identity(self) -> str:
        return f"{self.credentials.project} in {self.credentials.location}"

    def _create_client(self, project: str) -> bigquery.Client:
        google_credentials = None
        if self.credentials.keyfile_contents:
            google_credentials = service_account.Credentials.from_service_account_info(
                self.credentials.keyfile_contents
            )
        return bigquery.Client(
            project=project,
            credentials=google_credentials,
            location=self.credentials.location,
        )

    def close(self) -> None:
        self.client.close()

    # ── SQL conventions ──────────────────────────────

    def get_field_quote_char(self) -> str:
        return "`"

    def get_string_quote_char(self) -> str:
        return "'"

    def get_escape_string_quote_char(self) -> str:
        return "\\"

    def metric_expression(self, sql: str, metric: Metric) -> str:
        if metric.type == MetricType.PERCENTILE:
            percentile = float(metric.percentile if metric.percentile is not None else 50)
            if percentile.is_integer():
                return f"APPROX_QUANTILES({sql}, 100)[OFFSET({int(percentile)})]"
            # fractional percentiles: per-mille buckets, e.g. 99.5 -> 995 of 1000
            return f"APPROX_QUANTILES({sql}, 1000)[OFFSET({round(percentile * 10)})]"
        if metric.type == MetricType.MEDIAN:
            return f"APPROX_QUANTILES({sql}, 100)[OFFSET(50)]"
        return super().metric_expression(sql, metric)

    # ── Execution ────────────────────────────────────

    def _job_config(self) -> bigquery.QueryJobConfig:
        config = bigquery.QueryJobConfig(
            use_legacy_sql=False,
            priority=self.credentials.priority.upper(),
        )
        if self.credentials.maximum_bytes_billed is not None:
            config.maximum_bytes_billed = self.credentials.maximum_bytes_billed
        if self.credentials.timeout_seconds:
            config.job_timeout_ms = self.credentials.timeout_seconds * 1000
        return config

    def _create_job(self, sql: str, log: Any) -> bigquery.QueryJob:
        """Insert the query job, retrying only failures where no job started."""
        attempt = 0
        while True:
            attempt += 1
            try:
                return self.client.query(sql, job_config=self._job_config(), retry=None, job_retry=None)
            except _TRANSIENT_ERRORS as exc:
                if attempt > self.credentials.retries:
                    raise WarehouseConnectionError(
                        f"Failed connection to {self._identity()}. {exc}"
                    ) from exc
                log.warning("Job insertion failed (attempt %d): %s", attempt, exc)
            except _AUTH_ERRORS as exc:
                raise WarehouseConnectionError(
                    f"Failed connection to {self._identity()}. {exc}"
                ) from exc
            except _PROJECT_ERRORS as exc:
                raise WarehouseConnectionError(
                    f"Failed connection to {self._identity()}. {_api_message(exc)}"
                ) from exc
            except google_exceptions.GoogleAPICallError as exc:
                raise WarehouseQueryError(_api_message(exc)) from exc
            except OSError as exc:
                # requests / urllib3 transport failures
                raise WarehouseConnectionError(
                    f"Failed connection to {self._identity()}. {exc}"
                ) from exc

    def run_query(self, sql: str) -> QueryResult:
        query_id = short_id()
        log = bind(logger, warehouse=self.warehouse_type, query=query_id)
        log.info("Executing SQL (%d chars)", len(sql))

        timeout_s = self.credentials.timeout_seconds or self.settings.default_query_timeout_seconds
        query_result = QueryResult(query_id)
        with query_result.executing():
            job = self._create_job(sql, log)
            try:
                with timer() as t:
                    rows_iter = job.result(
                        page_size=self.settings.query_page_size,
                        timeout=timeout_s,
                        job_retry=None,
                    )
            except concurrent.futures.TimeoutError as exc:
                job.cancel()
                raise WarehouseQueryError(
                    f"Query timed out after {timeout_s}s (job {job.job_id})"
                ) from exc
            except _AUTH_ERRORS as exc:
                raise WarehouseConnectionError(
                    f"Failed connection to {self._identity()}. {exc}"
                ) from exc
            except google_exceptions.GoogleAPICallError as exc:
                raise WarehouseQueryError(_api_message(exc)) from exc

        fields = {f.name: map_field_type(f.field_type) for f in rows_iter.schema or []}
        log.info("Job %s done  schema_fields=%d  elapsed_ms=%d", job.job_id, len(fields), t["elapsed_ms"])

        def raw_rows() -> Iterator[Mapping[str, Any]]:
            for row in rows_iter:
                yield dict(row.items())

        def release(cancelled: bool) -> None:
            if cancelled and not job.done(reload=False):
                log.info("Cancelling job %s", job.job_id)
                job.cancel()

        return query_result.attach(fields, raw_rows(), release)

    # ── Introspection ────────────────────────────────

    @staticmethod
    def map_field_type(native_type: str | None) -> DimensionType:
        return map_field_type(native_type)

    def _open_catalog_session(self, database: str) -> bigquery.Client:
        try:
            return self._create_client(database)
        except (ValueError, *_AUTH_ERRORS) as exc:
            raise WarehouseConnectionError(
                f"Failed connection to {database} in {self.credentials.location}. {exc}"
            ) from exc

    def _close_catalog_session(self, session: bigquery.Client) -> None:
        session.close()

    def _fetch_table_columns(self, session: bigquery.Client, ref: TableRef) -> list[tuple[str, str]]:
        table_reference = bigquery.DatasetReference(ref.database, ref.schema).table(ref.table)
        table = session.get_table(table_reference)
        return [(f.name, f.field_type) for f in table.schema or [] if f.name and f.field_type]

    def is_not_found(self, exc: Exception) -> bool:
        return isinstance(exc, google_exceptions.NotFound)

    def is_session_error(self, exc: BaseException | None) -> bool:
        return isinstance(exc, _AUTH_ERRORS)
