"""
Query builder -- turns a CompiledMetricQuery into a single native SQL SELECT.

All field references are resolved against the Explore (plus the query's
additional metrics); nothing is taken from raw user strings.  Dialect details
(quote characters, start of week, aggregate syntax) come from the warehouse
client, so the builder itself contains no backend-specific syntax.

The builder is a pure function: the same explore, query, dialect and `now`
always produce byte-identical SQL.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING

from src.compiler.filter_sql import RenderContext, quote_identifier, render_filter_rule_sql
from src.compiler.filter_tree import compile_filter_group
from src.core.errors import FieldReferenceError
from src.core.logging import get_logger
from src.semantic.explore import Dimension, Explore, Metric, field_id
from src.semantic.query import CompiledMetricQuery, FilterRule, iter_filter_rules

if TYPE_CHECKING:
    from src.warehouses.base import WarehouseClient

logger = get_logger(__name__)


@dataclass(frozen=True)
class BuiltQuery:
    query: str
    has_example_metric: bool


# ── Field resolution ─────────────────────────────────────

def get_dimension_from_id(dim_id: str, explore: Explore) -> Dimension:
    for d in explore.get_dimensions():
        if field_id(d) == dim_id:
            return d
    raise FieldReferenceError(
        f"Tried to reference dimension with unknown field id: {dim_id}", dim_id
    )


def get_metric_from_id(metric_id: str, explore: Explore, query: CompiledMetricQuery) -> Metric:
    for m in [*explore.get_metrics(), *query.additional_metrics]:
        if field_id(m) == metric_id:
            return m
    raise FieldReferenceError(
        f"Tried to reference metric with unknown field id: {metric_id}", metric_id
    )


# ── SQL builder ──────────────────────────────────────────

def build_query(
    explore: Explore,
    query: CompiledMetricQuery,
    warehouse_client: WarehouseClient,
    now: datetime | None = None,
) -> BuiltQuery:
    """Build the native SQL for *query* in *warehouse_client*'s dialect.

    *now* is the reference time for relative date filters (``inThePast``,
    ``inTheNext``, ``inTheCurrent``).  It defaults to the current UTC time,
    in which case a query holding such a filter renders second-resolution
    timestamps and two builds of it can differ.  Pass *now* explicitly
    whenever byte-identical SQL is required; queries without relative date
    filters are identical either way.
    """
    quotes = warehouse_client.quote_chars()
    ctx = RenderContext(
        field_quote_char=quotes.field,
        string_quote_char=quotes.string,
        escape_string_quote_char=quotes.escape,
        start_of_week=warehouse_client.get_start_of_week(),
        now=now or datetime.now(timezone.utc),
    )

    def q(name: str) -> str:
        return quote_identifier(name, quotes.field)

    dimensions = [get_dimension_from_id(d, explore) for d in query.dimensions]
    metrics = [get_metric_from_id(m, explore, query) for m in query.metrics]
    if not dimensions and not metrics:
        raise ValueError("Metric query must select at least one dimension or metric")
    has_example_metric = any(m.is_auto_generated for m in metrics)

    # ── SELECT clause ────────────────────────────────
    select_parts = [f"{d.sql} AS {q(field_id(d))}" for d in dimensions]
    select_parts += [
        f"{warehouse_client.metric_expression(m.sql, m)} AS {q(field_id(m))}"
        for m in metrics
    ]

    # ── WHERE (dimensions) / HAVING (metrics) ────────
    tables_used = {f.table for f in [*dimensions, *metrics]}

    def render_dimension_rule(rule: FilterRule) -> str:
        dim = get_dimension_from_id(rule.target.field_id, explore)
        tables_used.add(dim.table)
        return render_filter_rule_sql(rule, dim, dim.sql, ctx)

    def render_metric_rule(rule: FilterRule) -> str:
        metric = get_metric_from_id(rule.target.field_id, explore, query)
        tables_used.add(metric.table)
        return render_filter_rule_sql(
            rule, metric, warehouse_client.metric_expression(metric.sql, metric), ctx
        )

    where_sql = compile_filter_group(query.filters.dimensions, render_dimension_rule)
    having_sql = compile_filter_group(query.filters.metrics, render_metric_rule)

    # ── ORDER BY ─────────────────────────────────────
    selected_ids = {*query.dimensions, *query.metrics}
    order_parts: list[str] = []
    for sort in query.sorts:
        if sort.field_id not in selected_ids:
            raise FieldReferenceError(
                f"Tried to sort by field that is not selected: {sort.field_id}", sort.field_id
            )
        order_parts.append(f"{q(sort.field_id)}{' DESC' if sort.descending else ''}")

    # ── FROM / JOIN clauses ──────────────────────────
    from_clause = f"FROM {explore.base_sql_table()} AS {q(explore.base_table)}"
    join_clauses: list[str] = []
    for join in explore.joined_tables:
        if join.table not in tables_used or join.table == explore.base_table:
            continue
        jtype = "INNER" if join.join_type == "inner" else "LEFT OUTER"
        sql_table = explore.tables[join.table].sql_table
        join_clauses.append(f"{jtype} JOIN {sql_table} AS {q(join.table)}\n  ON {join.sql_on}")

    # ── Assemble ─────────────────────────────────────
    sql_lines = ["SELECT", "  " + ",\n  ".join(select_parts), from_clause, *join_clauses]
    if where_sql:
        sql_lines.append(f"WHERE {where_sql}")
    if dimensions:
        sql_lines.append("GROUP BY " + ", ".join(str(i + 1) for i in range(len(dimensions))))
    if having_sql:
        sql_lines.append(f"HAVING {having_sql}")
    if order_parts:
        sql_lines.append("ORDER BY " + ", ".join(order_parts))
    sql_lines.append(f"LIMIT {int(query.limit)}")

    sql = "\n".join(sql_lines)
    logger.debug("Built query for explore=%s:\n%s", explore.name, sql)
    return BuiltQuery(query=sql, has_example_metric=has_example_metric)
