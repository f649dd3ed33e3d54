"""
Filter rule renderer -- turns one leaf FilterRule into a SQL predicate.

Rendering depends on the *kind* of the field being filtered (string, number,
date/timestamp, boolean) and on the dialect's literal conventions, passed in
as a `RenderContext`.  Literal values are never interpolated raw: strings are
escaped with the dialect's escape char, numbers / dates / booleans are parsed
and re-formatted before they reach the SQL text.
"""
from __future__ import annotations

import calendar
import math
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Any

from src.core.errors import FilterRenderError
from src.semantic.explore import Dimension, Field
from src.semantic.query import FilterRule
from src.semantic.types import (
    DimensionType,
    FilterOperator,
    MetricType,
    UnitOfTime,
    WeekDay,
)


@dataclass(frozen=True)
class RenderContext:
    """Dialect conventions + reference time used while rendering rules."""

    field_quote_char: str
    string_quote_char: str
    escape_string_quote_char: str
    start_of_week: WeekDay
    now: datetime


# ── Literals ─────────────────────────────────────────────

def escape_string(value: str, quote: str, escape: str) -> str:
    """Escape *value* for a literal delimited by *quote*.

    When the escape char is not the quote char itself (e.g. BigQuery's
    backslash) it is doubled first, so a trailing escape can't eat the
    closing quote.
    """
    if escape != quote:
        value = value.replace(escape, escape + escape)
    return value.replace(quote, escape + quote)


def quote_string(value: Any, ctx: RenderContext) -> str:
    q = ctx.string_quote_char
    return f"{q}{escape_string(str(value), q, ctx.escape_string_quote_char)}{q}"


def quote_identifier(name: str, quote: str) -> str:
    return f"{quote}{name.replace(quote, quote + quote)}{quote}"


def _number_literal(value: Any) -> str:
    if isinstance(value, bool):
        raise FilterRenderError(f"Expected a number, got boolean {value!r}")
    try:
        num = Decimal(str(value).strip())
    except (InvalidOperation, ValueError) as exc:
        raise FilterRenderError(f"Expected a number, got {value!r}") from exc
    if not num.is_finite():
        raise FilterRenderError(f"Expected a finite number, got {value!r}")
    return str(num)


def _boolean_literal(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, str) and value.strip().lower() in ("true", "false"):
        return value.strip().lower()
    raise FilterRenderError(f"Expected a boolean, got {value!r}")


def _to_datetime(value: Any) -> datetime:
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, date):
        dt = datetime(value.year, value.month, value.day)
    elif isinstance(value, str):
        try:
            dt = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError as exc:
            raise FilterRenderError(f"Expected an ISO date, got {value!r}") from exc
    else:
        raise FilterRenderError(f"Expected a date, got {value!r}")
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


def _date_literal(value: Any, dim_type: DimensionType, ctx: RenderContext) -> str:
    dt = _to_datetime(value)
    if dim_type == DimensionType.DATE:
        text = dt.strftime("%Y-%m-%d")
    else:
        text = dt.strftime("%Y-%m-%d %H:%M:%S")
    return quote_string(text, ctx)


# ── Date arithmetic ──────────────────────────────────────

def _add_months(dt: datetime, months: int) -> datetime:
    month_index = dt.month - 1 + months
    year = dt.year + month_index // 12
    month = month_index % 12 + 1
    day = min(dt.day, calendar.monthrange(year, month)[1])
    return dt.replace(year=year, month=month, day=day)


def shift(dt: datetime, n: int, unit: UnitOfTime) -> datetime:
    if unit == UnitOfTime.DAYS:
        return dt + timedelta(days=n)
    if unit == UnitOfTime.WEEKS:
        return dt + timedelta(weeks=n)
    if unit == UnitOfTime.MONTHS:
        return _add_months(dt, n)
    return _add_months(dt, 12 * n)


def start_of(dt: datetime, unit: UnitOfTime, start_of_week: WeekDay) -> datetime:
    midnight = dt.replace(hour=0, minute=0, second=0, microsecond=0)
    if unit == UnitOfTime.DAYS:
        return midnight
    if unit == UnitOfTime.WEEKS:
        return midnight - timedelta(days=(midnight.weekday() - start_of_week) % 7)
    if unit == UnitOfTime.MONTHS:
        return midnight.replace(day=1)
    return midnight.replace(month=1, day=1)


def _unit_count(rule: FilterRule) -> int:
    if not rule.values:
        raise FilterRenderError(f"Operator {rule.operator.value} needs a number of units")
    raw = rule.values[0]
    if isinstance(raw, bool):
        raise FilterRenderError(f"Expected a whole number of units, got {raw!r}")
    try:
        n = float(raw)
    except (TypeError, ValueError) as exc:
        raise FilterRenderError(f"Expected a whole number of units, got {raw!r}") from exc
    if not math.isfinite(n) or n != int(n) or n < 0:
        raise FilterRenderError(f"Expected a whole number of units, got {raw!r}")
    return int(n)


# ── Per-kind renderers ───────────────────────────────────

def _in_list(sql: str, literals: list[str], negate: bool = False) -> str:
    if len(literals) == 1:
        return f"({sql}) {'!=' if negate else '='} {literals[0]}"
    return f"({sql}) {'NOT IN' if negate else 'IN'} ({', '.join(literals)})"


def _null_check(sql: str, operator: FilterOperator) -> str | None:
    if operator == FilterOperator.NULL:
        return f"({sql}) IS NULL"
    if operator == FilterOperator.NOT_NULL:
        return f"({sql}) IS NOT NULL"
    return None


def render_string_filter_sql(sql: str, rule: FilterRule, ctx: RenderContext) -> str:
    op = rule.operator
    null_sql = _null_check(sql, op)
    if null_sql:
        return null_sql
    literals = [quote_string(v, ctx) for v in rule.values]
    if op == FilterOperator.EQUALS:
        return _in_list(sql, literals) if literals else "true"
    if op == FilterOperator.NOT_EQUALS:
        if not literals:
            return "true"
        return f"({_in_list(sql, literals, negate=True)} OR ({sql}) IS NULL)"

    patterns = {
        FilterOperator.STARTS_WITH: ("{}%", "LIKE", " OR "),
        FilterOperator.ENDS_WITH: ("%{}", "LIKE", " OR "),
        FilterOperator.INCLUDE: ("%{}%", "LIKE", " OR "),
        FilterOperator.NOT_INCLUDE: ("%{}%", "NOT LIKE", " AND "),
    }
    if op not in patterns:
        raise FilterRenderError(f"Operator {op.value} is not supported for string fields")
    if not rule.values:
        return "true"
    template, like, joiner = patterns[op]
    parts = []
    for v in rule.values:
        literal = quote_string(template.format(v), ctx)
        if op in (FilterOperator.INCLUDE, FilterOperator.NOT_INCLUDE):
            parts.append(f"LOWER({sql}) {like} LOWER({literal})")
        else:
            parts.append(f"({sql}) {like} {literal}")
    return parts[0] if len(parts) == 1 else f"({joiner.join(parts)})"


_COMPARATORS = {
    FilterOperator.LESS_THAN: "<",
    FilterOperator.LESS_THAN_OR_EQUAL: "<=",
    FilterOperator.GREATER_THAN: ">",
    FilterOperator.GREATER_THAN_OR_EQUAL: ">=",
}


def render_number_filter_sql(sql: str, rule: FilterRule) -> str:
    op = rule.operator
    null_sql = _null_check(sql, op)
    if null_sql:
        return null_sql
    literals = [_number_literal(v) for v in rule.values]
    if op == FilterOperator.EQUALS:
        return _in_list(sql, literals) if literals else "true"
    if op == FilterOperator.NOT_EQUALS:
        return _in_list(sql, literals, negate=True) if literals else "true"
    if op in _COMPARATORS:
        if not literals:
            raise FilterRenderError(f"Operator {op.value} needs a value")
        return f"({sql}) {_COMPARATORS[op]} ({literals[0]})"
    if op == FilterOperator.IN_BETWEEN:
        if len(literals) < 2:
            raise FilterRenderError("Operator inBetween needs two values")
        return f"(({sql}) >= ({literals[0]}) AND ({sql}) <= ({literals[1]}))"
    raise FilterRenderError(f"Operator {op.value} is not supported for number fields")


def _window(sql: str, start: str, end: str, end_inclusive: bool) -> str:
    return f"(({sql}) >= {start} AND ({sql}) {'<=' if end_inclusive else '<'} {end})"


def render_date_filter_sql(
    sql: str, rule: FilterRule, dim_type: DimensionType, ctx: RenderContext
) -> str:
    op = rule.operator
    null_sql = _null_check(sql, op)
    if null_sql:
        return null_sql

    def lit(v: Any) -> str:
        return _date_literal(v, dim_type, ctx)

    if op == FilterOperator.EQUALS:
        return _in_list(sql, [lit(v) for v in rule.values]) if rule.values else "true"
    if op == FilterOperator.NOT_EQUALS:
        if not rule.values:
            return "true"
        return _in_list(sql, [lit(v) for v in rule.values], negate=True)
    if op in _COMPARATORS:
        if not rule.values:
            raise FilterRenderError(f"Operator {op.value} needs a value")
        return f"({sql}) {_COMPARATORS[op]} {lit(rule.values[0])}"
    if op == FilterOperator.IN_BETWEEN:
        if len(rule.values) < 2:
            raise FilterRenderError("Operator inBetween needs two values")
        return _window(sql, lit(rule.values[0]), lit(rule.values[1]), end_inclusive=True)

    settings = rule.settings
    unit = settings.unit_of_time if settings else UnitOfTime.DAYS
    completed = settings.completed if settings else False
    now = _to_datetime(ctx.now)
    current = start_of(now, unit, ctx.start_of_week)

    if op == FilterOperator.IN_THE_CURRENT:
        return _window(sql, lit(current), lit(shift(current, 1, unit)), end_inclusive=False)
    if op == FilterOperator.IN_THE_PAST:
        n = _unit_count(rule)
        if completed:
            return _window(sql, lit(shift(current, -n, unit)), lit(current), end_inclusive=False)
        return _window(sql, lit(shift(now, -n, unit)), lit(now), end_inclusive=True)
    if op == FilterOperator.IN_THE_NEXT:
        n = _unit_count(rule)
        if completed:
            nxt = shift(current, 1, unit)
            return _window(sql, lit(nxt), lit(shift(nxt, n, unit)), end_inclusive=False)
        return _window(sql, lit(now), lit(shift(now, n, unit)), end_inclusive=True)
    raise FilterRenderError(f"Operator {op.value} is not supported for date fields")


def render_boolean_filter_sql(sql: str, rule: FilterRule) -> str:
    op = rule.operator
    null_sql = _null_check(sql, op)
    if null_sql:
        return null_sql
    if op in (FilterOperator.EQUALS, FilterOperator.NOT_EQUALS):
        if not rule.values:
            return "true"
        cmp = "=" if op == FilterOperator.EQUALS else "!="
        return f"({sql}) {cmp} {_boolean_literal(rule.values[0])}"
    raise FilterRenderError(f"Operator {op.value} is not supported for boolean fields")


# ── Dispatch ─────────────────────────────────────────────

_METRIC_KIND = {
    MetricType.STRING: DimensionType.STRING,
    MetricType.DATE: DimensionType.DATE,
    MetricType.BOOLEAN: DimensionType.BOOLEAN,
}


def field_kind(f: Field) -> DimensionType:
    """Which renderer applies: metrics filter as numbers unless typed otherwise."""
    if isinstance(f, Dimension):
        return f.type
    return _METRIC_KIND.get(f.type, DimensionType.NUMBER)


def render_filter_rule_sql(rule: FilterRule, f: Field, field_sql: str, ctx: RenderContext) -> str:
    kind = field_kind(f)
    if kind == DimensionType.STRING:
        return render_string_filter_sql(field_sql, rule, ctx)
    if kind == DimensionType.NUMBER:
        return render_number_filter_sql(field_sql, rule)
    if kind in (DimensionType.DATE, DimensionType.TIMESTAMP):
        return render_date_filter_sql(field_sql, rule, kind, ctx)
    return render_boolean_filter_sql(field_sql, rule)
