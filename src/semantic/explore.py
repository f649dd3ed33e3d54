"""
Explore definitions -- the joined data-model graph a metric query runs against.

An Explore owns a base table plus joined tables; each table owns dimensions
and metrics.  Every dimension / metric is addressed by a Field Id derived
from its table and name (see `field_id`).

The compiler only ever reads these objects.  They are normally supplied by
the semantic layer; `load_explore` parses one from YAML for local use and
tests.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Union

import yaml

from src.semantic.types import DimensionType, MetricType


# ── Typed domain objects ─────────────────────────────────

@dataclass(frozen=True)
class Dimension:
    name: str
    table: str
    type: DimensionType
    sql: str                      # compiled native SQL, e.g. "orders".status
    label: str = ""
    description: str = ""
    hidden: bool = False


@dataclass(frozen=True)
class Metric:
    name: str
    table: str
    type: MetricType
    sql: str                      # column SQL the aggregate wraps
    percentile: float | None = None
    is_auto_generated: bool = False
    label: str = ""
    description: str = ""
    hidden: bool = False


Field = Union[Dimension, Metric]


@dataclass(frozen=True)
class Table:
    name: str
    sql_table: str                # dialect-qualified source, e.g. analytics.orders
    dimensions: dict[str, Dimension] = field(default_factory=dict)
    metrics: dict[str, Metric] = field(default_factory=dict)


@dataclass(frozen=True)
class JoinedTable:
    table: str
    sql_on: str
    join_type: str = "left"       # left | inner


def field_id(f: Field) -> str:
    """Globally unique id of a dimension or metric: ``<table>_<name>``."""
    return f"{f.table}_{f.name.replace('.', '__')}"


@dataclass
class Explore:
    """A base table and the tables joined to it."""

    name: str
    base_table: str
    tables: dict[str, Table]
    joined_tables: list[JoinedTable] = field(default_factory=list)

    # ── Convenience look-ups ─────────────────────────

    def get_dimensions(self) -> list[Dimension]:
        return [d for t in self.tables.values() for d in t.dimensions.values()]

    def get_metrics(self) -> list[Metric]:
        return [m for t in self.tables.values() for m in t.metrics.values()]

    def get_fields(self) -> list[Field]:
        return [*self.get_dimensions(), *self.get_metrics()]

    def base_sql_table(self) -> str:
        return self.tables[self.base_table].sql_table

    def find_join(self, table: str) -> JoinedTable | None:
        for j in self.joined_tables:
            if j.table == table:
                return j
        return None


# ── Parsing ──────────────────────────────────────────────

def _parse_dimension(raw: dict[str, Any], table: str) -> Dimension:
    return Dimension(
        name=raw["name"],
        table=table,
        type=DimensionType(raw.get("type", DimensionType.STRING.value)),
        sql=raw.get("sql") or f"{table}.{raw['name']}",
        label=raw.get("label", ""),
        description=raw.get("description", ""),
        hidden=raw.get("hidden", False),
    )


def _parse_metric(raw: dict[str, Any], table: str) -> Metric:
    return Metric(
        name=raw["name"],
        table=table,
        type=MetricType(raw["type"]),
        sql=raw.get("sql") or f"{table}.{raw['name']}",
        percentile=raw.get("percentile"),
        is_auto_generated=raw.get("is_auto_generated", False),
        label=raw.get("label", ""),
        description=raw.get("description", ""),
        hidden=raw.get("hidden", False),
    )


def _parse_table(name: str, raw: dict[str, Any]) -> Table:
    dims = [_parse_dimension(d, name) for d in raw.get("dimensions") or []]
    metrics = [_parse_metric(m, name) for m in raw.get("metrics") or []]
    return Table(
        name=name,
        sql_table=raw["sql_table"],
        dimensions={d.name: d for d in dims},
        metrics={m.name: m for m in metrics},
    )


def _parse_join(raw: dict[str, Any]) -> JoinedTable:
    return JoinedTable(
        table=raw["table"],
        sql_on=raw["sql_on"],
        join_type=raw.get("type", "left"),
    )


def parse_explore(raw: dict[str, Any]) -> Explore:
    """Build an Explore from its dict form.  Raises ValueError on a broken graph."""
    tables = {name: _parse_table(name, t) for name, t in (raw.get("tables") or {}).items()}
    joins = [_parse_join(j) for j in raw.get("joined_tables") or []]
    base = raw["base_table"]
    if base not in tables:
        raise ValueError(f"Explore '{raw.get('name')}' base table '{base}' is not declared")
    for j in joins:
        if j.table not in tables:
            raise ValueError(f"Explore '{raw.get('name')}' joins undeclared table '{j.table}'")
    return Explore(
        name=raw.get("name", base),
        base_table=base,
        tables=tables,
        joined_tables=joins,
    )


def load_explore(path: str | Path) -> Explore:
    """Load an Explore from a YAML file."""
    with open(path) as f:
        raw = yaml.safe_load(f)
    return parse_explore(raw)
