"""
Catalog builder -- merges per-table schema fetches into one nested
database -> schema -> table -> column -> DimensionType mapping.

Tables that were not found are passed in as ``None`` and simply don't appear
in the merged catalog; their absence is the signal that a reference is stale.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, NamedTuple

from src.semantic.types import DimensionType

WarehouseTableSchema = dict[str, DimensionType]
WarehouseCatalog = dict[str, dict[str, dict[str, WarehouseTableSchema]]]


class TableRef(NamedTuple):
    database: str
    schema: str
    table: str


@dataclass
class TableSchemaResult:
    database: str
    schema: str
    table: str
    columns: WarehouseTableSchema = field(default_factory=dict)


def merge_catalog(results: Iterable[TableSchemaResult | None]) -> WarehouseCatalog:
    """Nest fetch results by database, schema, table.  Later duplicates win."""
    catalog: WarehouseCatalog = {}
    for result in results:
        if result is None:
            continue
        schemas = catalog.setdefault(result.database, {})
        tables = schemas.setdefault(result.schema, {})
        tables[result.table] = dict(result.columns)
    return catalog
