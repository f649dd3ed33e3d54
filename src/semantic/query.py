"""
CompiledMetricQuery -- the warehouse-agnostic request the query builder turns
into native SQL.

Filters are a recursive boolean tree: an AND-group or OR-group holding an
ordered mix of leaf FilterRules and nested groups.  The JSON keys ``and`` /
``or`` are accepted as aliases of ``and_`` / ``or_``.
"""
from __future__ import annotations

from typing import Any, Iterator, Union

from pydantic import BaseModel, ConfigDict, Field

from src.semantic.explore import Metric
from src.semantic.types import FilterOperator, UnitOfTime


class FieldTarget(BaseModel):
    model_config = ConfigDict(frozen=True)

    field_id: str = Field(..., description="Field Id of the dimension or metric filtered on")


class FilterRuleSettings(BaseModel):
    model_config = ConfigDict(frozen=True)

    unit_of_time: UnitOfTime = UnitOfTime.DAYS
    completed: bool = Field(False, description="Only count whole units (relative date operators)")


class FilterRule(BaseModel):
    """Leaf predicate on a single field."""

    model_config = ConfigDict(frozen=True)

    id: str = ""
    target: FieldTarget
    operator: FilterOperator
    values: list[Any] = Field(default_factory=list)
    settings: FilterRuleSettings | None = None
    disabled: bool = False


class AndFilterGroup(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str = ""
    and_: list[FilterGroupItem] = Field(..., alias="and")

    @property
    def items(self) -> list[FilterGroupItem]:
        return self.and_

    @property
    def keyword(self) -> str:
        return "AND"


class OrFilterGroup(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str = ""
    or_: list[FilterGroupItem] = Field(..., alias="or")

    @property
    def items(self) -> list[FilterGroupItem]:
        return self.or_

    @property
    def keyword(self) -> str:
        return "OR"


FilterGroup = Union[AndFilterGroup, OrFilterGroup]
FilterGroupItem = Union[FilterRule, AndFilterGroup, OrFilterGroup]

AndFilterGroup.model_rebuild()
OrFilterGroup.model_rebuild()


def is_filter_group(item: FilterGroupItem) -> bool:
    return isinstance(item, (AndFilterGroup, OrFilterGroup))


def iter_filter_rules(group: FilterGroup | None) -> Iterator[FilterRule]:
    """Depth-first walk over every leaf rule of a filter tree."""
    if group is None:
        return
    for item in group.items:
        if isinstance(item, FilterRule):
            yield item
        else:
            yield from iter_filter_rules(item)


class Filters(BaseModel):
    model_config = ConfigDict(frozen=True)

    dimensions: FilterGroup | None = None
    metrics: FilterGroup | None = None


class SortField(BaseModel):
    model_config = ConfigDict(frozen=True)

    field_id: str
    descending: bool = False


class CompiledMetricQuery(BaseModel):
    """A metric query whose fields are all ids resolvable against one Explore."""

    model_config = ConfigDict(frozen=True)

    dimensions: list[str] = Field(default_factory=list, description="Dimension Field Ids, in select order")
    metrics: list[str] = Field(default_factory=list, description="Metric Field Ids, in select order")
    filters: Filters = Field(default_factory=Filters)
    sorts: list[SortField] = Field(default_factory=list)
    limit: int = Field(500, ge=0, description="Maximum rows to return")
    additional_metrics: list[Metric] = Field(
        default_factory=list,
        description="Ad-hoc metrics compiled for this query only",
    )
