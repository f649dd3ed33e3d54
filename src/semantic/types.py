"""
Canonical, warehouse-agnostic enumerations.

`DimensionType` is the currency every dialect maps its native column types
into; the other enums describe metric kinds and filter vocabulary.
"""
from __future__ import annotations

from enum import Enum, IntEnum


class DimensionType(str, Enum):
    STRING = "string"
    NUMBER = "number"
    DATE = "date"
    TIMESTAMP = "timestamp"
    BOOLEAN = "boolean"


class MetricType(str, Enum):
    # aggregates
    AVERAGE = "average"
    COUNT = "count"
    COUNT_DISTINCT = "count_distinct"
    SUM = "sum"
    MIN = "min"
    MAX = "max"
    PERCENTILE = "percentile"
    MEDIAN = "median"
    # non-aggregates (expression over other metrics)
    NUMBER = "number"
    STRING = "string"
    DATE = "date"
    BOOLEAN = "boolean"


class FilterOperator(str, Enum):
    NULL = "isNull"
    NOT_NULL = "notNull"
    EQUALS = "equals"
    NOT_EQUALS = "notEquals"
    STARTS_WITH = "startsWith"
    ENDS_WITH = "endsWith"
    INCLUDE = "include"
    NOT_INCLUDE = "doesNotInclude"
    LESS_THAN = "lessThan"
    LESS_THAN_OR_EQUAL = "lessThanOrEqual"
    GREATER_THAN = "greaterThan"
    GREATER_THAN_OR_EQUAL = "greaterThanOrEqual"
    IN_THE_PAST = "inThePast"
    IN_THE_NEXT = "inTheNext"
    IN_THE_CURRENT = "inTheCurrent"
    IN_BETWEEN = "inBetween"


class UnitOfTime(str, Enum):
    DAYS = "days"
    WEEKS = "weeks"
    MONTHS = "months"
    YEARS = "years"


class WeekDay(IntEnum):
    MONDAY = 0
    TUESDAY = 1
    WEDNESDAY = 2
    THURSDAY = 3
    FRIDAY = 4
    SATURDAY = 5
    SUNDAY = 6
