"""
Filter tree compiler -- renders a nested AND/OR filter group into one
parenthesised predicate.

Empty groups (or groups whose every child compiles to nothing) compile to
``None``, never to ``()``, so callers can simply omit the WHERE clause.
"""
from __future__ import annotations

from typing import Callable

from src.semantic.query import FilterGroup, FilterRule

RuleRenderer = Callable[[FilterRule], "str | None"]


def compile_filter_group(group: FilterGroup | None, render_rule: RuleRenderer) -> str | None:
    """Compile *group* recursively, rendering leaves with *render_rule*.

    *render_rule* raises FieldReferenceError for an unknown field id, which
    aborts the whole compilation.
    """
    if group is None:
        return None

    parts: list[str] = []
    for item in group.items:
        if isinstance(item, FilterRule):
            sql = None if item.disabled else render_rule(item)
        else:
            sql = compile_filter_group(item, render_rule)
        if sql:
            parts.append(sql)

    if not parts:
        return None
    return "(" + f" {group.keyword} ".join(parts) + ")"
