"""
Error taxonomy surfaced by the compiler and the warehouse clients.

  WarehouseConnectionError  -- session / credential establishment failed
  WarehouseQueryError       -- backend rejected or failed the statement
  FieldReferenceError       -- compiler met an undeclared dimension / metric id
  FilterRenderError         -- filter values don't fit the field's type

None of these are retried inside this package; the caller decides.
"""
from __future__ import annotations


class WarehouseError(Exception):
    """Base class for everything raised by this package."""


class WarehouseConnectionError(WarehouseError):
    """Backend unreachable or credentials rejected."""


class WarehouseQueryError(WarehouseError):
    """Backend rejected or failed the statement (wraps the backend's text)."""


class FieldReferenceError(WarehouseError):
    """A query referenced a field id that the explore does not declare."""

    def __init__(self, message: str, field_id: str):
        super().__init__(message)
        self.field_id = field_id


class FilterRenderError(WarehouseError, ValueError):
    """A filter rule can't be rendered for its field (bad operator or values)."""
