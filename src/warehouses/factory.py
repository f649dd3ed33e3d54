"""
Pick the warehouse client implementation matching a credentials object.
"""
from __future__ import annotations

from typing import Any

from pydantic import TypeAdapter

from src.warehouses.base import WarehouseClient
from src.warehouses.credentials import (
    BigqueryCredentials,
    PostgresCredentials,
    WarehouseCredentials,
)

_credentials_adapter = TypeAdapter(WarehouseCredentials)


def parse_credentials(raw: dict[str, Any]) -> PostgresCredentials | BigqueryCredentials:
    """Validate a credentials dict; its ``type`` key selects the model."""
    return _credentials_adapter.validate_python(raw)


def warehouse_client_from_credentials(
    credentials: PostgresCredentials | BigqueryCredentials | dict[str, Any],
) -> WarehouseClient:
    if isinstance(credentials, dict):
        credentials = parse_credentials(credentials)
    if isinstance(credentials, PostgresCredentials):
        from src.warehouses.postgres import PostgresWarehouseClient

        return PostgresWarehouseClient(credentials)
    if isinstance(credentials, BigqueryCredentials):
        from src.warehouses.bigquery import BigqueryWarehouseClient

        return BigqueryWarehouseClient(credentials)
    raise ValueError(f"Unsupported warehouse credentials: {type(credentials).__name__}")
