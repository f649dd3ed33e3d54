"""
Shared fixtures: the sample orders explore and dialect clients that never
open a real connection.
"""
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from src.semantic.explore import load_explore
from src.warehouses import bigquery as bigquery_module
from src.warehouses import postgres as postgres_module
from src.warehouses.bigquery import BigqueryWarehouseClient
from src.warehouses.credentials import BigqueryCredentials, PostgresCredentials
from src.warehouses.postgres import PostgresWarehouseClient

FIXTURES = Path(__file__).resolve().parent / "fixtures"


@pytest.fixture(scope="session")
def explore():
    return load_explore(FIXTURES / "orders_explore.yml")


@pytest.fixture
def pg_credentials():
    return PostgresCredentials(
        host="warehouse.internal", user="analyst", password="pw", dbname="analytics",
    )


@pytest.fixture
def pg_client(monkeypatch, pg_credentials):
    """Postgres client whose SQLAlchemy engine is a MagicMock."""
    monkeypatch.setattr(postgres_module, "create_engine", MagicMock(name="create_engine"))
    return PostgresWarehouseClient(pg_credentials)


@pytest.fixture
def bq_clients(monkeypatch):
    """Replace bigquery.Client; returns {project: mock client} as they get created."""
    created: dict = {}

    def make_client(project=None, credentials=None, location=None):
        client = created.get(project)
        if client is None:
            client = MagicMock(name=f"bigquery.Client({project})")
            created[project] = client
        return client

    monkeypatch.setattr(bigquery_module.bigquery, "Client", MagicMock(side_effect=make_client))
    return created


@pytest.fixture
def bq_client(bq_clients):
    return BigqueryWarehouseClient(
        BigqueryCredentials(project="acme-analytics", location="EU", retries=1, timeout_seconds=30)
    )
