"""
Warehouse credentials -- per-dialect connection parameters.

Credentials are owned by the caller; a client borrows them for its lifetime.
The `type` field discriminates the union so a plain dict (e.g. decoded JSON)
validates straight into the right model.
"""
from __future__ import annotations

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field

from src.semantic.types import WeekDay


class PostgresCredentials(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    type: Literal["postgres"] = "postgres"
    host: str
    port: int = 5432
    user: str
    password: str = Field("", repr=False)
    dbname: str
    schema_: str = Field("public", alias="schema")
    sslmode: str = "prefer"
    timeout_seconds: int | None = Field(None, description="statement_timeout for each query")
    keepalives_idle: int | None = None
    start_of_week: WeekDay | None = None


class BigqueryCredentials(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["bigquery"] = "bigquery"
    project: str
    dataset: str = ""
    location: str | None = None
    keyfile_contents: dict[str, Any] = Field(default_factory=dict, repr=False)
    retries: int = Field(3, ge=0, description="Retries when establishing the session only")
    timeout_seconds: int | None = Field(None, description="Job timeout")
    priority: Literal["interactive", "batch"] = "interactive"
    maximum_bytes_billed: int | None = None
    start_of_week: WeekDay | None = None


WarehouseCredentials = Annotated[
    Union[PostgresCredentials, BigqueryCredentials],
    Field(discriminator="type"),
]
