"""
Centralised settings for the query core, loaded from environment / .env file.

Connection parameters are NOT read here: warehouse credentials are owned by
the caller and passed to each client explicitly.
"""
from __future__ import annotations

from pathlib import Path
from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict
from dotenv import load_dotenv

# Load .env from project root (two levels up from this file)
_ENV_PATH = Path(__file__).resolve().parents[2] / ".env"
load_dotenv(_ENV_PATH)


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    # ── Logging ──────────────────────────────────────────
    log_level: str = "INFO"

    # ── Query streaming ──────────────────────────────────
    query_page_size: int = 500
    default_query_timeout_seconds: int = 300

    # ── Catalog introspection ────────────────────────────
    catalog_max_workers_per_database: int = 8
    catalog_max_databases: int = 4


@lru_cache
def get_settings() -> Settings:
    return Settings()
